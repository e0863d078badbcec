"""Orchestration engine for OpenTofu modules across environments.

Resolves the module dependency graph of an environment, validates and
plans modules, checks the promotion gate and applies or destroys them
under per-module locks.
"""
