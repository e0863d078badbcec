#!/usr/bin/env python3
"""CLI entry point for iac-orchestrator.

Verb subcommands:
- Runs: iac-orchestrator apply -e preprod -p 42
- Inspection: iac-orchestrator graph -e prod
- Operations: iac-orchestrator unlock -e prod -m database --operator alice
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands
VERB_COMMANDS = {
    "validate": "Validate module declarations and sources",
    "plan": "Validate and plan modules (no changes)",
    "apply": "Plan and apply modules in dependency order",
    "destroy": "Plan and destroy modules in reverse dependency order",
    "graph": "Show the module dependency graph and execution order",
    "locks": "List module locks",
    "unlock": "Reclaim a stale module lock",
    "proposal": "Inspect and update change proposals",
    "runs": "List or show recorded runs",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "apply", "locks")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from orchestrator import cli

    handlers = {
        "validate": cli.validate_main,
        "plan": cli.plan_main,
        "apply": cli.apply_main,
        "destroy": cli.destroy_main,
        "graph": cli.graph_main,
        "locks": cli.locks_main,
        "unlock": cli.unlock_main,
        "proposal": cli.proposal_main,
        "runs": cli.runs_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"iac-orchestrator {get_version()}")
    print()
    print("Usage: iac-orchestrator <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'iac-orchestrator <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-orchestrator plan -e nonprod")
    print("  iac-orchestrator apply -e preprod -p 42")
    print("  iac-orchestrator apply -e nonprod -t app --auto-approve")
    print("  iac-orchestrator destroy -e nonprod --yes")
    print("  iac-orchestrator unlock -e prod -m database --operator alice")


def main():
    """CLI entry point: dispatch to verb handlers."""
    if len(sys.argv) == 1 or sys.argv[1] in ('-h', '--help'):
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg == '--version':
        print(f"iac-orchestrator {get_version()}")
        return 0

    if first_arg in VERB_COMMANDS:
        return dispatch_verb(first_arg, sys.argv[2:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
