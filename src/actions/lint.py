"""Module validation: reference checks, tofu validate and tflint."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from common import run_command
from config import EnvironmentConfig
from modules import REFERENCE_PATTERN, VARIABLE_PREFIX, ModuleSpec
from orchestrator.planner import ValidationReport

logger = logging.getLogger(__name__)


def _format_diagnostic(diag: dict) -> str:
    """Render a tofu validate diagnostic as 'file:line: summary (detail)'."""
    location = ''
    rng = diag.get('range') or {}
    if rng.get('filename'):
        line = (rng.get('start') or {}).get('line')
        location = f"{rng['filename']}:{line}: " if line else f"{rng['filename']}: "
    text = f"{location}{diag.get('summary', '').strip()}"
    if diag.get('detail'):
        text += f" ({diag['detail'].strip()})"
    return text


def parse_validate_json(text: str) -> tuple[bool, list[str]]:
    """Parse `tofu validate -json` output into (valid, error diagnostics)."""
    data = json.loads(text)
    errors = [
        _format_diagnostic(d) for d in data.get('diagnostics') or []
        if d.get('severity') == 'error'
    ]
    return bool(data.get('valid')) and not errors, errors


def parse_tflint_json(text: str) -> tuple[list[str], list[str]]:
    """Parse `tflint --format json` output into (errors, warnings)."""
    data = json.loads(text) if text.strip() else {}
    errors: list[str] = []
    warnings: list[str] = []
    for issue in data.get('issues') or []:
        rule = issue.get('rule') or {}
        rng = issue.get('range') or {}
        where = f"{rng.get('filename', '?')}:{(rng.get('start') or {}).get('line', '?')}"
        message = f"{where}: {rule.get('name', 'tflint')}: {issue.get('message', '')}"
        if rule.get('severity') == 'error':
            errors.append(message)
        else:
            warnings.append(message)
    for err in data.get('errors') or []:
        errors.append(f"tflint: {err.get('message', err)}")
    return errors, warnings


def check_references(spec: ModuleSpec, env: EnvironmentConfig) -> list[str]:
    """Inputs may only reference declared environment variables and other modules.

    Whether a referenced module exists is checked when the graph is built.
    """
    errors: list[str] = []

    def walk(value, key: str) -> None:
        if isinstance(value, str):
            for ref, name in REFERENCE_PATTERN.findall(value):
                if ref == VARIABLE_PREFIX:
                    if name not in env.variables:
                        errors.append(f"input '{key}' references undefined variable 'var.{name}'")
                elif ref == spec.id:
                    errors.append(f"input '{key}' references the module's own output '{name}'")
        elif isinstance(value, dict):
            for k, v in value.items():
                walk(v, f'{key}.{k}')
        elif isinstance(value, list):
            for i, v in enumerate(value):
                walk(v, f'{key}[{i}]')

    for key, value in spec.inputs.items():
        walk(value, key)
    return errors


@dataclass
class LintValidator:
    """Validates a module before it is planned.

    Runs in order, stopping at the first failing stage:
    1. Input references (no subprocess)
    2. tofu init -backend=false + tofu validate -json
    3. tflint (optional)

    Validation never touches the module's state: init runs against a
    throwaway TF_DATA_DIR.
    """
    tofu_binary: str = 'tofu'
    tflint: bool = False
    tflint_binary: str = 'tflint'
    timeout: int = 300

    def validate(self, spec: ModuleSpec, env: EnvironmentConfig) -> ValidationReport:
        name = f'{env.name}/{spec.id}'
        errors = check_references(spec, env)
        if errors:
            return ValidationReport(passed=False, diagnostics=errors)

        source_dir = spec.source_dir
        if source_dir is None:
            return ValidationReport(passed=False, diagnostics=['module declares no source'])
        if not source_dir.is_dir():
            return ValidationReport(passed=False, diagnostics=[f'source directory not found: {source_dir}'])

        with tempfile.TemporaryDirectory(prefix='tf-validate-') as data_dir:
            tofu_env = {**os.environ, 'TF_DATA_DIR': data_dir, 'TF_IN_AUTOMATION': '1'}
            rc, out, err = run_command(
                [self.tofu_binary, 'init', '-backend=false', '-input=false'],
                cwd=source_dir, timeout=self.timeout, env=tofu_env,
            )
            if rc != 0:
                return ValidationReport(passed=False, diagnostics=[f'tofu init failed: {err.strip()}'])

            logger.debug(f"[{name}] Running tofu validate...")
            rc, out, err = run_command(
                [self.tofu_binary, 'validate', '-json'],
                cwd=source_dir, timeout=self.timeout, env=tofu_env,
            )
            try:
                valid, errors = parse_validate_json(out)
            except json.JSONDecodeError:
                return ValidationReport(passed=False, diagnostics=[f'tofu validate failed: {err.strip()}'])
            if not valid:
                return ValidationReport(passed=False, diagnostics=errors or ['tofu validate failed'])

        warnings: list[str] = []
        if self.tflint:
            report = self._tflint(name, source_dir)
            if not report.passed:
                return report
            warnings = report.diagnostics

        for warning in warnings:
            logger.warning(f"[{name}] {warning}")
        return ValidationReport(passed=True, diagnostics=warnings)

    def _tflint(self, name: str, source_dir: Path) -> ValidationReport:
        logger.debug(f"[{name}] Running tflint...")
        rc, out, err = run_command(
            [self.tflint_binary, '--format', 'json', f'--chdir={source_dir}'],
            timeout=self.timeout,
        )
        try:
            errors, warnings = parse_tflint_json(out)
        except json.JSONDecodeError:
            return ValidationReport(passed=False, diagnostics=[f'tflint failed (rc={rc}): {err.strip()}'])
        if errors:
            return ValidationReport(passed=False, diagnostics=errors)
        return ValidationReport(passed=True, diagnostics=warnings)
