"""OpenTofu plan/apply/destroy execution for modules."""

import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from common import ActionResult, module_slug, run_command
from config import EnvironmentConfig
from modules import ModuleSpec
from orchestrator.planner import PlanArtifact, PlanOutcome, ResourceDiff

logger = logging.getLogger(__name__)

# tofu plan -detailed-exitcode
PLAN_NO_CHANGES = 0
PLAN_HAS_CHANGES = 2


def create_temp_tfvars(env_name: str, module_id: str) -> Path:
    """Create a unique temporary file for tfvars.

    Uses tempfile to avoid permission issues when different users run commands.
    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'tfvars-{env_name}-{module_slug(module_id)}-', suffix='.json')
    os.close(fd)
    return Path(path)


def parse_plan_json(text: str) -> tuple[ResourceDiff, dict[str, Any]]:
    """Extract the resource diff and projected outputs from `tofu show -json`.

    Replacements (delete+create) count as changed; no-op and read actions
    are ignored. Outputs unknown until apply are reported as None.
    """
    data = json.loads(text) if text.strip() else {}
    added, changed, removed = [], [], []
    for rc in data.get('resource_changes') or []:
        actions = (rc.get('change') or {}).get('actions') or []
        address = rc.get('address', '')
        if actions == ['create']:
            added.append(address)
        elif actions == ['delete']:
            removed.append(address)
        elif 'update' in actions or set(actions) == {'create', 'delete'}:
            changed.append(address)

    outputs: dict[str, Any] = {}
    planned = (data.get('planned_values') or {}).get('outputs') or {}
    for name, output in planned.items():
        outputs[name] = output.get('value')

    diff = ResourceDiff(added=tuple(sorted(added)), changed=tuple(sorted(changed)), removed=tuple(sorted(removed)))
    return diff, outputs


@dataclass
class TofuRunner:
    """Runs tofu for a module with per-environment, per-module state.

    State isolation: {state_dir}/{env}/{module}/terraform.tfstate, with
    TF_DATA_DIR in a data/ subdirectory (must not hold the state file) and
    saved plans in plans/.
    """
    state_dir: Path
    tofu_binary: str = 'tofu'
    timeout_init: int = 120
    timeout_plan: int = 600
    timeout_apply: int = 1800

    def _workspace(self, spec: ModuleSpec, env: EnvironmentConfig) -> tuple[Path, Path, dict]:
        module_dir = Path(self.state_dir) / env.name / module_slug(spec.id)
        data_dir = module_dir / 'data'
        data_dir.mkdir(parents=True, exist_ok=True)
        (module_dir / 'plans').mkdir(exist_ok=True)
        tofu_env = {**os.environ, 'TF_DATA_DIR': str(data_dir), 'TF_IN_AUTOMATION': '1'}
        return module_dir, module_dir / 'terraform.tfstate', tofu_env

    def plan(self, spec: ModuleSpec, env: EnvironmentConfig, inputs: dict,
             destroy: bool = False) -> PlanOutcome:
        """tofu init + plan -out + show -json for one module."""
        name = f'{env.name}/{spec.id}'
        source_dir = spec.source_dir
        if source_dir is None or not source_dir.is_dir():
            return PlanOutcome(success=False, message=f"Module source not found: {source_dir}")

        module_dir, state_file, tofu_env = self._workspace(spec, env)
        plan_file = module_dir / 'plans' / f"{'destroy' if destroy else 'apply'}-{uuid.uuid4().hex[:12]}.tfplan"

        tfvars_path = create_temp_tfvars(env.name, spec.id)
        try:
            with open(tfvars_path, 'w', encoding='utf-8') as f:
                json.dump({**env.variables, **inputs}, f, indent=2, default=str)
            logger.debug(f"[{name}] Generated tfvars: {tfvars_path}")

            logger.info(f"[{name}] Running tofu init...")
            rc, out, err = run_command([self.tofu_binary, 'init', '-input=false'],
                                       cwd=source_dir, timeout=self.timeout_init, env=tofu_env)
            if rc != 0:
                return PlanOutcome(success=False, message=f"tofu init failed: {err.strip()}")

            cmd = [
                self.tofu_binary, 'plan', '-input=false', '-detailed-exitcode',
                f'-state={state_file}', f'-var-file={tfvars_path}', f'-out={plan_file}',
            ]
            if destroy:
                cmd.append('-destroy')
            logger.info(f"[{name}] Running tofu plan{' -destroy' if destroy else ''}...")
            rc, out, err = run_command(cmd, cwd=source_dir, timeout=self.timeout_plan, env=tofu_env)
            if rc not in (PLAN_NO_CHANGES, PLAN_HAS_CHANGES):
                return PlanOutcome(success=False, message=f"tofu plan failed: {err.strip()}")

            rc, out, err = run_command([self.tofu_binary, 'show', '-json', str(plan_file)],
                                       cwd=source_dir, timeout=self.timeout_init, env=tofu_env)
            if rc != 0:
                return PlanOutcome(success=False, message=f"tofu show failed: {err.strip()}")
            try:
                diff, outputs = parse_plan_json(out)
            except json.JSONDecodeError as e:
                return PlanOutcome(success=False, message=f"Unreadable plan JSON: {e}")
        finally:
            if tfvars_path.exists():
                tfvars_path.unlink()
                logger.debug(f"[{name}] Cleaned up temp tfvars: {tfvars_path}")

        return PlanOutcome(
            success=True,
            message=f"Planned {name}: {diff.summary()}",
            diff=diff,
            outputs=outputs,
            plan_file=str(plan_file),
        )

    def apply(self, spec: ModuleSpec, env: EnvironmentConfig, artifact: PlanArtifact) -> ActionResult:
        """Apply a saved plan."""
        return self._apply_plan(spec, env, artifact, 'apply')

    def destroy(self, spec: ModuleSpec, env: EnvironmentConfig, artifact: PlanArtifact) -> ActionResult:
        """Apply a saved destroy plan."""
        return self._apply_plan(spec, env, artifact, 'destroy')

    def discard(self, artifact: PlanArtifact) -> None:
        """Delete the saved plan of an artifact that will not be applied."""
        if not artifact.plan_file:
            return
        plan_file = Path(artifact.plan_file)
        if plan_file.exists():
            plan_file.unlink(missing_ok=True)
            logger.debug(f"[{artifact.environment}/{artifact.module_id}] Discarded unused plan: {plan_file}")

    def _apply_plan(self, spec: ModuleSpec, env: EnvironmentConfig, artifact: PlanArtifact,
                    verb: str) -> ActionResult:
        start = time.time()
        name = f'{env.name}/{spec.id}'
        plan_file: Optional[Path] = Path(artifact.plan_file) if artifact.plan_file else None
        if plan_file is None or not plan_file.exists():
            return ActionResult(
                success=False,
                message=f"Saved plan not found for {name}: {plan_file}",
                duration=time.time() - start,
            )

        _, state_file, tofu_env = self._workspace(spec, env)
        logger.info(f"[{name}] Running tofu apply ({verb}, state: {state_file})...")
        cmd = [self.tofu_binary, 'apply', '-input=false', f'-state={state_file}', str(plan_file)]
        rc, out, err = run_command(cmd, cwd=spec.source_dir, timeout=self.timeout_apply, env=tofu_env)

        # A saved plan is single-use
        plan_file.unlink(missing_ok=True)

        if rc != 0:
            return ActionResult(
                success=False,
                message=f"tofu {verb} failed: {err.strip()}",
                duration=time.time() - start,
            )

        return ActionResult(
            success=True,
            message=f"Tofu {verb} completed for {name}",
            duration=time.time() - start,
        )
