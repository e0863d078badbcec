"""Shared pytest fixtures for iac-orchestrator tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ActionResult
from config import EngineSettings
from modules import ModuleLoader
from orchestrator.coordinator import RunCoordinator
from orchestrator.gate import PromotionGate, ProposalRegistry
from orchestrator.locks import LockManager, MemoryLockStore
from orchestrator.planner import PlanOutcome, ResourceDiff, ValidationReport
from orchestrator.state import RunLog


class FakeValidator:
    """Validator double: fails the module ids in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def validate(self, spec, env):
        with self._lock:
            self.calls.append(spec.id)
        if spec.id in self.failing:
            return ValidationReport(passed=False, diagnostics=[f'{spec.id}: invalid'])
        return ValidationReport(passed=True)


class FakeRunner:
    """ChangeRunner double recording every call in order.

    Plans add one resource per module and project an output named after
    the module; modules in `no_changes` plan an empty diff.
    """

    def __init__(self, fail_plan=(), fail_apply=(), fail_destroy=(), no_changes=(), on_apply=None):
        self.fail_plan = set(fail_plan)
        self.fail_apply = set(fail_apply)
        self.fail_destroy = set(fail_destroy)
        self.no_changes = set(no_changes)
        self.on_apply = on_apply
        self.calls: list[tuple[str, str]] = []
        self.plan_inputs: dict[str, dict] = {}
        self.discarded: list[str] = []
        self._lock = threading.Lock()

    def _record(self, operation, module_id):
        with self._lock:
            self.calls.append((operation, module_id))

    def called(self, operation):
        return [m for op, m in self.calls if op == operation]

    def plan(self, spec, env, inputs, destroy=False):
        self._record('plan-destroy' if destroy else 'plan', spec.id)
        self.plan_inputs[spec.id] = inputs
        if spec.id in self.fail_plan:
            return PlanOutcome(success=False, message='plan exploded')
        if spec.id in self.no_changes:
            diff = ResourceDiff()
        elif destroy:
            diff = ResourceDiff(removed=(f'null_resource.{spec.id}',))
        else:
            diff = ResourceDiff(added=(f'null_resource.{spec.id}',))
        outputs = {
            'subnet_id': f'subnet-{env.name}',
            'endpoint': f'db.{env.name}.internal',
        }
        return PlanOutcome(success=True, message='planned', diff=diff, outputs=outputs)

    def apply(self, spec, env, artifact):
        self._record('apply', spec.id)
        if self.on_apply is not None:
            self.on_apply(spec, env, artifact)
        if spec.id in self.fail_apply:
            return ActionResult(success=False, message='apply exploded')
        return ActionResult(success=True, message='applied')

    def destroy(self, spec, env, artifact):
        self._record('destroy', spec.id)
        if spec.id in self.fail_destroy:
            return ActionResult(success=False, message='destroy exploded')
        return ActionResult(success=True, message='destroyed')

    def discard(self, artifact):
        with self._lock:
            self.discarded.append(artifact.module_id)


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def config_dir(tmp_path):
    """Create a temporary configuration directory.

    Creates:
    - orchestrator.yaml (state_dir under tmp_path, operator 'alice')
    - envs/nonprod.yaml (no approval, auto-approve allowed)
    - envs/preprod.yaml (merge, promoted from nonprod)
    - envs/prod.yaml (approval, promoted from preprod)
    - modules/<env>/{network,database,app}/module.yaml
      (app -> database -> network)
    - tofu/{network,database,app}/main.tf
    """
    root = tmp_path / 'infra'
    tofu = tmp_path / 'tofu'
    for name in ('network', 'database', 'app'):
        _write(tofu / name / 'main.tf', f'resource "null_resource" "{name}" {{}}\n')

    _write(root / 'orchestrator.yaml', f"""
defaults:
  max_workers: 4
  lock_timeout: 600
  state_dir: {tmp_path / 'states'}
  operators:
    - alice
""")
    _write(root / 'envs' / 'nonprod.yaml', """
tier: 0
approval: none
allow_auto_approve: true
variables:
  region: us-east-1
""")
    _write(root / 'envs' / 'preprod.yaml', """
tier: 1
approval: merge
promote_from: nonprod
variables:
  region: us-east-1
""")
    _write(root / 'envs' / 'prod.yaml', """
tier: 2
approval: approval
required_approvals: 1
promote_from: preprod
variables:
  region: us-west-2
""")

    for env in ('nonprod', 'preprod', 'prod'):
        env_dir = root / 'modules' / env
        _write(env_dir / 'network' / 'module.yaml', f"""
source: {tofu / 'network'}
inputs:
  region: ${{var.region}}
""")
        _write(env_dir / 'database' / 'module.yaml', f"""
source: {tofu / 'database'}
depends_on: [network]
inputs:
  subnet_id: ${{network.subnet_id}}
""")
        _write(env_dir / 'app' / 'module.yaml', f"""
source: {tofu / 'app'}
inputs:
  db_endpoint: ${{database.endpoint}}
  banner: "app in ${{var.region}}"
""")
    return root


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_coordinator(config_dir, tmp_path):
    """Factory for a RunCoordinator on the temporary config with in-memory locks."""
    def _make(validator=None, runner=None, locks=None, proposals=None, operators=('alice',)):
        return RunCoordinator(
            loader=ModuleLoader(config_dir),
            validator=validator or FakeValidator(),
            runner=runner or FakeRunner(),
            locks=locks or LockManager(MemoryLockStore(), timeout=600),
            run_log=RunLog(tmp_path / 'states'),
            gate=PromotionGate(operators),
            proposals=proposals if proposals is not None else ProposalRegistry(),
            settings=EngineSettings(max_workers=4, state_dir=tmp_path / 'states'),
        )
    return _make
