"""Change planner: validation then dry-run planning in dependency order.

Every selected module is validated first. A module that fails validation
is never planned and its dependents are skipped; independent branches are
planned normally. Planning walks the graph so that a module's upstream
plans (and their projected outputs) exist before it is planned.
"""

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from config import EnvironmentConfig
from modules import ModuleSpec, fingerprint, interpolate_inputs
from orchestrator.errors import ExecutionFailed, ValidationError
from orchestrator.graph import ModuleGraph
from orchestrator.scheduler import DagWalker
from orchestrator.state import (
    APPLY,
    CANCELLED,
    DESTROY,
    UPSTREAM_PLAN_FAILED,
    UPSTREAM_VALIDATION_FAILED,
    RunResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceDiff:
    """Resource addresses a plan would add, change or remove."""
    added: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.changed or self.removed)

    def summary(self) -> str:
        return f"+{len(self.added)} ~{len(self.changed)} -{len(self.removed)}"

    def to_dict(self) -> dict:
        return {
            'added': list(self.added),
            'changed': list(self.changed),
            'removed': list(self.removed),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ResourceDiff':
        data = data or {}
        return cls(
            added=tuple(sorted(data.get('added', []))),
            changed=tuple(sorted(data.get('changed', []))),
            removed=tuple(sorted(data.get('removed', []))),
        )


@dataclass(frozen=True)
class PlanArtifact:
    """Immutable snapshot of a proposed change for one module.

    Attributes:
        module_id: Planned module
        environment: Environment the plan was computed for
        operation: apply or destroy
        diff: Resource changes the plan would make
        fingerprint: Fingerprint of the module configuration at plan time
        outputs: Projected output values (for downstream interpolation)
        plan_file: Saved plan consumed by apply/destroy, if any
        created_at: Timestamp of plan creation
    """
    module_id: str
    environment: str
    operation: str
    diff: ResourceDiff
    fingerprint: str
    outputs: dict[str, Any] = field(default_factory=dict)
    plan_file: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def digest(self) -> str:
        """Content digest over fingerprint, operation and diff (not the timestamp)."""
        payload = json.dumps(
            {'fingerprint': self.fingerprint, 'operation': self.operation, 'diff': self.diff.to_dict()},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'module_id': self.module_id,
            'environment': self.environment,
            'operation': self.operation,
            'diff': self.diff.to_dict(),
            'fingerprint': self.fingerprint,
            'created_at': self.created_at,
        }
        if self.outputs:
            d['outputs'] = self.outputs
        if self.plan_file is not None:
            d['plan_file'] = self.plan_file
        return d


@dataclass
class ValidationReport:
    """Linter/validator verdict for one module."""
    passed: bool
    diagnostics: list[str] = field(default_factory=list)


@dataclass
class PlanOutcome:
    """Structured result of a plan computed by the execution collaborator."""
    success: bool
    message: str = ''
    diff: ResourceDiff = field(default_factory=ResourceDiff)
    outputs: dict[str, Any] = field(default_factory=dict)
    plan_file: Optional[str] = None


@runtime_checkable
class Validator(Protocol):
    """Linter/validator collaborator, invoked once per module before planning."""

    def validate(self, spec: ModuleSpec, env: EnvironmentConfig) -> ValidationReport:
        """Validate a module's declared configuration."""


@runtime_checkable
class ChangeRunner(Protocol):
    """Plan/apply/destroy execution collaborator."""

    def plan(self, spec: ModuleSpec, env: EnvironmentConfig, inputs: dict,
             destroy: bool = False) -> PlanOutcome:
        """Compute a plan for a module."""

    def apply(self, spec: ModuleSpec, env: EnvironmentConfig, artifact: PlanArtifact) -> Any:
        """Apply a computed plan; returns an ActionResult."""

    def destroy(self, spec: ModuleSpec, env: EnvironmentConfig, artifact: PlanArtifact) -> Any:
        """Destroy a module using a destroy plan; returns an ActionResult."""

    def discard(self, artifact: PlanArtifact) -> None:
        """Release a saved plan that will not be applied."""


class ChangePlanner:
    """Validates and plans the modules of a graph.

    Attributes:
        validator: Linter/validator collaborator
        runner: Execution collaborator used for plans
        max_workers: Upper bound on modules validated/planned concurrently
    """

    def __init__(self, validator: Validator, runner: ChangeRunner, max_workers: int = 4):
        self.validator = validator
        self.runner = runner
        self.max_workers = max(1, max_workers)

    def validate(self, graph: ModuleGraph, env: EnvironmentConfig, result: RunResult) -> set[str]:
        """Validate every module in the graph.

        Failed modules are marked failed with a ValidationError; their
        transitive dependents are skipped with upstream-validation-failed.

        Returns:
            Ids of modules that failed validation
        """
        def check(module_id: str) -> tuple[str, ValidationReport]:
            spec = graph.get_node(module_id).spec
            logger.info(f"[validate] {module_id}")
            try:
                report = self.validator.validate(spec, env)
            except Exception as e:
                logger.exception(f"[validate] Validator crashed on '{module_id}'")
                report = ValidationReport(passed=False, diagnostics=[f'validator error: {e}'])
            return module_id, report

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            reports = dict(pool.map(check, graph.ids))

        failed = {m for m, r in reports.items() if not r.passed}
        for module_id in sorted(failed):
            error = ValidationError(module_id, reports[module_id].diagnostics)
            logger.error(f"[validate] {error}")
            result.update(module_id, 'fail', str(error))

        for module_id in sorted(graph.transitive_dependents(failed) - failed):
            logger.info(f"[validate] Skipping '{module_id}': {UPSTREAM_VALIDATION_FAILED}")
            result.update(module_id, 'skip', UPSTREAM_VALIDATION_FAILED)
        return failed

    def plan(
        self,
        graph: ModuleGraph,
        env: EnvironmentConfig,
        result: RunResult,
        operation: str = APPLY,
        cancel_event: Optional[threading.Event] = None,
    ) -> dict[str, PlanArtifact]:
        """Validate then plan every module of the graph.

        Modules that plan successfully end in status succeeded with their
        diff summary and fingerprint recorded.

        Returns:
            PlanArtifact per successfully planned module
        """
        for module_id in graph.ids:
            result.add_module(module_id)

        failed = self.validate(graph, env, result)
        blocked = failed | graph.transitive_dependents(failed)
        plannable = [m for m in graph.ids if m not in blocked]

        artifacts: dict[str, PlanArtifact] = {}
        artifacts_lock = threading.Lock()
        destroy = operation == DESTROY

        def visit(module_id: str) -> bool:
            spec = graph.get_node(module_id).spec
            result.update(module_id, 'start')
            with artifacts_lock:
                upstream = {d: dict(artifacts[d].outputs) for d in graph.dependencies(module_id) if d in artifacts}
            inputs = interpolate_inputs(spec.inputs, upstream, env.variables)

            logger.info(f"[plan] {module_id}{' (destroy)' if destroy else ''}")
            try:
                outcome = self.runner.plan(spec, env, inputs, destroy=destroy)
            except Exception as e:
                logger.exception(f"[plan] Runner crashed on '{module_id}'")
                outcome = PlanOutcome(success=False, message=f"{type(e).__name__}: {e}")
            if not outcome.success:
                error = ExecutionFailed(module_id, 'plan', outcome.message)
                logger.error(f"[plan] {error}")
                result.update(module_id, 'fail', str(error))
                return False

            artifact = PlanArtifact(
                module_id=module_id,
                environment=env.name,
                operation=operation,
                diff=outcome.diff,
                fingerprint=fingerprint(spec, env.variables),
                outputs=dict(outcome.outputs),
                plan_file=outcome.plan_file,
            )
            with artifacts_lock:
                artifacts[module_id] = artifact

            module_result = result.get_module(module_id)
            module_result.diff = artifact.diff.summary()
            module_result.fingerprint = artifact.fingerprint
            result.update(module_id, 'succeed')
            logger.info(f"[plan] {module_id}: {artifact.diff.summary()}")
            return True

        def blocked_by(module_id: str, origin: str) -> None:
            logger.info(f"[plan] Skipping '{module_id}': upstream '{origin}' failed to plan")
            result.update(module_id, 'skip', UPSTREAM_PLAN_FAILED)

        walker = DagWalker(graph, plannable, max_workers=self.max_workers, cancel_event=cancel_event)
        walker.walk(visit, blocked_by, lambda m: result.update(m, 'skip', CANCELLED))
        return artifacts
