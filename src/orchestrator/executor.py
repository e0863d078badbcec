"""Apply/destroy executor for planned modules.

Walks the run's target modules in dependency order (apply) or strict
reverse dependency order (destroy). For each module it verifies that the
plan is still fresh, takes the module lock, runs the mutating operation,
records the result and releases the lock.

A failure skips everything that depends on the failed module (apply) or
everything the failed module depends on (destroy); independent subtrees
keep going.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from config import EnvironmentConfig
from modules import fingerprint
from orchestrator.errors import ExecutionFailed, GateNotSatisfied, LockBusy, StaleLock, StalePlan
from orchestrator.graph import ModuleGraph
from orchestrator.locks import LockManager
from orchestrator.planner import ChangeRunner, PlanArtifact
from orchestrator.scheduler import DagWalker
from orchestrator.state import (
    APPLY,
    CANCELLED,
    DESTROY,
    DOWNSTREAM_DESTROY_FAILED,
    UPSTREAM_APPLY_FAILED,
    RunResult,
)

logger = logging.getLogger(__name__)

NO_CHANGES = 'no-changes'


@dataclass
class MutationExecutor:
    """Applies or destroys planned modules.

    Attributes:
        runner: Execution collaborator
        locks: Lock manager shared with other runs
        max_workers: Upper bound on modules mutated concurrently
        proceed_with_mutation: Must be set (by the gate or an operator)
            before any apply/destroy is attempted
        lock_wait: Seconds to queue on a busy lock (None = manager default)
        checkpoint: Called after each module finishes (persist progress)
    """
    runner: ChangeRunner
    locks: LockManager
    max_workers: int = 4
    proceed_with_mutation: bool = False
    lock_wait: Optional[float] = None
    checkpoint: Optional[Callable[[], None]] = None

    def apply(self, graph: ModuleGraph, env: EnvironmentConfig, artifacts: dict[str, PlanArtifact],
              result: RunResult, holder: str, cancel_event: Optional[threading.Event] = None) -> bool:
        """Apply planned target modules, prerequisites first."""
        return self._execute(APPLY, graph, env, artifacts, result, holder, cancel_event)

    def destroy(self, graph: ModuleGraph, env: EnvironmentConfig, artifacts: dict[str, PlanArtifact],
                result: RunResult, holder: str, cancel_event: Optional[threading.Event] = None) -> bool:
        """Destroy planned target modules, dependents first."""
        return self._execute(DESTROY, graph, env, artifacts, result, holder, cancel_event)

    def _execute(self, operation: str, graph: ModuleGraph, env: EnvironmentConfig,
                 artifacts: dict[str, PlanArtifact], result: RunResult, holder: str,
                 cancel_event: Optional[threading.Event]) -> bool:
        if not self.proceed_with_mutation:
            raise GateNotSatisfied(env.name, f"{operation} requires proceed_with_mutation")

        reverse = operation == DESTROY
        skip_reason = DOWNSTREAM_DESTROY_FAILED if reverse else UPSTREAM_APPLY_FAILED
        targets = set(graph.targets)

        # Targets that never got a plan block their downstream side too
        unplanned = {m for m in targets if m not in artifacts}
        downstream = graph.transitive_dependencies(unplanned) if reverse else graph.transitive_dependents(unplanned)
        for module_id in sorted((downstream & targets) - unplanned):
            if module_id in artifacts:
                logger.info(f"[{operation}] Skipping '{module_id}': {skip_reason}")
                result.update(module_id, 'skip', skip_reason)
        runnable = sorted((targets & set(artifacts)) - downstream)
        for module_id in runnable:
            result.add_module(module_id).reset()

        def visit(module_id: str) -> bool:
            try:
                return self._run_module(operation, graph, env, artifacts[module_id], result, holder)
            finally:
                if self.checkpoint is not None:
                    self.checkpoint()

        def blocked_by(module_id: str, origin: str) -> None:
            logger.info(f"[{operation}] Skipping '{module_id}': '{origin}' failed ({skip_reason})")
            result.update(module_id, 'skip', skip_reason)

        def cancelled(module_id: str) -> None:
            result.update(module_id, 'skip', CANCELLED)

        walker = DagWalker(graph, runnable, reverse=reverse, max_workers=self.max_workers,
                           cancel_event=cancel_event)
        ok = walker.walk(visit, blocked_by, cancelled)
        logger.info(f"[{operation}] Order: {', '.join(walker.order) if walker.order else '(none)'}")
        return ok and not unplanned

    def _run_module(self, operation: str, graph: ModuleGraph, env: EnvironmentConfig,
                    artifact: PlanArtifact, result: RunResult, holder: str) -> bool:
        """Freshness check, lock, mutate, record, release."""
        module_id = artifact.module_id
        spec = graph.get_node(module_id).spec
        result.update(module_id, 'start')

        if artifact.operation != operation:
            error = ExecutionFailed(module_id, operation, f"plan was computed for {artifact.operation}")
            result.update(module_id, 'fail', str(error))
            return False

        current = fingerprint(spec, env.variables)
        if current != artifact.fingerprint:
            error = StalePlan(module_id, artifact.fingerprint, current)
            logger.error(f"[{operation}] {error}")
            result.update(module_id, 'fail', str(error))
            return False

        if not artifact.diff.has_changes:
            logger.info(f"[{operation}] {module_id}: no changes")
            result.update(module_id, 'succeed', NO_CHANGES)
            return True

        try:
            with self.locks.held(env.name, module_id, holder, wait=self.lock_wait):
                logger.info(f"[{operation}] {module_id} ({artifact.diff.summary()})")
                if operation == DESTROY:
                    outcome = self.runner.destroy(spec, env, artifact)
                else:
                    outcome = self.runner.apply(spec, env, artifact)
        except (LockBusy, StaleLock) as e:
            logger.error(f"[{operation}] {module_id}: {e}")
            result.update(module_id, 'fail', str(e))
            return False
        except Exception as e:
            error = ExecutionFailed(module_id, operation, f"{type(e).__name__}: {e}")
            logger.exception(f"[{operation}] {error}")
            result.update(module_id, 'fail', str(error))
            return False

        if not outcome.success:
            error = ExecutionFailed(module_id, operation, outcome.message)
            logger.error(f"[{operation}] {error}")
            result.update(module_id, 'fail', str(error))
            return False

        logger.info(f"[{operation}] {module_id} succeeded ({outcome.duration:.1f}s)")
        result.update(module_id, 'succeed')
        return True
