"""Run coordinator: top-level state machine per run request.

    Received -> GraphResolved -> Planned -> Completed                (plan)
    Received -> GraphResolved -> Planned -> GateChecked -> Locked
             -> Executing -> Completed                            (apply/destroy)

Structural errors (cycles, unknown dependencies, bad configuration) and an
unsatisfied gate halt the run in Failed before anything is mutated. Module
failures are local: the run still completes and reports partial success.
Locked marks entry into the locking phase: module locks themselves are
taken by the executor as each module starts, so a run never holds locks
on modules it has not reached yet.

Resubmitting a run id is a retry. After a failed plan stage everything is
recomputed; after a partially failed apply/destroy, modules that already
succeeded with an unchanged fingerprint are carried over untouched.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from config import ConfigError, EngineSettings, EnvironmentConfig, load_environment, load_settings
from modules import ModuleLoader, fingerprint
from orchestrator.errors import CycleDetected, GateNotSatisfied, InvalidTransition, UnknownDependency
from orchestrator.executor import NO_CHANGES, MutationExecutor
from orchestrator.gate import PLAN_GENERATED, PromotionGate, Proposal, ProposalRegistry, ReviewEvent
from orchestrator.graph import ModuleGraph
from orchestrator.locks import FileLockStore, LockManager
from orchestrator.planner import ChangePlanner, ChangeRunner, Validator
from orchestrator.state import (
    ALREADY_SUCCEEDED,
    APPLY,
    COMPLETED,
    DESTROY,
    EXECUTING,
    FAILED,
    GATE_CHECKED,
    GATE_NOT_SATISFIED,
    GRAPH_RESOLVED,
    LOCKED,
    NOT_TARGETED,
    PLANNED,
    READ_ONLY_PREREQUISITE,
    RUN_FAILED,
    SUCCEEDED,
    RunLog,
    RunRequest,
    RunResult,
)

logger = logging.getLogger(__name__)


class RunCoordinator:
    """Drives one run request at a time through graph, plan, gate and execution.

    Instances share nothing but the injected stores, so several coordinators
    (or several runs of one coordinator in different threads) can work
    concurrently against one lock table.
    """

    def __init__(
        self,
        loader: ModuleLoader,
        validator: Validator,
        runner: ChangeRunner,
        locks: LockManager,
        run_log: RunLog,
        gate: Optional[PromotionGate] = None,
        proposals: Optional[ProposalRegistry] = None,
        settings: Optional[EngineSettings] = None,
        env_loader: Optional[Callable[[str], EnvironmentConfig]] = None,
    ):
        self.loader = loader
        self.validator = validator
        self.runner = runner
        self.locks = locks
        self.run_log = run_log
        self.gate = gate or PromotionGate()
        self.proposals = proposals
        self.settings = settings or EngineSettings()
        self.env_loader = env_loader or (lambda name: load_environment(name, loader.config_dir))
        self._save_lock = threading.Lock()

    @classmethod
    def from_config(cls, config_dir: Optional[Path] = None) -> 'RunCoordinator':
        """Wire the coordinator with the OpenTofu, lint and file-backed stores."""
        from actions.lint import LintValidator
        from actions.tofu import TofuRunner

        loader = ModuleLoader(config_dir)
        settings = load_settings(loader.config_dir)
        state_dir = settings.state_dir
        return cls(
            loader=loader,
            validator=LintValidator(tofu_binary=settings.tofu_binary, tflint=settings.tflint),
            runner=TofuRunner(state_dir=state_dir, tofu_binary=settings.tofu_binary),
            locks=LockManager(FileLockStore(state_dir), timeout=settings.lock_timeout, wait=settings.lock_wait),
            run_log=RunLog(state_dir),
            gate=PromotionGate(settings.operators),
            proposals=ProposalRegistry(state_dir / 'proposals.json'),
            settings=settings,
        )

    def _save(self, result: RunResult) -> None:
        with self._save_lock:
            self.run_log.save(result)

    def _halt(self, result: RunResult, error: Exception) -> RunResult:
        """Stop the run without mutating anything and report every module."""
        result.error = f"{type(error).__name__}: {error}"
        logger.error(f"[run {result.run_id}] Halted: {error}")
        result.finish(RUN_FAILED)
        self._save(result)
        return result

    def submit(self, request: RunRequest, cancel_event: Optional[threading.Event] = None) -> RunResult:
        """Run a request to a terminal RunResult.

        Args:
            request: The triggering request
            cancel_event: When set, no further module is started

        Returns:
            RunResult with a terminal status for every module
        """
        result = RunResult(request)
        previous = self.run_log.load(request.environment, request.run_id)
        if previous is not None:
            result.attempt = previous.attempt + 1
            logger.info(f"[run {request.run_id}] Retry (attempt {result.attempt})")

        logger.info(
            f"[run {request.run_id}] {request.operation} in '{request.environment}'"
            f"{' for ' + ', '.join(request.targets) if request.targets else ''}"
        )

        # Received -> GraphResolved
        try:
            env = self.env_loader(request.environment)
            specs = self.loader.discover(env.name)
            for spec in specs:
                result.add_module(spec.id)
            graph = ModuleGraph(specs).select(request.targets, include_dependents=request.operation == DESTROY)
        except (ConfigError, CycleDetected, UnknownDependency, ValueError) as e:
            return self._halt(result, e)

        for module_id in list(result.modules):
            if module_id not in graph:
                result.update(module_id, 'skip', NOT_TARGETED)
        result.transition(GRAPH_RESOLVED)

        carried = self._carry_over(previous, request, graph, env)
        if carried:
            logger.info(f"[run {request.run_id}] Carrying over {', '.join(sorted(carried))} from previous attempt")
            graph = graph.without(carried)

        # GraphResolved -> Planned
        planner = ChangePlanner(self.validator, self.runner, max_workers=self.settings.max_workers)
        operation = DESTROY if request.operation == DESTROY else APPLY
        artifacts = planner.plan(graph, env, result, operation=operation, cancel_event=cancel_event)
        for module_id in graph.prerequisites:
            if result.get_module(module_id).status == SUCCEEDED:
                result.get_module(module_id).reason = (
                    ALREADY_SUCCEEDED if module_id in carried else READ_ONLY_PREREQUISITE)
        result.transition(PLANNED)

        if not request.mutating:
            if request.proposal_id and self.proposals is not None and not result.with_status(FAILED):
                self._record_event(ReviewEvent(request.proposal_id, PLAN_GENERATED, request.requester))
            self._discard(artifacts)
            result.finish(COMPLETED)
            self._save(result)
            return result

        if not graph.targets:
            logger.info(f"[run {request.run_id}] Nothing left to {request.operation}")
            self._discard(artifacts)
            result.finish(COMPLETED)
            self._save(result)
            return result

        # Planned -> GateChecked
        proposal = self._proposal(request)
        try:
            decision = self.gate.enforce(env, proposal, request.auto_approve, request.requester, request.operation)
        except GateNotSatisfied as e:
            for module_id in graph.targets:
                if result.get_module(module_id).status == SUCCEEDED:
                    result.update(module_id, 'skip', GATE_NOT_SATISFIED)
            self._discard(artifacts)
            return self._halt(result, e)
        result.transition(GATE_CHECKED)
        permitted = request.operation == APPLY and self._permit(proposal, env)

        # GateChecked -> Locked -> Executing; module locks are taken per module by the executor
        self._report_locks(env, graph)
        result.transition(LOCKED)
        executor = MutationExecutor(
            runner=self.runner,
            locks=self.locks,
            max_workers=self.settings.max_workers,
            proceed_with_mutation=decision.permitted,
            checkpoint=lambda: self._save(result),
        )
        result.transition(EXECUTING)
        if request.operation == DESTROY:
            ok = executor.destroy(graph, env, artifacts, result, holder=request.run_id, cancel_event=cancel_event)
        else:
            ok = executor.apply(graph, env, artifacts, result, holder=request.run_id, cancel_event=cancel_event)
        # Saved plans of no-change, skipped and prerequisite modules
        self._discard(artifacts)

        if permitted:
            proposal.record_apply(env.name, ok)
            self.proposals.put(proposal)

        if cancel_event is not None and cancel_event.is_set():
            result.error = 'cancelled'
        result.finish(COMPLETED)
        self._save(result)
        counts = result.summary()
        logger.info(
            f"[run {request.run_id}] {request.operation} finished: {counts['succeeded']} succeeded, "
            f"{counts['failed']} failed, {counts['skipped']} skipped"
        )
        return result

    def _discard(self, artifacts: dict) -> None:
        for artifact in artifacts.values():
            self.runner.discard(artifact)

    def _carry_over(self, previous: Optional[RunResult], request: RunRequest,
                    graph: ModuleGraph, env: EnvironmentConfig) -> set[str]:
        """Modules a retry must not touch again.

        Only applies when the previous attempt reached execution: a module
        is carried over if it succeeded there and its fingerprint is unchanged.
        """
        if previous is None or not request.mutating or previous.request.operation != request.operation:
            return set()
        if EXECUTING not in {state for state, _ in previous.history}:
            return set()

        carried: set[str] = set()
        for module_id in graph.targets:
            prev = previous.modules.get(module_id)
            if prev is None or prev.status != SUCCEEDED or prev.reason == READ_ONLY_PREREQUISITE:
                continue
            if prev.reason not in (None, NO_CHANGES, ALREADY_SUCCEEDED):
                continue
            if prev.fingerprint == fingerprint(graph.get_node(module_id).spec, env.variables):
                carried.add(module_id)
        return carried

    def _proposal(self, request: RunRequest) -> Optional[Proposal]:
        if not request.proposal_id or self.proposals is None:
            return None
        proposal = self.proposals.get(request.proposal_id)
        if proposal is None:
            logger.warning(f"[gate] Unknown proposal {request.proposal_id}")
        return proposal

    def _record_event(self, event: ReviewEvent) -> None:
        try:
            self.proposals.handle(event)
        except InvalidTransition as e:
            logger.warning(f"[gate] {e}")

    def _permit(self, proposal: Optional[Proposal], env: EnvironmentConfig) -> bool:
        """Move a merged proposal to ApplyPermitted for the environment."""
        if proposal is None:
            return False
        try:
            proposal.permit(env.name)
        except InvalidTransition as e:
            logger.info(f"[gate] Not tracking deployment: {e}")
            return False
        self.proposals.put(proposal)
        return True

    def _report_locks(self, env: EnvironmentConfig, graph: ModuleGraph) -> None:
        targets = set(graph.targets)
        for lock in self.locks.list_locks(env.name):
            if lock.module_id not in targets:
                continue
            age = lock.age()
            if age > self.locks.timeout:
                logger.warning(
                    f"[lock] {env.name}/{lock.module_id} has a stale lock from {lock.holder} "
                    f"({int(age)}s); reclaim with 'unlock' before it can be mutated"
                )
            else:
                logger.info(f"[lock] {env.name}/{lock.module_id} currently held by {lock.holder}")
