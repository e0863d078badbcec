"""Run state for module orchestration.

Tracks per-module results (pending, running, succeeded, failed, skipped)
for a run request and persists completed runs to disk so a retry of the
same request can tell which modules already succeeded.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import module_slug

logger = logging.getLogger(__name__)

# Module statuses
PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
TERMINAL_STATUSES = (SUCCEEDED, FAILED, SKIPPED)

# Skip reasons
UPSTREAM_VALIDATION_FAILED = 'upstream-validation-failed'
UPSTREAM_PLAN_FAILED = 'upstream-plan-failed'
UPSTREAM_APPLY_FAILED = 'upstream-apply-failed'
DOWNSTREAM_DESTROY_FAILED = 'downstream-destroy-failed'
READ_ONLY_PREREQUISITE = 'read-only-prerequisite'
ALREADY_SUCCEEDED = 'already-succeeded'
GATE_NOT_SATISFIED = 'gate-not-satisfied'
RUN_ABORTED = 'run-aborted'
NOT_TARGETED = 'not-targeted'
CANCELLED = 'cancelled'

# Operations
PLAN = 'plan'
APPLY = 'apply'
DESTROY = 'destroy'
OPERATIONS = (PLAN, APPLY, DESTROY)

# Run (coordinator) states
RECEIVED = 'received'
GRAPH_RESOLVED = 'graph-resolved'
PLANNED = 'planned'
GATE_CHECKED = 'gate-checked'
LOCKED = 'locked'
EXECUTING = 'executing'
COMPLETED = 'completed'
RUN_FAILED = 'failed'


@dataclass
class RunRequest:
    """One triggering event (proposal opened/merged, manual request).

    Attributes:
        environment: Target environment
        operation: plan, apply or destroy
        targets: Module ids to target (empty = all modules)
        auto_approve: Operator override of the promotion gate
        proposal_id: Originating change reference
        requester: Identity that triggered the run
        run_id: Stable id; resubmitting the same id is a retry
    """
    environment: str
    operation: str
    targets: list[str] = field(default_factory=list)
    auto_approve: bool = False
    proposal_id: Optional[str] = None
    requester: str = ''
    run_id: str = ''

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(
                f"Unknown operation '{self.operation}'. Expected one of: {', '.join(OPERATIONS)}"
            )
        if not self.run_id:
            ref = self.proposal_id or uuid.uuid4().hex[:12]
            self.run_id = f'{self.environment}-{self.operation}-{ref}'

    @property
    def mutating(self) -> bool:
        return self.operation in (APPLY, DESTROY)

    def to_dict(self) -> dict:
        return {
            'run_id': self.run_id,
            'environment': self.environment,
            'operation': self.operation,
            'targets': list(self.targets),
            'auto_approve': self.auto_approve,
            'proposal_id': self.proposal_id,
            'requester': self.requester,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RunRequest':
        return cls(
            environment=data['environment'],
            operation=data['operation'],
            targets=list(data.get('targets') or []),
            auto_approve=data.get('auto_approve', False),
            proposal_id=data.get('proposal_id'),
            requester=data.get('requester', ''),
            run_id=data.get('run_id', ''),
        )


@dataclass
class ModuleResult:
    """Per-module outcome within a run.

    Attributes:
        module_id: Module id (matches ModuleSpec.id)
        status: pending, running, succeeded, failed or skipped
        reason: Named reason for skipped (or carried-over) modules
        error: Error message if failed
        diff: Diff summary from the plan ('+1 ~0 -0')
        fingerprint: Configuration fingerprint the module was planned with
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
    """
    module_id: str
    status: str = PENDING
    reason: Optional[str] = None
    error: Optional[str] = None
    diff: Optional[str] = None
    fingerprint: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self, reason: Optional[str] = None) -> None:
        self.status = SUCCEEDED
        self.reason = reason
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.error = error
        self.completed_at = time.time()

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.reason = reason
        self.completed_at = time.time()

    def reset(self) -> None:
        """Back to pending, keeping diff and fingerprint."""
        self.status = PENDING
        self.reason = None
        self.error = None
        self.started_at = None
        self.completed_at = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'module_id': self.module_id,
            'status': self.status,
        }
        for key in ('reason', 'error', 'diff', 'fingerprint', 'started_at', 'completed_at'):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ModuleResult':
        return cls(
            module_id=data['module_id'],
            status=data.get('status', PENDING),
            reason=data.get('reason'),
            error=data.get('error'),
            diff=data.get('diff'),
            fingerprint=data.get('fingerprint'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
        )


class RunResult:
    """Outcome of a run request: coordinator state plus per-module results.

    Module results are updated from worker threads; updates go through
    the result's own lock.
    """

    def __init__(self, request: RunRequest):
        self.request = request
        self.state = RECEIVED
        self.history: list[tuple[str, float]] = [(RECEIVED, time.time())]
        self.error: Optional[str] = None
        self.attempt = 1
        self._modules: dict[str, ModuleResult] = {}
        self._lock = threading.RLock()
        self.started_at: Optional[float] = time.time()
        self.completed_at: Optional[float] = None

    @property
    def run_id(self) -> str:
        return self.request.run_id

    def transition(self, state: str) -> None:
        logger.debug(f"[run {self.run_id}] {self.state} -> {state}")
        self.state = state
        self.history.append((state, time.time()))

    def add_module(self, module_id: str) -> ModuleResult:
        """Register a module for tracking (idempotent)."""
        with self._lock:
            if module_id not in self._modules:
                self._modules[module_id] = ModuleResult(module_id=module_id)
            return self._modules[module_id]

    def get_module(self, module_id: str) -> ModuleResult:
        """Get module result by id.

        Raises:
            KeyError: If module not registered
        """
        return self._modules[module_id]

    @property
    def modules(self) -> dict[str, ModuleResult]:
        with self._lock:
            return dict(self._modules)

    def update(self, module_id: str, action: str, *args: Any) -> None:
        """Apply a ModuleResult transition (start, succeed, fail, skip) under the lock."""
        with self._lock:
            getattr(self._modules[module_id], action)(*args)

    def skip_pending(self, reason: str) -> None:
        """Give every non-terminal module a skip reason."""
        with self._lock:
            for result in self._modules.values():
                if not result.is_terminal:
                    result.skip(reason)

    def with_status(self, status: str) -> list[str]:
        with self._lock:
            return sorted(m for m, r in self._modules.items() if r.status == status)

    @property
    def success(self) -> bool:
        """True when the run completed and no module failed."""
        return self.state == COMPLETED and not self.with_status(FAILED)

    @property
    def partial(self) -> bool:
        """True when some modules succeeded and others failed or were skipped."""
        with self._lock:
            statuses = {r.status for r in self._modules.values()}
        return SUCCEEDED in statuses and bool(statuses & {FAILED, SKIPPED})

    def finish(self, state: str = COMPLETED) -> None:
        self.skip_pending(RUN_ABORTED)
        self.transition(state)
        self.completed_at = time.time()

    def summary(self) -> dict[str, int]:
        counts = {status: 0 for status in (SUCCEEDED, FAILED, SKIPPED)}
        with self._lock:
            for result in self._modules.values():
                if result.status in counts:
                    counts[result.status] += 1
        return counts

    def to_dict(self) -> dict:
        with self._lock:
            return {
                'run_id': self.run_id,
                'request': self.request.to_dict(),
                'state': self.state,
                'success': self.success,
                'partial': self.partial,
                'attempt': self.attempt,
                'error': self.error,
                'history': [{'state': s, 'at': t} for s, t in self.history],
                'started_at': self.started_at,
                'completed_at': self.completed_at,
                'summary': self.summary(),
                'modules': {m: r.to_dict() for m, r in sorted(self._modules.items())},
            }

    @classmethod
    def from_dict(cls, data: dict) -> 'RunResult':
        result = cls(RunRequest.from_dict(data['request']))
        result.state = data.get('state', RECEIVED)
        result.history = [(h['state'], h['at']) for h in data.get('history', [])]
        result.error = data.get('error')
        result.attempt = data.get('attempt', 1)
        result.started_at = data.get('started_at')
        result.completed_at = data.get('completed_at')
        for module_id, module_data in data.get('modules', {}).items():
            result._modules[module_id] = ModuleResult.from_dict(module_data)
        return result


class RunLog:
    """Completed RunResults keyed by run id, one JSON file per run.

    Layout: {state_dir}/{environment}/runs/{run_id}.json
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def _path(self, environment: str, run_id: str) -> Path:
        return self.state_dir / environment / 'runs' / f'{module_slug(run_id)}.json'

    def save(self, result: RunResult) -> Path:
        """Save a run result, replacing any previous attempt."""
        path = self._path(result.request.environment, result.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.json.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(result.to_dict(), f, indent=2)
        tmp.replace(path)
        logger.debug(f"Saved run result to {path}")
        return path

    def load(self, environment: str, run_id: str) -> Optional[RunResult]:
        """Load a previous result, or None if the run id was never seen."""
        path = self._path(environment, run_id)
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        logger.debug(f"Loaded run result from {path}")
        return RunResult.from_dict(data)

    def list_runs(self, environment: str) -> list[str]:
        runs_dir = self.state_dir / environment / 'runs'
        if not runs_dir.exists():
            return []
        return sorted(p.stem for p in runs_dir.glob('*.json'))
