"""Error taxonomy for the orchestration engine.

Structural errors (CycleDetected, UnknownDependency) abort a whole run
before any side effect. Per-module errors (ValidationError, StalePlan,
ExecutionFailed) fail only that module and the modules that depend on it.
LockBusy is recoverable by requeuing; StaleLock needs explicit reclamation.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for engine errors."""


class CycleDetected(OrchestratorError):
    """Dependency edges form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownDependency(OrchestratorError):
    """A module depends on a module id that does not exist."""

    def __init__(self, module_id: str, dependency: str, environment: str = ''):
        self.module_id = module_id
        self.dependency = dependency
        self.environment = environment
        where = f" in environment '{environment}'" if environment else ''
        super().__init__(
            f"Module '{module_id}' depends on unknown module '{dependency}'{where}"
        )


class ValidationError(OrchestratorError):
    """A module's declared configuration failed validation."""

    def __init__(self, module_id: str, diagnostics: Optional[list[str]] = None):
        self.module_id = module_id
        self.diagnostics = list(diagnostics or [])
        detail = '; '.join(self.diagnostics) if self.diagnostics else 'validation failed'
        super().__init__(f"Validation failed for '{module_id}': {detail}")


class StalePlan(OrchestratorError):
    """A plan artifact no longer matches the module's configuration."""

    def __init__(self, module_id: str, planned: str, current: str):
        self.module_id = module_id
        self.planned = planned
        self.current = current
        super().__init__(
            f"Plan for '{module_id}' is stale "
            f"(planned {planned[:12]}, current {current[:12]})"
        )


class GateNotSatisfied(OrchestratorError):
    """The promotion gate does not permit mutation."""

    def __init__(self, environment: str, reason: str, proposal_id: Optional[str] = None):
        self.environment = environment
        self.reason = reason
        self.proposal_id = proposal_id
        target = f"proposal {proposal_id}" if proposal_id else 'request'
        super().__init__(f"Gate not satisfied for {target} in '{environment}': {reason}")


class InvalidTransition(OrchestratorError):
    """A review event is not legal in the proposal's current state."""

    def __init__(self, proposal_id: str, state: str, event: str):
        self.proposal_id = proposal_id
        self.state = state
        self.event = event
        super().__init__(f"Proposal {proposal_id}: '{event}' not allowed in state '{state}'")


class LockBusy(OrchestratorError):
    """The (environment, module) lock is held by a live holder."""

    def __init__(self, environment: str, module_id: str, holder: str):
        self.environment = environment
        self.module_id = module_id
        self.holder = holder
        super().__init__(f"Lock on {environment}/{module_id} is held by {holder}")


class StaleLock(OrchestratorError):
    """The existing lock outlived its timeout without a heartbeat."""

    def __init__(self, environment: str, module_id: str, holder: str, age: float):
        self.environment = environment
        self.module_id = module_id
        self.holder = holder
        self.age = age
        super().__init__(
            f"Stale lock on {environment}/{module_id} held by {holder} "
            f"({int(age)}s without heartbeat); reclaim it explicitly"
        )


class ExecutionFailed(OrchestratorError):
    """A collaborator failed while operating on a module."""

    def __init__(self, module_id: str, operation: str, message: str):
        self.module_id = module_id
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed for '{module_id}': {message}")
