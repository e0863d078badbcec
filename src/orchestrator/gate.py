"""Promotion gate: proposal review state machine and per-environment policy.

A proposal moves through discrete review events:

    Proposed -> PlanGenerated -> {Approved, Rejected} -> (Approved) Merged

and, per environment it is promoted to:

    Merged -> ApplyPermitted -> {ApplyCompleted, ApplyFailed}

Events come from the review collaborator (see actions/review.py) or the
local proposal registry; they are consumed in order, never polled.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from config import EnvironmentConfig
from orchestrator.errors import GateNotSatisfied, InvalidTransition
from orchestrator.state import APPLY

logger = logging.getLogger(__name__)


class ProposalState(str, Enum):
    """Review lifecycle of a change proposal."""
    PROPOSED = 'proposed'
    PLAN_GENERATED = 'plan-generated'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    MERGED = 'merged'


class DeploymentState(str, Enum):
    """Per-environment apply lifecycle of a merged proposal."""
    APPLY_PERMITTED = 'apply-permitted'
    APPLY_COMPLETED = 'apply-completed'
    APPLY_FAILED = 'apply-failed'


# Review event kinds
PLAN_GENERATED = 'plan_generated'
APPROVED = 'approved'
REJECTED = 'rejected'
MERGED = 'merged'
EVENT_KINDS = (PLAN_GENERATED, APPROVED, REJECTED, MERGED)

_TRANSITIONS: dict[tuple[ProposalState, str], ProposalState] = {
    (ProposalState.PROPOSED, PLAN_GENERATED): ProposalState.PLAN_GENERATED,
    (ProposalState.PROPOSED, REJECTED): ProposalState.REJECTED,
    (ProposalState.PLAN_GENERATED, PLAN_GENERATED): ProposalState.PLAN_GENERATED,
    (ProposalState.PLAN_GENERATED, APPROVED): ProposalState.APPROVED,
    (ProposalState.PLAN_GENERATED, REJECTED): ProposalState.REJECTED,
    (ProposalState.APPROVED, APPROVED): ProposalState.APPROVED,
    # A new plan (new revision) invalidates earlier approvals
    (ProposalState.APPROVED, PLAN_GENERATED): ProposalState.PLAN_GENERATED,
    (ProposalState.APPROVED, REJECTED): ProposalState.REJECTED,
    (ProposalState.APPROVED, MERGED): ProposalState.MERGED,
    (ProposalState.MERGED, PLAN_GENERATED): ProposalState.MERGED,
}


@dataclass(frozen=True)
class ReviewEvent:
    """A discrete review transition for a proposal."""
    proposal_id: str
    kind: str
    actor: str = ''
    at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {'proposal_id': self.proposal_id, 'kind': self.kind, 'actor': self.actor, 'at': self.at}

    @classmethod
    def from_dict(cls, data: dict) -> 'ReviewEvent':
        return cls(
            proposal_id=str(data['proposal_id']),
            kind=data['kind'],
            actor=data.get('actor', ''),
            at=data.get('at', 0.0),
        )


@dataclass
class Proposal:
    """A change proposal and where it has been promoted to.

    Attributes:
        id: Originating change reference (e.g. pull request number)
        state: Review state
        approvers: Distinct identities that approved the current revision
        deployments: Apply state per environment
        events: Every event consumed, in order
    """
    id: str
    state: ProposalState = ProposalState.PROPOSED
    approvers: set[str] = field(default_factory=set)
    deployments: dict[str, DeploymentState] = field(default_factory=dict)
    events: list[ReviewEvent] = field(default_factory=list)

    def handle(self, event: ReviewEvent) -> ProposalState:
        """Consume one review event.

        Raises:
            InvalidTransition: Event not legal in the current state
        """
        target = _TRANSITIONS.get((self.state, event.kind))
        if target is None:
            raise InvalidTransition(self.id, self.state.value, event.kind)

        if event.kind == PLAN_GENERATED and self.state == ProposalState.APPROVED:
            logger.info(f"[gate] Proposal {self.id}: new plan invalidates {len(self.approvers)} approval(s)")
            self.approvers.clear()
        if event.kind == APPROVED and event.actor:
            self.approvers.add(event.actor)

        logger.debug(f"[gate] Proposal {self.id}: {self.state.value} --{event.kind}--> {target.value}")
        self.state = target
        self.events.append(event)
        return target

    @classmethod
    def replay(cls, proposal_id: str, events: Iterable[ReviewEvent]) -> 'Proposal':
        """Build a proposal from its event stream."""
        proposal = cls(id=proposal_id)
        for event in sorted(events, key=lambda e: e.at):
            proposal.handle(event)
        return proposal

    @property
    def is_terminal(self) -> bool:
        return self.state == ProposalState.REJECTED

    def permit(self, environment: str) -> None:
        """Merged -> ApplyPermitted for an environment.

        Raises:
            InvalidTransition: Not merged, or already applied there
        """
        current = self.deployments.get(environment)
        if self.state != ProposalState.MERGED or current == DeploymentState.APPLY_COMPLETED:
            state = current.value if current else self.state.value
            raise InvalidTransition(self.id, state, f'permit:{environment}')
        self.deployments[environment] = DeploymentState.APPLY_PERMITTED

    def record_apply(self, environment: str, success: bool) -> None:
        """ApplyPermitted -> ApplyCompleted | ApplyFailed.

        Raises:
            InvalidTransition: Apply was not permitted for the environment
        """
        if self.deployments.get(environment) != DeploymentState.APPLY_PERMITTED:
            state = self.deployments.get(environment)
            raise InvalidTransition(self.id, state.value if state else self.state.value,
                                    f'apply-finished:{environment}')
        self.deployments[environment] = (
            DeploymentState.APPLY_COMPLETED if success else DeploymentState.APPLY_FAILED
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'state': self.state.value,
            'approvers': sorted(self.approvers),
            'deployments': {env: s.value for env, s in sorted(self.deployments.items())},
            'events': [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Proposal':
        return cls(
            id=str(data['id']),
            state=ProposalState(data.get('state', ProposalState.PROPOSED.value)),
            approvers=set(data.get('approvers', [])),
            deployments={env: DeploymentState(s) for env, s in data.get('deployments', {}).items()},
            events=[ReviewEvent.from_dict(e) for e in data.get('events', [])],
        )


class ProposalRegistry:
    """Proposals known to this engine, optionally persisted as JSON.

    Layout: {path} holds {"proposals": {id: Proposal.to_dict()}}
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._proposals: dict[str, Proposal] = {}
        self._mutex = threading.Lock()
        if self.path is not None and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
            for pid, pdata in data.get('proposals', {}).items():
                self._proposals[pid] = Proposal.from_dict(pdata)

    def get(self, proposal_id: str) -> Optional[Proposal]:
        with self._mutex:
            return self._proposals.get(str(proposal_id))

    def put(self, proposal: Proposal) -> None:
        with self._mutex:
            self._proposals[proposal.id] = proposal
        self.save()

    def handle(self, event: ReviewEvent) -> Proposal:
        """Route an event to its proposal, creating the proposal on first sight."""
        with self._mutex:
            proposal = self._proposals.setdefault(event.proposal_id, Proposal(id=event.proposal_id))
            proposal.handle(event)
        self.save()
        return proposal

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._mutex:
            data = {'proposals': {pid: p.to_dict() for pid, p in sorted(self._proposals.items())}}
        tmp = self.path.with_suffix('.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a gate check."""
    permitted: bool
    reason: str
    bypassed: bool = False


class PromotionGate:
    """Decides whether a mutating run may proceed against an environment.

    Attributes:
        operators: Identities authorized to set auto_approve
    """

    def __init__(self, operators: Iterable[str] = ()):
        self.operators = set(operators)

    def check(
        self,
        env: EnvironmentConfig,
        proposal: Optional[Proposal],
        auto_approve: bool = False,
        requester: str = '',
        operation: str = APPLY,
    ) -> GateDecision:
        """Evaluate the environment's approval policy for a proposal."""
        if env.approval == 'none':
            return GateDecision(True, f"'{env.name}' requires no approval")

        if auto_approve:
            if not env.allow_auto_approve:
                return GateDecision(False, f"auto-approve is not allowed in '{env.name}'")
            if requester not in self.operators:
                return GateDecision(False, f"'{requester or '<anonymous>'}' is not an authorized operator")
            return GateDecision(True, f"auto-approved by operator '{requester}'", bypassed=True)

        if proposal is None:
            return GateDecision(False, f"'{env.name}' requires a merged proposal")
        if proposal.state != ProposalState.MERGED:
            return GateDecision(False, f"proposal {proposal.id} is {proposal.state.value}, not merged")
        if env.approval == 'approval' and len(proposal.approvers) < env.required_approvals:
            return GateDecision(
                False,
                f"proposal {proposal.id} has {len(proposal.approvers)} of "
                f"{env.required_approvals} required approval(s)",
            )

        if operation == APPLY:
            if env.promote_from and proposal.deployments.get(env.promote_from) != DeploymentState.APPLY_COMPLETED:
                return GateDecision(
                    False, f"proposal {proposal.id} has not been applied to '{env.promote_from}' yet")
            if proposal.deployments.get(env.name) == DeploymentState.APPLY_COMPLETED:
                return GateDecision(False, f"proposal {proposal.id} was already applied to '{env.name}'")

        return GateDecision(True, f"proposal {proposal.id} satisfies '{env.approval}' policy")

    def enforce(
        self,
        env: EnvironmentConfig,
        proposal: Optional[Proposal],
        auto_approve: bool = False,
        requester: str = '',
        operation: str = APPLY,
    ) -> GateDecision:
        """Like check(), but raises when not permitted.

        Raises:
            GateNotSatisfied: The policy is not met
        """
        decision = self.check(env, proposal, auto_approve, requester, operation)
        proposal_id = proposal.id if proposal else None
        if not decision.permitted:
            logger.error(f"[gate] {env.name}: {decision.reason}")
            raise GateNotSatisfied(env.name, decision.reason, proposal_id)
        if decision.bypassed:
            logger.warning(f"[gate] {env.name}: policy bypassed, {decision.reason}")
        else:
            logger.info(f"[gate] {env.name}: {decision.reason}")
        return decision
