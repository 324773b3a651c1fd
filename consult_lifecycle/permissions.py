"""Table-driven role permissions for case transitions and case actions."""

from dataclasses import dataclass
from enum import Enum

from consult_lifecycle.errors import PermissionDenied
from consult_lifecycle.status_model import CASE_TRANSITIONS, CaseStatus, next_states


class Role(Enum):
    PATIENT = "PATIENT"
    SUPERVISOR = "SUPERVISOR"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"
    # Transitions the core triggers on its own (never sent by a client)
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Actor:
    """Who is asking. Supplied by the identity layer and trusted as-is."""
    role: Role
    id: str
    # Patients a supervisor is allowed to act for
    patient_ids: frozenset = frozenset()


SYSTEM_ACTOR = Actor(Role.SYSTEM, "system")


class Capability(Enum):
    """Relationship between an actor and a specific case."""
    OWNER = "OWNER"
    ASSIGNED_DOCTOR = "ASSIGNED_DOCTOR"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


CAPABILITY_ROLES = {
    Capability.OWNER: frozenset({Role.PATIENT, Role.SUPERVISOR}),
    Capability.ASSIGNED_DOCTOR: frozenset({Role.DOCTOR}),
    Capability.ADMIN: frozenset({Role.ADMIN}),
    Capability.SYSTEM: frozenset({Role.SYSTEM}),
}


class Action(Enum):
    """Case-level operations that do not map to a single case edge."""
    CONFIRM_SCHEDULE = "CONFIRM_SCHEDULE"
    SETTLE = "SETTLE"
    REQUEST_RESCHEDULE = "REQUEST_RESCHEDULE"
    RESPOND_RESCHEDULE = "RESPOND_RESCHEDULE"
    CANCEL_RESCHEDULE = "CANCEL_RESCHEDULE"


class DenyReason(Enum):
    WRONG_ROLE = "WrongRole"
    NOT_OWNER = "NotOwner"
    ILLEGAL_FROM_STATE = "IllegalFromState"
    REASON_REQUIRED = "ReasonRequired"


@dataclass(frozen=True)
class Rule:
    capabilities: frozenset
    # Only used by actions; edges carry their own from-state
    from_states: frozenset = frozenset()
    requires_reason: bool = False

    @property
    def roles(self) -> frozenset:
        roles = set()
        for capability in self.capabilities:
            roles |= CAPABILITY_ROLES[capability]
        return frozenset(roles)


_OWNER = frozenset({Capability.OWNER})
_DOCTOR = frozenset({Capability.ASSIGNED_DOCTOR})
_ADMIN = frozenset({Capability.ADMIN})
_SYSTEM = frozenset({Capability.SYSTEM})

EDGE_RULES = {
    (CaseStatus.SUBMITTED, CaseStatus.PENDING): Rule(_SYSTEM | _ADMIN),
    (CaseStatus.PENDING, CaseStatus.ASSIGNED): Rule(_ADMIN),
    (CaseStatus.ASSIGNED, CaseStatus.ACCEPTED): Rule(_DOCTOR),
    (CaseStatus.ASSIGNED, CaseStatus.REJECTED): Rule(_DOCTOR),
    (CaseStatus.ACCEPTED, CaseStatus.SCHEDULED): Rule(_DOCTOR),
    (CaseStatus.SCHEDULED, CaseStatus.PAYMENT_PENDING): Rule(_SYSTEM),
    (CaseStatus.PAYMENT_PENDING, CaseStatus.IN_PROGRESS): Rule(_DOCTOR),
    (CaseStatus.IN_PROGRESS, CaseStatus.CONSULTATION_COMPLETE): Rule(_DOCTOR),
    (CaseStatus.CONSULTATION_COMPLETE, CaseStatus.CLOSED): Rule(_DOCTOR | _ADMIN),
}

# Administrative override: closing from anywhere else is admin-only with a reason
for _state in CaseStatus:
    if CaseStatus.CLOSED in next_states(_state) and CaseStatus.CLOSED not in CASE_TRANSITIONS[_state]:
        EDGE_RULES[(_state, CaseStatus.CLOSED)] = Rule(_ADMIN, requires_reason=True)

_NEGOTIABLE = frozenset({CaseStatus.SCHEDULED, CaseStatus.PAYMENT_PENDING})

ACTION_RULES = {
    Action.CONFIRM_SCHEDULE: Rule(_OWNER, _NEGOTIABLE),
    Action.SETTLE: Rule(_OWNER, _NEGOTIABLE),
    Action.REQUEST_RESCHEDULE: Rule(_OWNER, _NEGOTIABLE),
    Action.CANCEL_RESCHEDULE: Rule(_OWNER, _NEGOTIABLE),
    Action.RESPOND_RESCHEDULE: Rule(_DOCTOR, _NEGOTIABLE),
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    current_state: CaseStatus | None = None
    required_roles: frozenset = frozenset()
    message: str = ""

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def holds_capability(actor: Actor, case, capability: Capability) -> bool:
    """Check an actor's relationship to a case."""
    if capability == Capability.OWNER:
        if actor.role == Role.PATIENT:
            return actor.id == case.owner_patient_id
        if actor.role == Role.SUPERVISOR:
            return case.owner_patient_id in actor.patient_ids
        return False
    if capability == Capability.ASSIGNED_DOCTOR:
        return actor.role == Role.DOCTOR and actor.id == case.assigned_doctor_id
    if capability == Capability.ADMIN:
        return actor.role == Role.ADMIN
    if capability == Capability.SYSTEM:
        return actor.role == Role.SYSTEM
    return False


def rule_for(requested) -> Rule | None:
    if isinstance(requested, Action):
        return ACTION_RULES[requested]
    return EDGE_RULES.get(tuple(requested))


def _deny(reason: DenyReason, case, rule: Rule | None, message: str) -> Decision:
    return Decision(
        allowed=False,
        reason=reason,
        current_state=case.status,
        required_roles=rule.roles if rule else frozenset(),
        message=message,
    )


def authorize(actor: Actor, case, requested, reason: str | None = None) -> Decision:
    """Decide whether ``actor`` may perform ``requested`` on ``case``.

    ``requested`` is either a ``(from_status, to_status)`` case edge or an
    ``Action``. Denials say why (wrong role, not this actor's case, wrong
    current state, missing reason) and which roles would have been allowed.
    """
    rule = rule_for(requested)

    if isinstance(requested, Action):
        label = requested.value
        legal_from = rule.from_states
    else:
        from_state, to_state = requested
        label = f"{from_state.value}->{to_state.value}"
        legal_from = frozenset({from_state}) if rule else frozenset()

    if rule is None or case.status not in legal_from:
        return _deny(
            DenyReason.ILLEGAL_FROM_STATE, case, rule,
            f"{label} is not allowed while the case is {case.status.value}",
        )

    if actor.role not in rule.roles:
        return _deny(
            DenyReason.WRONG_ROLE, case, rule,
            f"{actor.role.value} cannot perform {label}",
        )

    if not any(holds_capability(actor, case, capability) for capability in rule.capabilities):
        return _deny(
            DenyReason.NOT_OWNER, case, rule,
            f"{actor.role.value} {actor.id} is not on case {case.id}",
        )

    if rule.requires_reason and not (reason and reason.strip()):
        return _deny(
            DenyReason.REASON_REQUIRED, case, rule,
            f"{label} requires a reason",
        )

    return ALLOW


def require(actor: Actor, case, requested, reason: str | None = None) -> None:
    """Like authorize(), but raise PermissionDenied on a denial."""
    decision = authorize(actor, case, requested, reason)
    if not decision:
        raise PermissionDenied(decision)
