"""State graphs for cases, appointments and reschedule requests."""

from enum import Enum

from consult_lifecycle.errors import InvalidTransition


class CaseStatus(Enum):
    """States a medical case moves through."""
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    SCHEDULED = "SCHEDULED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    CONSULTATION_COMPLETE = "CONSULTATION_COMPLETE"
    CLOSED = "CLOSED"


class AppointmentStatus(Enum):
    """States of a single consultation appointment."""
    SCHEDULED = "SCHEDULED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    # Terminal marker on a superseded appointment
    RESCHEDULED = "RESCHEDULED"


class RescheduleStatus(Enum):
    """States of a reschedule negotiation."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Normal workflow edges
CASE_TRANSITIONS = {
    CaseStatus.SUBMITTED: {CaseStatus.PENDING},
    CaseStatus.PENDING: {CaseStatus.ASSIGNED},
    CaseStatus.ASSIGNED: {CaseStatus.ACCEPTED, CaseStatus.REJECTED},
    CaseStatus.ACCEPTED: {CaseStatus.SCHEDULED},
    CaseStatus.SCHEDULED: {CaseStatus.PAYMENT_PENDING},
    CaseStatus.PAYMENT_PENDING: {CaseStatus.IN_PROGRESS},
    CaseStatus.IN_PROGRESS: {CaseStatus.CONSULTATION_COMPLETE},
    CaseStatus.CONSULTATION_COMPLETE: {CaseStatus.CLOSED},
    CaseStatus.REJECTED: set(),
    CaseStatus.CLOSED: set(),
}

# Administrative closure is legal from every non-terminal case state
CASE_OVERRIDE_TRANSITIONS = {
    state: {CaseStatus.CLOSED}
    for state, targets in CASE_TRANSITIONS.items()
    if targets
}

_ABORTABLE = {AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}

APPOINTMENT_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.PAYMENT_PENDING,
        AppointmentStatus.RESCHEDULED,
    } | _ABORTABLE,
    AppointmentStatus.PAYMENT_PENDING: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.RESCHEDULED,
    } | _ABORTABLE,
    AppointmentStatus.CONFIRMED: {AppointmentStatus.IN_PROGRESS} | _ABORTABLE,
    AppointmentStatus.IN_PROGRESS: {AppointmentStatus.COMPLETED} | _ABORTABLE,
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
    AppointmentStatus.RESCHEDULED: set(),
}

RESCHEDULE_TRANSITIONS = {
    RescheduleStatus.PENDING: {RescheduleStatus.APPROVED, RescheduleStatus.REJECTED},
    RescheduleStatus.APPROVED: set(),
    RescheduleStatus.REJECTED: set(),
}

# Case states in which a doctor must be on the case
ASSIGNED_CLASS = frozenset({
    CaseStatus.ASSIGNED,
    CaseStatus.ACCEPTED,
    CaseStatus.SCHEDULED,
    CaseStatus.PAYMENT_PENDING,
    CaseStatus.IN_PROGRESS,
    CaseStatus.CONSULTATION_COMPLETE,
    CaseStatus.CLOSED,
})

# Appointment states from which a reschedule may be negotiated
RESCHEDULABLE = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.PAYMENT_PENDING})


def _graph_for(state) -> dict:
    if isinstance(state, CaseStatus):
        return CASE_TRANSITIONS
    if isinstance(state, AppointmentStatus):
        return APPOINTMENT_TRANSITIONS
    if isinstance(state, RescheduleStatus):
        return RESCHEDULE_TRANSITIONS
    raise TypeError(f"Unknown state type: {type(state).__name__}")


def next_states(state) -> frozenset:
    """Return every state reachable in one legal move (empty for terminal states)."""
    targets = set(_graph_for(state)[state])
    if isinstance(state, CaseStatus):
        targets |= CASE_OVERRIDE_TRANSITIONS.get(state, set())
    return frozenset(targets)


def is_terminal(state) -> bool:
    return not next_states(state)


def can_transition(from_state, to_state) -> bool:
    if type(from_state) is not type(to_state):
        return False
    return to_state in next_states(from_state)


def require_transition(from_state, to_state) -> None:
    """Raise InvalidTransition unless from_state -> to_state is a legal edge."""
    if not can_transition(from_state, to_state):
        raise InvalidTransition(from_state, to_state)


def is_override_edge(from_state: CaseStatus, to_state: CaseStatus) -> bool:
    """True for an administrative closure that skips the normal workflow."""
    return (
        to_state == CaseStatus.CLOSED
        and to_state not in CASE_TRANSITIONS[from_state]
        and to_state in CASE_OVERRIDE_TRANSITIONS.get(from_state, set())
    )


def doctor_assignment_consistent(status: CaseStatus, assigned_doctor_id: str | None) -> bool:
    """Check the assigned-doctor invariant for a case.

    A doctor is on the case exactly while it is in the assigned class. A case
    closed by an admin before assignment is the one state allowed either way.
    """
    if status == CaseStatus.CLOSED:
        return True
    return (status in ASSIGNED_CLASS) == (assigned_doctor_id is not None)
