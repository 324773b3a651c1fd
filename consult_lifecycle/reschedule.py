"""Reschedule negotiation between the patient side and the assigned doctor.

A request carries 1-5 preferred times. While it is PENDING the appointment
cannot get a second request. The doctor approves by picking one of the
offered times, which supersedes the current appointment with a new one at
SCHEDULED; the case itself never moves. The requester may withdraw, which is
recorded as REJECTED and resolved by the requester.
"""

import sqlite3
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from consult_lifecycle.case_records.database.appointment_repository import (
    Appointment,
    AppointmentRepository,
)
from consult_lifecycle.case_records.database.reschedule_repository import (
    RescheduleRepository,
    RescheduleRequest,
)
from consult_lifecycle.errors import (
    AppointmentNotFound,
    AppointmentNotReschedulable,
    ChosenTimeNotOffered,
    ConcurrentModification,
    ExistingPendingRequest,
    InvalidPayload,
    NoPreferredTimes,
    PermissionDenied,
    RescheduleRequestNotFound,
    TooManyPreferredTimes,
)
from consult_lifecycle.permissions import Actor, Decision, DenyReason
from consult_lifecycle.status_model import (
    RESCHEDULABLE,
    AppointmentStatus,
    RescheduleStatus,
    require_transition,
)

MAX_PREFERRED_TIMES = 5


class RescheduleDecision(Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class RescheduleProposal(BaseModel):
    preferred_times: list[datetime] = Field(default_factory=list)
    reason: str | None = None


class RescheduleResponse(BaseModel):
    request_id: str
    decision: RescheduleDecision
    chosen_time: datetime | None = None


def _parse(model, payload: dict | None):
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidPayload("Malformed reschedule payload", errors=e.errors(include_url=False))


class RescheduleNegotiationProtocol:
    """Request/respond sub-workflow. Runs inside the orchestrator's transaction."""

    def __init__(
        self,
        appointments: AppointmentRepository | None = None,
        requests: RescheduleRepository | None = None,
    ):
        self.appointments = appointments or AppointmentRepository()
        self.requests = requests or RescheduleRepository()

    def request(
        self,
        conn: sqlite3.Connection,
        appointment: Appointment,
        payload: dict | None,
        requested_by: Actor,
    ) -> RescheduleRequest:
        """Open a reschedule request against the case's active appointment."""
        proposal = _parse(RescheduleProposal, payload)
        times = proposal.preferred_times

        if appointment.status not in RESCHEDULABLE:
            raise AppointmentNotReschedulable(
                f"Appointment {appointment.id} is {appointment.status.value}",
                appointment_id=appointment.id,
                appointment_status=appointment.status.value,
            )
        if len(times) > MAX_PREFERRED_TIMES:
            raise TooManyPreferredTimes(
                f"At most {MAX_PREFERRED_TIMES} preferred times are allowed",
                count=len(times),
                limit=MAX_PREFERRED_TIMES,
            )
        if not times:
            raise NoPreferredTimes("At least one preferred time is required")
        if len(set(times)) != len(times):
            raise NoPreferredTimes("Preferred times must be distinct", count=len(times))

        pending = self.requests.get_pending_for_appointment(conn, appointment.id)
        if pending:
            raise ExistingPendingRequest(
                f"Appointment {appointment.id} already has a pending reschedule request",
                appointment_id=appointment.id,
                request_id=pending.id,
            )

        return self.requests.create(conn, RescheduleRequest(
            id=None,
            appointment_id=appointment.id,
            case_id=appointment.case_id,
            requested_by_role=requested_by.role.value,
            requested_by_id=requested_by.id,
            preferred_times=[t.isoformat() for t in times],
            reason=proposal.reason,
        ))

    def load(self, conn: sqlite3.Connection, case_id: str, request_id: str) -> RescheduleRequest:
        request = self.requests.get_by_id(conn, request_id)
        if request is None or request.case_id != case_id:
            raise RescheduleRequestNotFound(
                f"Reschedule request {request_id} not found on case {case_id}",
                request_id=request_id,
            )
        return request

    def respond(
        self,
        conn: sqlite3.Connection,
        case_id: str,
        payload: dict | None,
        resolver: Actor,
    ) -> tuple[RescheduleRequest, Appointment, Appointment | None]:
        """Approve or reject a pending request.

        Returns (resolved request, original appointment, replacement or None).
        """
        response = _parse(RescheduleResponse, payload)
        request = self.load(conn, case_id, response.request_id)
        appointment = self._appointment_for(conn, request)

        if appointment.status not in RESCHEDULABLE:
            raise AppointmentNotReschedulable(
                f"Appointment {appointment.id} is {appointment.status.value}",
                appointment_id=appointment.id,
                appointment_status=appointment.status.value,
            )

        if response.decision == RescheduleDecision.REJECT:
            require_transition(request.status, RescheduleStatus.REJECTED)
            resolved = self._resolve(conn, request, RescheduleStatus.REJECTED, resolver.id)
            return resolved, appointment, None

        require_transition(request.status, RescheduleStatus.APPROVED)
        chosen = self._match_offered(request, response.chosen_time)

        superseded = self.appointments.update_status(
            conn, appointment.id, appointment.status, AppointmentStatus.RESCHEDULED
        )
        if superseded is None:
            raise ConcurrentModification(
                f"Appointment {appointment.id} changed while approving the reschedule",
                appointment_id=appointment.id,
            )

        replacement = self.appointments.create(conn, Appointment(
            id=None,
            case_id=appointment.case_id,
            scheduled_time=chosen,
            consultation_fee=appointment.consultation_fee,
            status=AppointmentStatus.SCHEDULED,
            duration_minutes=appointment.duration_minutes,
            consultation_type=appointment.consultation_type,
            currency=appointment.currency,
            reschedule_count=appointment.reschedule_count + 1,
            supersedes_id=appointment.id,
        ))

        resolved = self._resolve(conn, request, RescheduleStatus.APPROVED, resolver.id, chosen)
        return resolved, appointment, replacement

    def cancel(
        self,
        conn: sqlite3.Connection,
        case_id: str,
        request_id: str,
        requester: Actor,
    ) -> RescheduleRequest:
        """Withdraw a pending request. Only whoever opened it may do this."""
        request = self.load(conn, case_id, request_id)
        if request.requested_by_id != requester.id:
            raise PermissionDenied(Decision(
                allowed=False,
                reason=DenyReason.NOT_OWNER,
                current_state=None,
                message=f"Only {request.requested_by_id} can withdraw this request",
            ))
        require_transition(request.status, RescheduleStatus.REJECTED)
        return self._resolve(conn, request, RescheduleStatus.REJECTED, requester.id)

    def _appointment_for(self, conn, request: RescheduleRequest) -> Appointment:
        appointment = self.appointments.get_by_id(conn, request.appointment_id)
        if appointment is None:
            raise AppointmentNotFound(
                f"Appointment {request.appointment_id} not found",
                appointment_id=request.appointment_id,
            )
        return appointment

    def _match_offered(self, request: RescheduleRequest, chosen_time: datetime | None) -> str:
        offered = {datetime.fromisoformat(t): t for t in request.preferred_times}
        if chosen_time is None or chosen_time not in offered:
            raise ChosenTimeNotOffered(
                "Approval must pick one of the requested times",
                chosen_time=chosen_time.isoformat() if chosen_time else None,
                preferred_times=request.preferred_times,
            )
        return offered[chosen_time]

    def _resolve(self, conn, request, status, resolver_id, chosen_time=None) -> RescheduleRequest:
        resolved = self.requests.resolve(conn, request.id, status, resolver_id, chosen_time)
        if resolved is None:
            raise ConcurrentModification(
                f"Reschedule request {request.id} was resolved by another request",
                request_id=request.id,
            )
        return resolved
