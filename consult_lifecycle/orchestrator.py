"""Lifecycle orchestrator: the single place where case state changes.

Every intent runs the same sequence under a per-case lock and one database
transaction: load the snapshot, check the raw edge against the state graph,
check the actor against the permission matrix, run the settlement or
reschedule sub-protocol if the intent needs one, compare-and-swap the case
version, and queue events in the lifecycle_events table. Events are handed
to subscribers only after the commit.

Card and wallet settlement is the one exception to "single transaction": the
processor call happens between two short transactions so that a slow
processor never holds the case lock.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, ValidationError, field_validator

from consult_lifecycle import permissions
from consult_lifecycle.case_records.database.appointment_repository import (
    Appointment,
    AppointmentRepository,
)
from consult_lifecycle.case_records.database.case_repository import Case, CaseRepository
from consult_lifecycle.case_records.database.connection import get_connection, transaction
from consult_lifecycle.case_records.database.event_repository import EventRepository
from consult_lifecycle.case_records.database.reschedule_repository import (
    RescheduleRepository,
    RescheduleRequest,
)
from consult_lifecycle.case_records.database.settlement_repository import (
    PaymentSettlement,
    SettlementRepository,
)
from consult_lifecycle.errors import (
    AppointmentNotFound,
    CaseNotFound,
    ConcurrentModification,
    InvalidPayload,
    LifecycleError,
    PermissionDenied,
    RescheduleRequestNotFound,
)
from consult_lifecycle.events import (
    EventDispatcher,
    EventType,
    LifecycleEvent,
    appointment_status_changed,
    case_status_changed,
)
from consult_lifecycle.locks import KeyedLocks
from consult_lifecycle.permissions import (
    SYSTEM_ACTOR,
    Action,
    Actor,
    Decision,
    DenyReason,
    Role,
)
from consult_lifecycle.reschedule import RescheduleDecision, RescheduleNegotiationProtocol
from consult_lifecycle.settlement import (
    PaymentMethod,
    PaymentSettlementCoordinator,
    SettlementRequest,
)
from consult_lifecycle.status_model import (
    RESCHEDULABLE,
    AppointmentStatus,
    CaseStatus,
    RescheduleStatus,
    can_transition,
    is_override_edge,
    is_terminal,
    require_transition,
)

logger = logging.getLogger(__name__)


class Intent(Enum):
    QUEUE = "QUEUE"
    ASSIGN = "ASSIGN"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    SCHEDULE = "SCHEDULE"
    CONFIRM_SCHEDULE = "CONFIRM_SCHEDULE"
    SETTLE = "SETTLE"
    START = "START"
    COMPLETE = "COMPLETE"
    CLOSE = "CLOSE"
    MARK_NO_SHOW = "MARK_NO_SHOW"
    REQUEST_RESCHEDULE = "REQUEST_RESCHEDULE"
    RESPOND_RESCHEDULE = "RESPOND_RESCHEDULE"
    CANCEL_RESCHEDULE = "CANCEL_RESCHEDULE"


# Intents that move the case along exactly one edge
INTENT_TARGETS = {
    Intent.QUEUE: CaseStatus.PENDING,
    Intent.ASSIGN: CaseStatus.ASSIGNED,
    Intent.ACCEPT: CaseStatus.ACCEPTED,
    Intent.REJECT: CaseStatus.REJECTED,
    Intent.SCHEDULE: CaseStatus.SCHEDULED,
    Intent.START: CaseStatus.IN_PROGRESS,
    Intent.COMPLETE: CaseStatus.CONSULTATION_COMPLETE,
    Intent.CLOSE: CaseStatus.CLOSED,
    Intent.MARK_NO_SHOW: CaseStatus.CLOSED,
}

# Intents checked against the action table instead of an edge
INTENT_ACTIONS = {
    Intent.CONFIRM_SCHEDULE: Action.CONFIRM_SCHEDULE,
    Intent.SETTLE: Action.SETTLE,
    Intent.REQUEST_RESCHEDULE: Action.REQUEST_RESCHEDULE,
    Intent.RESPOND_RESCHEDULE: Action.RESPOND_RESCHEDULE,
    Intent.CANCEL_RESCHEDULE: Action.CANCEL_RESCHEDULE,
}


class UrgencyLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Complexity(Enum):
    SIMPLE = "SIMPLE"
    MODERATE = "MODERATE"
    COMPLEX = "COMPLEX"
    VERY_COMPLEX = "VERY_COMPLEX"


class ConsultationType(Enum):
    VIDEO_CONSULTATION = "VIDEO_CONSULTATION"
    PHONE_CALL = "PHONE_CALL"
    ZOOM = "ZOOM"
    WHATSAPP = "WHATSAPP"


class CaseSubmission(BaseModel):
    owner_patient_id: str | None = None
    title: str | None = None
    description: str | None = None
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    complexity: Complexity = Complexity.MODERATE
    required_specialization: str | None = None
    dependent_id: str | None = None


class AssignPayload(BaseModel):
    doctor_id: str = Field(min_length=1)


class SchedulePayload(BaseModel):
    scheduled_time: datetime
    consultation_fee: int = Field(gt=0, description="Fee in minor units")
    duration_minutes: int = Field(30, gt=0, le=240)
    consultation_type: ConsultationType = ConsultationType.VIDEO_CONSULTATION
    currency: str = Field("USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return v.upper()


class ReasonPayload(BaseModel):
    reason: str | None = None


class CancelReschedulePayload(BaseModel):
    request_id: str


def _parse(model, payload: dict | None):
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidPayload(f"Malformed {model.__name__}", errors=e.errors(include_url=False))


@dataclass
class TransitionResult:
    case_id: str
    case_status: CaseStatus
    version: int
    appointment_id: str | None = None
    appointment_status: AppointmentStatus | None = None
    events: list[LifecycleEvent] = field(default_factory=list)
    settlement: PaymentSettlement | None = None
    reschedule_request: RescheduleRequest | None = None


@dataclass
class CaseView:
    case: Case
    appointment: Appointment | None
    appointment_history: list[Appointment]
    reschedule_requests: list[RescheduleRequest]
    settlements: list[PaymentSettlement]
    events: list[LifecycleEvent]


@dataclass
class _Work:
    """Mutable state threaded through one committed unit of work."""
    actor: Actor
    case: Case
    appointment: Appointment | None
    events: list[LifecycleEvent] = field(default_factory=list)
    settlement: PaymentSettlement | None = None
    reschedule_request: RescheduleRequest | None = None


class LifecycleOrchestrator:
    """Façade for every case, appointment, settlement and reschedule mutation."""

    def __init__(
        self,
        settlement: PaymentSettlementCoordinator | None = None,
        reschedule: RescheduleNegotiationProtocol | None = None,
        dispatcher: EventDispatcher | None = None,
    ):
        self.cases = CaseRepository()
        self.appointments = AppointmentRepository()
        self.requests = RescheduleRepository()
        self.settlements = SettlementRepository()
        self.events = EventRepository()
        self.settlement = settlement or PaymentSettlementCoordinator(settlements=self.settlements)
        self.reschedule = reschedule or RescheduleNegotiationProtocol(self.appointments, self.requests)
        self.dispatcher = dispatcher or EventDispatcher()
        self._case_locks = KeyedLocks()

        self._handlers = {
            Intent.QUEUE: self._handle_edge,
            Intent.ASSIGN: self._handle_assign,
            Intent.ACCEPT: self._handle_edge,
            Intent.REJECT: self._handle_reject,
            Intent.SCHEDULE: self._handle_schedule,
            Intent.CONFIRM_SCHEDULE: self._handle_confirm_schedule,
            Intent.START: self._handle_start,
            Intent.COMPLETE: self._handle_complete,
            Intent.CLOSE: self._handle_close,
            Intent.MARK_NO_SHOW: self._handle_close,
            Intent.REQUEST_RESCHEDULE: self._handle_request_reschedule,
            Intent.RESPOND_RESCHEDULE: self._handle_respond_reschedule,
            Intent.CANCEL_RESCHEDULE: self._handle_cancel_reschedule,
        }

    # Public API

    def submit_case(self, actor: Actor, payload: dict | None = None) -> TransitionResult:
        """Create a case in SUBMITTED for a patient, or for a supervisor's patient."""
        submission = _parse(CaseSubmission, payload)

        if actor.role == Role.PATIENT:
            owner = submission.owner_patient_id or actor.id
            allowed = owner == actor.id
        elif actor.role == Role.SUPERVISOR:
            owner = submission.owner_patient_id
            allowed = owner is not None and owner in actor.patient_ids
        else:
            raise PermissionDenied(Decision(
                allowed=False,
                reason=DenyReason.WRONG_ROLE,
                required_roles=frozenset({Role.PATIENT, Role.SUPERVISOR}),
                message=f"{actor.role.value} cannot submit cases",
            ))
        if not allowed:
            raise PermissionDenied(Decision(
                allowed=False,
                reason=DenyReason.NOT_OWNER,
                required_roles=frozenset({Role.PATIENT, Role.SUPERVISOR}),
                message=f"{actor.role.value} {actor.id} cannot file cases for patient {owner}",
            ))

        with transaction() as conn:
            case = self.cases.create(conn, Case(
                id=None,
                owner_patient_id=owner,
                title=submission.title,
                description=submission.description,
                urgency_level=submission.urgency_level.value,
                complexity=submission.complexity.value,
                required_specialization=submission.required_specialization,
                dependent_id=submission.dependent_id,
            ))
            event = LifecycleEvent(
                EventType.CASE_SUBMITTED,
                case.id,
                {"status": case.status.value, "owner_patient_id": owner},
                actor_role=actor.role.value,
                actor_id=actor.id,
            )
            self.events.append(conn, event)

        logger.info(
            "Case submitted",
            extra={"case_id": case.id, "owner_patient_id": owner, "actor_role": actor.role.value},
        )
        self.dispatcher.dispatch([event])
        return TransitionResult(case.id, case.status, case.version, events=[event])

    def transition(
        self,
        case_id: str,
        actor: Actor,
        intent: Intent | str,
        payload: dict | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """
        Apply an intent to a case.

        Args:
            case_id: Case to act on
            actor: Role and id supplied by the identity layer
            intent: What the caller wants to happen
            payload: Intent-specific data (doctor_id, scheduled_time, coupon_code, ...)
            expected_version: Case version the caller last read; a mismatch
                fails with ConcurrentModification instead of acting on newer state

        Returns:
            TransitionResult with the committed statuses and emitted events

        Raises:
            LifecycleError: a single structured error; nothing was changed
        """
        intent = Intent(intent)
        try:
            if intent == Intent.SETTLE:
                work = self._settle(case_id, actor, payload, expected_version)
            else:
                handler = self._handlers[intent]
                work = self._commit(
                    case_id, actor, expected_version,
                    lambda conn, work: handler(conn, work, intent, payload),
                )
        except LifecycleError as e:
            logger.warning(
                "Case transition refused",
                extra={
                    "case_id": case_id,
                    "intent": intent.value,
                    "actor_role": actor.role.value,
                    "actor_id": actor.id,
                    "error": e.code,
                },
            )
            raise

        logger.info(
            "Case transition committed",
            extra={
                "case_id": case_id,
                "intent": intent.value,
                "actor_role": actor.role.value,
                "actor_id": actor.id,
                "case_status": work.case.status.value,
                "version": work.case.version,
                "events": [event.event_type.value for event in work.events],
            },
        )
        self.dispatcher.dispatch(work.events)
        return self._result(work)

    def settle(self, appointment_id: str, actor: Actor, request: dict) -> TransitionResult:
        """Settle an appointment's consultation fee by card, wallet or coupon."""
        case_id = self._case_id_for_appointment(appointment_id)
        return self.transition(case_id, actor, Intent.SETTLE, request)

    def request_reschedule(
        self,
        appointment_id: str,
        actor: Actor,
        preferred_times: list,
        reason: str | None = None,
    ) -> TransitionResult:
        case_id = self._case_id_for_appointment(appointment_id)
        payload = {"preferred_times": preferred_times, "reason": reason}
        return self.transition(case_id, actor, Intent.REQUEST_RESCHEDULE, payload)

    def respond_to_reschedule(
        self,
        request_id: str,
        actor: Actor,
        decision: RescheduleDecision | str,
        chosen_time=None,
    ) -> TransitionResult:
        conn = get_connection()
        request = self.requests.get_by_id(conn, request_id)
        conn.close()
        if request is None:
            raise RescheduleRequestNotFound(f"Reschedule request {request_id} not found", request_id=request_id)
        payload = {
            "request_id": request_id,
            "decision": RescheduleDecision(decision).value,
            "chosen_time": chosen_time,
        }
        return self.transition(request.case_id, actor, Intent.RESPOND_RESCHEDULE, payload)

    def get_case_view(self, case_id: str) -> CaseView:
        """Read everything about a case (committed state only)."""
        conn = get_connection()
        try:
            case = self.cases.get_by_id(conn, case_id)
            if case is None:
                raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)
            return CaseView(
                case=case,
                appointment=self.appointments.get_active_for_case(conn, case_id),
                appointment_history=self.appointments.get_history(conn, case_id),
                reschedule_requests=self.requests.list_for_case(conn, case_id),
                settlements=self.settlements.list_for_case(conn, case_id),
                events=self.events.list_for_case(conn, case_id),
            )
        finally:
            conn.close()

    def available_intents(self, actor: Actor, case_id: str) -> list[Intent]:
        """Intents this actor could issue right now (UI affordances)."""
        view = self.get_case_view(case_id)
        case, appointment = view.case, view.appointment
        pending = next(
            (r for r in view.reschedule_requests if r.status == RescheduleStatus.PENDING), None
        )
        settled = appointment is not None and any(
            s.appointment_id == appointment.id for s in view.settlements
        )

        available = []
        for intent in Intent:
            if intent in INTENT_ACTIONS:
                if not permissions.authorize(actor, case, INTENT_ACTIONS[intent]):
                    continue
            else:
                target = INTENT_TARGETS[intent]
                source = case.status
                if intent == Intent.ASSIGN and source == CaseStatus.SUBMITTED:
                    source = CaseStatus.PENDING
                if not can_transition(source, target):
                    continue
                candidate = replace(case, status=source)
                # Reason-gated edges are still offered; the reason comes with the intent
                decision = permissions.authorize(actor, candidate, (source, target), reason="-")
                if not decision:
                    continue
            if self._appointment_allows(intent, appointment, pending, settled, actor):
                available.append(intent)
        return available

    # Unit of work

    def _commit(self, case_id, actor, expected_version, apply) -> _Work:
        if expected_version is None:
            # Snapshot before queueing on the lock so a racing commit is a conflict
            expected_version = self._peek_version(case_id)
        with self._case_locks.hold(case_id):
            with transaction() as conn:
                case = self._load_case(conn, case_id, expected_version)
                work = _Work(actor, case, self.appointments.get_active_for_case(conn, case_id))
                apply(conn, work)

                # Every committed change claims the case version, even when
                # only the appointment or a reschedule request moved
                if work.case.version == case.version:
                    work.case = self._claim(conn, work.case)

                for event in work.events:
                    self.events.append(conn, event)
        return work

    def _peek_version(self, case_id: str) -> int | None:
        conn = get_connection()
        try:
            case = self.cases.get_by_id(conn, case_id)
        finally:
            conn.close()
        return case.version if case else None

    def _load_case(self, conn, case_id: str, expected_version: int | None) -> Case:
        case = self.cases.get_by_id(conn, case_id)
        if case is None:
            raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)
        if expected_version is not None and case.version != expected_version:
            raise ConcurrentModification(
                f"Case {case_id} changed since it was read",
                case_id=case_id,
                expected_version=expected_version,
                current_version=case.version,
                current_status=case.status.value,
            )
        return case

    def _claim(self, conn, case: Case) -> Case:
        claimed = self.cases.bump_version(conn, case.id, case.version)
        if claimed is None:
            raise ConcurrentModification(f"Case {case.id} changed during the update", case_id=case.id)
        return claimed

    def _move_case(self, conn, work: _Work, target: CaseStatus, actor: Actor | None = None,
                   reason: str | None = None, **fields) -> None:
        actor = actor or work.actor
        case = work.case
        # Graph first: an illegal edge is InvalidTransition whoever asks
        require_transition(case.status, target)
        permissions.require(actor, case, (case.status, target), reason)

        updated = self.cases.update_status(conn, case.id, case.version, target, **fields)
        if updated is None:
            raise ConcurrentModification(f"Case {case.id} changed during the update", case_id=case.id)

        extra = {"reason": reason} if reason else {}
        work.events.append(case_status_changed(case.id, case.status, target, actor, **extra))
        work.case = updated

    def _move_appointment(self, conn, work: _Work, target: AppointmentStatus,
                          actor: Actor | None = None) -> None:
        appointment = self._require_appointment(work)
        require_transition(appointment.status, target)

        updated = self.appointments.update_status(conn, appointment.id, appointment.status, target)
        if updated is None:
            raise ConcurrentModification(
                f"Appointment {appointment.id} changed during the update",
                appointment_id=appointment.id,
            )
        work.events.append(appointment_status_changed(appointment, appointment.status, target, actor or work.actor))
        work.appointment = updated

    def _require_appointment(self, work: _Work) -> Appointment:
        if work.appointment is None:
            raise AppointmentNotFound(
                f"Case {work.case.id} has no appointment",
                case_id=work.case.id,
            )
        return work.appointment

    # Intent handlers

    def _handle_edge(self, conn, work, intent, payload):
        self._move_case(conn, work, INTENT_TARGETS[intent])

    def _handle_assign(self, conn, work, intent, payload):
        if work.case.status == CaseStatus.SUBMITTED:
            # Queue for review on the admin's behalf before assigning
            self._move_case(conn, work, CaseStatus.PENDING, SYSTEM_ACTOR)
        require_transition(work.case.status, CaseStatus.ASSIGNED)
        permissions.require(work.actor, work.case, (work.case.status, CaseStatus.ASSIGNED))
        assignment = _parse(AssignPayload, payload)
        self._move_case(conn, work, CaseStatus.ASSIGNED, assigned_doctor_id=assignment.doctor_id)

    def _handle_reject(self, conn, work, intent, payload):
        reason = _parse(ReasonPayload, payload).reason
        doctor_id = work.case.assigned_doctor_id
        self._move_case(
            conn, work, CaseStatus.REJECTED,
            assigned_doctor_id=None, rejection_reason=reason,
        )
        work.events[-1].payload["doctor_id"] = doctor_id

    def _handle_schedule(self, conn, work, intent, payload):
        self._move_case(conn, work, CaseStatus.SCHEDULED)
        schedule = _parse(SchedulePayload, payload)

        appointment = self.appointments.create(conn, Appointment(
            id=None,
            case_id=work.case.id,
            scheduled_time=schedule.scheduled_time.isoformat(),
            consultation_fee=schedule.consultation_fee,
            duration_minutes=schedule.duration_minutes,
            consultation_type=schedule.consultation_type.value,
            currency=schedule.currency,
        ))
        work.appointment = appointment
        work.events.append(LifecycleEvent(
            EventType.APPOINTMENT_CREATED,
            work.case.id,
            {
                "appointment_id": appointment.id,
                "status": appointment.status.value,
                "scheduled_time": appointment.scheduled_time,
                "consultation_fee": appointment.consultation_fee,
            },
            actor_role=work.actor.role.value,
            actor_id=work.actor.id,
        ))

    def _handle_confirm_schedule(self, conn, work, intent, payload):
        permissions.require(work.actor, work.case, Action.CONFIRM_SCHEDULE)
        self._promote_to_payment_pending(conn, work)

    def _promote_to_payment_pending(self, conn, work: _Work) -> None:
        """System edge: the schedule is agreed, the appointment now awaits payment."""
        appointment = self._require_appointment(work)
        require_transition(appointment.status, AppointmentStatus.PAYMENT_PENDING)
        if work.case.status == CaseStatus.SCHEDULED:
            self._move_case(conn, work, CaseStatus.PAYMENT_PENDING, SYSTEM_ACTOR)
        self._move_appointment(conn, work, AppointmentStatus.PAYMENT_PENDING, SYSTEM_ACTOR)

    def _handle_start(self, conn, work, intent, payload):
        self._move_case(conn, work, CaseStatus.IN_PROGRESS)
        self._move_appointment(conn, work, AppointmentStatus.IN_PROGRESS)

    def _handle_complete(self, conn, work, intent, payload):
        self._move_case(conn, work, CaseStatus.CONSULTATION_COMPLETE)
        self._move_appointment(conn, work, AppointmentStatus.COMPLETED)

    def _handle_close(self, conn, work, intent, payload):
        reason = _parse(ReasonPayload, payload).reason
        override = is_override_edge(work.case.status, CaseStatus.CLOSED)
        self._move_case(conn, work, CaseStatus.CLOSED, reason=reason, closure_reason=reason)

        if intent == Intent.MARK_NO_SHOW:
            self._move_appointment(conn, work, AppointmentStatus.NO_SHOW)
        elif override and work.appointment and not is_terminal(work.appointment.status):
            self._move_appointment(conn, work, AppointmentStatus.CANCELLED)

        if work.appointment:
            pending = self.requests.get_pending_for_appointment(conn, work.appointment.id)
            if pending:
                resolved = self.requests.resolve(conn, pending.id, RescheduleStatus.REJECTED, work.actor.id)
                work.events.append(self._reschedule_event(EventType.RESCHEDULE_REJECTED, resolved, work.actor))

    def _handle_request_reschedule(self, conn, work, intent, payload):
        permissions.require(work.actor, work.case, Action.REQUEST_RESCHEDULE)
        appointment = self._require_appointment(work)
        request = self.reschedule.request(conn, appointment, payload, work.actor)
        work.reschedule_request = request
        work.events.append(self._reschedule_event(EventType.RESCHEDULE_REQUESTED, request, work.actor))

    def _handle_respond_reschedule(self, conn, work, intent, payload):
        permissions.require(work.actor, work.case, Action.RESPOND_RESCHEDULE)
        request, original, replacement = self.reschedule.respond(conn, work.case.id, payload, work.actor)
        work.reschedule_request = request

        if replacement is None:
            work.events.append(self._reschedule_event(EventType.RESCHEDULE_REJECTED, request, work.actor))
            return

        work.events.append(appointment_status_changed(
            original, original.status, AppointmentStatus.RESCHEDULED, work.actor
        ))
        work.events.append(LifecycleEvent(
            EventType.APPOINTMENT_CREATED,
            work.case.id,
            {
                "appointment_id": replacement.id,
                "status": replacement.status.value,
                "scheduled_time": replacement.scheduled_time,
                "reschedule_count": replacement.reschedule_count,
                "supersedes_id": original.id,
            },
            actor_role=work.actor.role.value,
            actor_id=work.actor.id,
        ))
        work.events.append(self._reschedule_event(EventType.RESCHEDULE_APPROVED, request, work.actor))
        work.appointment = replacement

    def _handle_cancel_reschedule(self, conn, work, intent, payload):
        permissions.require(work.actor, work.case, Action.CANCEL_RESCHEDULE)
        cancel = _parse(CancelReschedulePayload, payload)
        request = self.reschedule.cancel(conn, work.case.id, cancel.request_id, work.actor)
        work.reschedule_request = request
        event = self._reschedule_event(EventType.RESCHEDULE_REJECTED, request, work.actor)
        event.payload["withdrawn"] = True
        work.events.append(event)

    # Settlement

    def _settle(self, case_id, actor, payload, expected_version) -> _Work:
        request = SettlementRequest.from_payload(payload)
        prepared = {}

        def prepare(conn, work):
            permissions.require(actor, work.case, Action.SETTLE)
            appointment = self._require_appointment(work)
            self.settlement.check_settleable(conn, appointment)
            method = request.resolve_method()
            prepared["method"] = method

            if method == PaymentMethod.COUPON:
                self._finish_settlement(conn, work, lambda: self.settlement.redeem_coupon(
                    conn, work.appointment, work.case.owner_patient_id, request.coupon_code, actor.id,
                ))
                return

            self.settlement.check_amount(appointment, request)
            prepared["appointment"] = appointment
            prepared["version"] = work.case.version
            raise _ChargeNeeded()

        try:
            return self._commit(case_id, actor, expected_version, prepare)
        except _ChargeNeeded:
            pass

        method = prepared["method"]
        appointment = prepared["appointment"]
        # Outside the case lock: the processor may be slow
        charge = self.settlement.charge(appointment, request, method)

        def record(conn, work):
            if work.appointment is None or work.appointment.id != appointment.id:
                raise ConcurrentModification(
                    f"Appointment {appointment.id} was replaced while charging",
                    case_id=case_id,
                    appointment_id=appointment.id,
                )
            self.settlement.check_settleable(conn, work.appointment)
            self._finish_settlement(conn, work, lambda: self.settlement.record_charge(
                conn, work.appointment, method, charge, actor.id,
            ))

        try:
            return self._commit(case_id, actor, prepared["version"], record)
        except LifecycleError as e:
            # The processor holds the charge under the idempotency key; a retry reuses it
            logger.error(
                "Charge succeeded but settlement was not committed",
                extra={
                    "case_id": case_id,
                    "appointment_id": appointment.id,
                    "transaction_ref": charge.transaction_ref,
                    "error": e.code,
                },
            )
            raise

    def _finish_settlement(self, conn, work: _Work, record) -> None:
        if work.appointment.status == AppointmentStatus.SCHEDULED:
            self._promote_to_payment_pending(conn, work)
        settlement = record()
        self._move_appointment(conn, work, AppointmentStatus.CONFIRMED)
        work.settlement = settlement
        work.events.append(LifecycleEvent(
            EventType.PAYMENT_SETTLED,
            work.case.id,
            {
                "appointment_id": settlement.appointment_id,
                "settlement_id": settlement.id,
                "method": settlement.method,
                "amount": settlement.amount,
                "currency": settlement.currency,
                "coupon_code": settlement.coupon_code,
                "transaction_ref": settlement.transaction_ref,
            },
            actor_role=work.actor.role.value,
            actor_id=work.actor.id,
        ))

    # Helpers

    def _appointment_allows(self, intent, appointment, pending, settled, actor) -> bool:
        status = appointment.status if appointment else None
        if intent == Intent.SCHEDULE:
            return appointment is None
        if intent == Intent.CONFIRM_SCHEDULE:
            return status == AppointmentStatus.SCHEDULED
        if intent == Intent.SETTLE:
            return status in (AppointmentStatus.SCHEDULED, AppointmentStatus.PAYMENT_PENDING) and not settled
        if intent == Intent.START:
            return status == AppointmentStatus.CONFIRMED
        if intent == Intent.COMPLETE:
            return status == AppointmentStatus.IN_PROGRESS
        if intent == Intent.MARK_NO_SHOW:
            return status is not None and can_transition(status, AppointmentStatus.NO_SHOW)
        if intent == Intent.REQUEST_RESCHEDULE:
            return status in RESCHEDULABLE and pending is None
        if intent == Intent.RESPOND_RESCHEDULE:
            return status in RESCHEDULABLE and pending is not None
        if intent == Intent.CANCEL_RESCHEDULE:
            return pending is not None and pending.requested_by_id == actor.id
        return True

    def _case_id_for_appointment(self, appointment_id: str) -> str:
        conn = get_connection()
        appointment = self.appointments.get_by_id(conn, appointment_id)
        conn.close()
        if appointment is None:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
        return appointment.case_id

    def _reschedule_event(self, event_type: EventType, request: RescheduleRequest, actor: Actor) -> LifecycleEvent:
        return LifecycleEvent(
            event_type,
            request.case_id,
            {
                "request_id": request.id,
                "appointment_id": request.appointment_id,
                "status": request.status.value,
                "preferred_times": request.preferred_times,
                "chosen_time": request.chosen_time,
                "reason": request.reason,
                "requested_by_role": request.requested_by_role,
                "requested_by_id": request.requested_by_id,
            },
            actor_role=actor.role.value,
            actor_id=actor.id,
        )

    def _result(self, work: _Work) -> TransitionResult:
        appointment = work.appointment
        return TransitionResult(
            case_id=work.case.id,
            case_status=work.case.status,
            version=work.case.version,
            appointment_id=appointment.id if appointment else None,
            appointment_status=appointment.status if appointment else None,
            events=work.events,
            settlement=work.settlement,
            reschedule_request=work.reschedule_request,
        )


class _ChargeNeeded(Exception):
    """Ends the validation transaction so the processor call can run unlocked."""
