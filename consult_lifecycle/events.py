"""Domain events emitted by committed transitions, and their fan-out."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    CASE_SUBMITTED = "CaseSubmitted"
    CASE_STATUS_CHANGED = "CaseStatusChanged"
    APPOINTMENT_STATUS_CHANGED = "AppointmentStatusChanged"
    APPOINTMENT_CREATED = "AppointmentCreated"
    PAYMENT_SETTLED = "PaymentSettled"
    RESCHEDULE_REQUESTED = "RescheduleRequested"
    RESCHEDULE_APPROVED = "RescheduleApproved"
    RESCHEDULE_REJECTED = "RescheduleRejected"


@dataclass
class LifecycleEvent:
    event_type: EventType
    case_id: str
    payload: dict = field(default_factory=dict)
    actor_role: str | None = None
    actor_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.event_type.value,
            "case_id": self.case_id,
            "payload": self.payload,
            "actor_role": self.actor_role,
            "actor_id": self.actor_id,
            "occurred_at": self.occurred_at,
        }


def case_status_changed(case_id, from_status, to_status, actor, **extra) -> LifecycleEvent:
    return LifecycleEvent(
        EventType.CASE_STATUS_CHANGED,
        case_id,
        {"from": from_status.value, "to": to_status.value, **extra},
        actor_role=actor.role.value,
        actor_id=actor.id,
    )


def appointment_status_changed(appointment, from_status, to_status, actor) -> LifecycleEvent:
    return LifecycleEvent(
        EventType.APPOINTMENT_STATUS_CHANGED,
        appointment.case_id,
        {"appointment_id": appointment.id, "from": from_status.value, "to": to_status.value},
        actor_role=actor.role.value,
        actor_id=actor.id,
    )


class EventDispatcher:
    """Delivers committed events to subscribers.

    Delivery is fire-and-forget: a failing subscriber is logged and the
    remaining subscribers still run. Events are already persisted in the
    lifecycle_events table before dispatch, so nothing is lost.
    """

    def __init__(self):
        self._subscribers: list[Callable[[LifecycleEvent], None]] = []

    def subscribe(self, handler: Callable[[LifecycleEvent], None]) -> None:
        self._subscribers.append(handler)

    def dispatch(self, events: list[LifecycleEvent]) -> None:
        for event in events:
            for handler in self._subscribers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event subscriber failed",
                        extra={"event_id": event.id, "event_type": event.event_type.value},
                    )
