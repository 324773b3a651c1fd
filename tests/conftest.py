"""Shared pytest fixtures."""

from datetime import datetime

import pytest

from consult_lifecycle import config
from consult_lifecycle.case_records.database import init_database
from consult_lifecycle.orchestrator import Intent, LifecycleOrchestrator
from consult_lifecycle.payment_processor import ChargeResult
from consult_lifecycle.permissions import Actor, Role
from consult_lifecycle.settlement import PaymentSettlementCoordinator
from consult_lifecycle.status_model import CaseStatus

CONSULTATION_FEE = 5_000
FIRST_SLOT = datetime(2030, 1, 15, 10, 0)


def schedule_payload(fee: int = CONSULTATION_FEE, when: datetime = FIRST_SLOT) -> dict:
    return {"scheduled_time": when.isoformat(), "consultation_fee": fee}


def card_payload(amount: int = CONSULTATION_FEE) -> dict:
    return {"payment_method": "CARD", "method_token": "tok_visa", "amount": amount}


class FakeProcessor:
    """Stands in for the HTTP processor; records every charge."""

    def __init__(self):
        self.calls = []
        self.error = None
        # Overrides the amount the processor reports back
        self.charged_amount = None

    def charge(self, amount, method_token, idempotency_key, currency="USD", method_type="CARD"):
        self.calls.append({
            "amount": amount,
            "method_token": method_token,
            "idempotency_key": idempotency_key,
            "currency": currency,
            "method_type": method_type,
        })
        if self.error:
            raise self.error
        charged = amount if self.charged_amount is None else self.charged_amount
        return ChargeResult(f"txn-{len(self.calls)}", charged, currency)


@pytest.fixture(autouse=True)
def lifecycle_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    db_path = tmp_path / "lifecycle.db"
    monkeypatch.setattr(config, "LIFECYCLE_DB_PATH", db_path)
    init_database()
    return db_path


@pytest.fixture
def patient():
    return Actor(Role.PATIENT, "p-001")


@pytest.fixture
def other_patient():
    return Actor(Role.PATIENT, "p-002")


@pytest.fixture
def supervisor():
    return Actor(Role.SUPERVISOR, "s-001", patient_ids=frozenset({"p-001"}))


@pytest.fixture
def doctor():
    return Actor(Role.DOCTOR, "d-001")


@pytest.fixture
def other_doctor():
    return Actor(Role.DOCTOR, "d-002")


@pytest.fixture
def admin():
    return Actor(Role.ADMIN, "a-001")


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def orchestrator(processor):
    return LifecycleOrchestrator(settlement=PaymentSettlementCoordinator(processor=processor))


@pytest.fixture
def drive(orchestrator, patient, doctor, admin):
    """Submit a case as ``patient`` and walk it forward to ``target``."""

    steps = [
        (CaseStatus.PENDING, admin, Intent.QUEUE, None),
        (CaseStatus.ASSIGNED, admin, Intent.ASSIGN, {"doctor_id": doctor.id}),
        (CaseStatus.ACCEPTED, doctor, Intent.ACCEPT, None),
        (CaseStatus.SCHEDULED, doctor, Intent.SCHEDULE, schedule_payload()),
        (CaseStatus.PAYMENT_PENDING, patient, Intent.CONFIRM_SCHEDULE, None),
        (CaseStatus.IN_PROGRESS, doctor, Intent.START, None),
        (CaseStatus.CONSULTATION_COMPLETE, doctor, Intent.COMPLETE, None),
        (CaseStatus.CLOSED, doctor, Intent.CLOSE, None),
    ]

    def _drive(target: CaseStatus, settle: bool = True) -> str:
        case_id = orchestrator.submit_case(patient, {"title": "Persistent cough"}).case_id
        if target == CaseStatus.SUBMITTED:
            return case_id
        if target == CaseStatus.REJECTED:
            _drive_to(case_id, CaseStatus.ASSIGNED, settle)
            orchestrator.transition(case_id, doctor, Intent.REJECT, {"reason": "Outside my specialty"})
            return case_id
        _drive_to(case_id, target, settle)
        return case_id

    def _drive_to(case_id, target, settle):
        for state, actor, intent, payload in steps:
            if intent == Intent.START and settle:
                orchestrator.transition(case_id, patient, Intent.SETTLE, card_payload())
            orchestrator.transition(case_id, actor, intent, payload)
            if state == target:
                return

    return _drive
