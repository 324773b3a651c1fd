"""Tests for the reschedule negotiation protocol."""

import pytest

from consult_lifecycle.case_records.database import transaction
from consult_lifecycle.case_records.database.appointment_repository import Appointment, AppointmentRepository
from consult_lifecycle.case_records.database.case_repository import Case, CaseRepository
from consult_lifecycle.errors import (
    AppointmentNotReschedulable,
    InvalidPayload,
    NoPreferredTimes,
    PermissionDenied,
    RescheduleRequestNotFound,
    TooManyPreferredTimes,
)
from consult_lifecycle.reschedule import MAX_PREFERRED_TIMES, RescheduleNegotiationProtocol
from consult_lifecycle.status_model import AppointmentStatus, CaseStatus, RescheduleStatus

TIMES = [f"2030-03-0{day}T09:00:00" for day in range(1, 7)]


@pytest.fixture
def protocol():
    return RescheduleNegotiationProtocol()


@pytest.fixture
def appointment():
    with transaction() as conn:
        case = CaseRepository().create(conn, Case(
            id=None,
            owner_patient_id="p-001",
            status=CaseStatus.SCHEDULED,
            assigned_doctor_id="d-001",
        ))
        return AppointmentRepository().create(conn, Appointment(
            id=None,
            case_id=case.id,
            scheduled_time="2030-01-15T10:00:00",
            consultation_fee=5_000,
        ))


class TestRequest:
    """Tests for opening a request."""

    def test_stores_times_in_order(self, protocol, appointment, patient):
        with transaction() as conn:
            request = protocol.request(conn, appointment, {"preferred_times": TIMES[:3]}, patient)
        assert request.preferred_times == TIMES[:3]
        assert request.status == RescheduleStatus.PENDING
        assert request.requested_by_id == patient.id

    def test_max_times_allowed(self, protocol, appointment, patient):
        with transaction() as conn:
            request = protocol.request(conn, appointment, {"preferred_times": TIMES[:MAX_PREFERRED_TIMES]}, patient)
        assert len(request.preferred_times) == MAX_PREFERRED_TIMES

    def test_one_too_many(self, protocol, appointment, patient):
        with pytest.raises(TooManyPreferredTimes) as exc_info, transaction() as conn:
            protocol.request(conn, appointment, {"preferred_times": TIMES}, patient)
        assert exc_info.value.details == {"count": 6, "limit": 5}

    def test_empty(self, protocol, appointment, patient):
        with pytest.raises(NoPreferredTimes), transaction() as conn:
            protocol.request(conn, appointment, {"preferred_times": []}, patient)

    def test_duplicates(self, protocol, appointment, patient):
        with pytest.raises(NoPreferredTimes), transaction() as conn:
            protocol.request(conn, appointment, {"preferred_times": [TIMES[0], TIMES[0]]}, patient)

    def test_not_a_time(self, protocol, appointment, patient):
        with pytest.raises(InvalidPayload), transaction() as conn:
            protocol.request(conn, appointment, {"preferred_times": ["next tuesday"]}, patient)

    def test_completed_appointment(self, protocol, appointment, patient):
        appointment.status = AppointmentStatus.COMPLETED
        with pytest.raises(AppointmentNotReschedulable), transaction() as conn:
            protocol.request(conn, appointment, {"preferred_times": TIMES[:1]}, patient)


class TestRespondAndCancel:
    def test_request_on_other_case(self, protocol, appointment, patient, doctor):
        with transaction() as conn:
            request = protocol.request(conn, appointment, {"preferred_times": TIMES[:1]}, patient)

        with pytest.raises(RescheduleRequestNotFound), transaction() as conn:
            protocol.respond(conn, "another-case", {"request_id": request.id, "decision": "REJECT"}, doctor)

    def test_unknown_decision(self, protocol, appointment, patient, doctor):
        with transaction() as conn:
            request = protocol.request(conn, appointment, {"preferred_times": TIMES[:1]}, patient)

        with pytest.raises(InvalidPayload), transaction() as conn:
            protocol.respond(conn, appointment.case_id, {"request_id": request.id, "decision": "MAYBE"}, doctor)

    def test_only_requester_cancels(self, protocol, appointment, patient, supervisor):
        with transaction() as conn:
            request = protocol.request(conn, appointment, {"preferred_times": TIMES[:1]}, patient)

        with pytest.raises(PermissionDenied), transaction() as conn:
            protocol.cancel(conn, appointment.case_id, request.id, supervisor)

        with transaction() as conn:
            cancelled = protocol.cancel(conn, appointment.case_id, request.id, patient)
        assert cancelled.status == RescheduleStatus.REJECTED
        assert cancelled.resolved_by_id == patient.id
