"""Tests for the case, appointment and reschedule state graphs."""

import pytest

from consult_lifecycle.errors import InvalidTransition
from consult_lifecycle.status_model import (
    ASSIGNED_CLASS,
    AppointmentStatus,
    CaseStatus,
    RescheduleStatus,
    can_transition,
    doctor_assignment_consistent,
    is_override_edge,
    is_terminal,
    next_states,
    require_transition,
)


class TestCaseGraph:
    """Tests for case edges."""

    def test_happy_path_is_connected(self):
        path = [
            CaseStatus.SUBMITTED,
            CaseStatus.PENDING,
            CaseStatus.ASSIGNED,
            CaseStatus.ACCEPTED,
            CaseStatus.SCHEDULED,
            CaseStatus.PAYMENT_PENDING,
            CaseStatus.IN_PROGRESS,
            CaseStatus.CONSULTATION_COMPLETE,
            CaseStatus.CLOSED,
        ]
        for current, following in zip(path, path[1:]):
            assert can_transition(current, following)

    def test_doctor_can_reject_assigned_case(self):
        assert next_states(CaseStatus.ASSIGNED) == {
            CaseStatus.ACCEPTED,
            CaseStatus.REJECTED,
            CaseStatus.CLOSED,
        }

    @pytest.mark.parametrize("state", [CaseStatus.REJECTED, CaseStatus.CLOSED])
    def test_terminal_states_have_no_exits(self, state):
        assert is_terminal(state)
        assert next_states(state) == frozenset()

    def test_no_skipping_ahead(self):
        assert not can_transition(CaseStatus.SUBMITTED, CaseStatus.ASSIGNED)
        assert not can_transition(CaseStatus.ACCEPTED, CaseStatus.PAYMENT_PENDING)
        assert not can_transition(CaseStatus.SCHEDULED, CaseStatus.IN_PROGRESS)

    def test_no_moving_backwards(self):
        assert not can_transition(CaseStatus.SCHEDULED, CaseStatus.ACCEPTED)
        assert not can_transition(CaseStatus.CLOSED, CaseStatus.SUBMITTED)

    def test_every_open_state_can_be_closed(self):
        for state in CaseStatus:
            if not is_terminal(state):
                assert can_transition(state, CaseStatus.CLOSED)

    def test_override_edges(self):
        assert is_override_edge(CaseStatus.SCHEDULED, CaseStatus.CLOSED)
        assert is_override_edge(CaseStatus.SUBMITTED, CaseStatus.CLOSED)
        # Normal closure after the consultation
        assert not is_override_edge(CaseStatus.CONSULTATION_COMPLETE, CaseStatus.CLOSED)
        assert not is_override_edge(CaseStatus.REJECTED, CaseStatus.CLOSED)


class TestAppointmentGraph:
    """Tests for appointment edges."""

    def test_payment_path(self):
        assert can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.PAYMENT_PENDING)
        assert can_transition(AppointmentStatus.PAYMENT_PENDING, AppointmentStatus.CONFIRMED)
        assert can_transition(AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS)
        assert can_transition(AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED)

    def test_cannot_confirm_without_payment_pending(self):
        assert not can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)

    @pytest.mark.parametrize("state", [
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.PAYMENT_PENDING,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
    ])
    def test_cancel_and_no_show_before_completion(self, state):
        assert can_transition(state, AppointmentStatus.CANCELLED)
        assert can_transition(state, AppointmentStatus.NO_SHOW)

    def test_only_unpaid_appointments_reschedule(self):
        assert can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED)
        assert can_transition(AppointmentStatus.PAYMENT_PENDING, AppointmentStatus.RESCHEDULED)
        assert not can_transition(AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULED)

    @pytest.mark.parametrize("state", [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    ])
    def test_terminal_states(self, state):
        assert is_terminal(state)


class TestRescheduleGraph:
    def test_pending_resolves_once(self):
        assert can_transition(RescheduleStatus.PENDING, RescheduleStatus.APPROVED)
        assert can_transition(RescheduleStatus.PENDING, RescheduleStatus.REJECTED)
        assert not can_transition(RescheduleStatus.APPROVED, RescheduleStatus.REJECTED)
        assert not can_transition(RescheduleStatus.REJECTED, RescheduleStatus.PENDING)


class TestRequireTransition:
    def test_raises_with_both_states(self):
        with pytest.raises(InvalidTransition) as exc_info:
            require_transition(CaseStatus.SUBMITTED, CaseStatus.SCHEDULED)
        assert exc_info.value.from_state == CaseStatus.SUBMITTED
        assert exc_info.value.to_state == CaseStatus.SCHEDULED
        assert exc_info.value.details == {"from_state": "SUBMITTED", "to_state": "SCHEDULED"}

    def test_legal_edge_passes(self):
        require_transition(CaseStatus.PENDING, CaseStatus.ASSIGNED)

    def test_mixed_graphs_never_connect(self):
        assert not can_transition(CaseStatus.SCHEDULED, AppointmentStatus.PAYMENT_PENDING)


class TestDoctorAssignment:
    def test_assigned_class_requires_doctor(self):
        for state in ASSIGNED_CLASS - {CaseStatus.CLOSED}:
            assert doctor_assignment_consistent(state, "d-001")
            assert not doctor_assignment_consistent(state, None)

    def test_unassigned_states_forbid_doctor(self):
        for state in (CaseStatus.SUBMITTED, CaseStatus.PENDING, CaseStatus.REJECTED):
            assert doctor_assignment_consistent(state, None)
            assert not doctor_assignment_consistent(state, "d-001")

    def test_closed_either_way(self):
        assert doctor_assignment_consistent(CaseStatus.CLOSED, None)
        assert doctor_assignment_consistent(CaseStatus.CLOSED, "d-001")
