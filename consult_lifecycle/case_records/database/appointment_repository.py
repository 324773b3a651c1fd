"""Appointment repository: append-only consultation history per case."""

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime

from consult_lifecycle.status_model import AppointmentStatus


@dataclass
class Appointment:
    id: str
    case_id: str
    scheduled_time: str
    consultation_fee: int
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    duration_minutes: int = 30
    consultation_type: str = "VIDEO_CONSULTATION"
    currency: str = "USD"
    reschedule_count: int = 0
    supersedes_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class AppointmentRepository:
    """Repository for appointment rows."""

    def create(self, conn: sqlite3.Connection, appointment: Appointment) -> Appointment:
        """Insert a new appointment."""
        appointment.id = appointment.id or str(uuid.uuid4())
        now = datetime.now().isoformat()

        conn.execute("""
            INSERT INTO appointments (
                id, case_id, status, scheduled_time, duration_minutes, consultation_type,
                consultation_fee, currency, reschedule_count, supersedes_id,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            appointment.id, appointment.case_id, appointment.status.value,
            appointment.scheduled_time, appointment.duration_minutes,
            appointment.consultation_type, appointment.consultation_fee,
            appointment.currency, appointment.reschedule_count,
            appointment.supersedes_id, now, now
        ))

        appointment.created_at = now
        appointment.updated_at = now
        return appointment

    def get_by_id(self, conn: sqlite3.Connection, appointment_id: str) -> Appointment | None:
        """Get an appointment by ID."""
        row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        return self._row_to_appointment(row) if row else None

    def get_active_for_case(self, conn: sqlite3.Connection, case_id: str) -> Appointment | None:
        """The case's current appointment (latest one not superseded)."""
        row = conn.execute(
            """SELECT * FROM appointments
               WHERE case_id = ? AND status != 'RESCHEDULED'
               ORDER BY reschedule_count DESC, created_at DESC
               LIMIT 1""",
            (case_id,),
        ).fetchone()
        return self._row_to_appointment(row) if row else None

    def get_history(self, conn: sqlite3.Connection, case_id: str) -> list[Appointment]:
        """All appointments for a case, oldest first."""
        rows = conn.execute(
            "SELECT * FROM appointments WHERE case_id = ? ORDER BY reschedule_count, created_at",
            (case_id,),
        ).fetchall()
        return [self._row_to_appointment(row) for row in rows]

    def update_status(
        self,
        conn: sqlite3.Connection,
        appointment_id: str,
        expected_status: AppointmentStatus,
        status: AppointmentStatus,
    ) -> Appointment | None:
        """Move an appointment only if it is still in ``expected_status``."""
        now = datetime.now().isoformat()
        cursor = conn.execute(
            """UPDATE appointments SET status = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (status.value, now, appointment_id, expected_status.value),
        )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(conn, appointment_id)

    def _row_to_appointment(self, row) -> Appointment:
        """Convert a database row to an Appointment object."""
        return Appointment(
            id=row["id"],
            case_id=row["case_id"],
            scheduled_time=row["scheduled_time"],
            consultation_fee=row["consultation_fee"],
            status=AppointmentStatus(row["status"]),
            duration_minutes=row["duration_minutes"],
            consultation_type=row["consultation_type"],
            currency=row["currency"],
            reschedule_count=row["reschedule_count"],
            supersedes_id=row["supersedes_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
