"""Reschedule request repository."""

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from consult_lifecycle.status_model import RescheduleStatus


@dataclass
class RescheduleRequest:
    id: str
    appointment_id: str
    case_id: str
    requested_by_role: str
    requested_by_id: str
    preferred_times: list[str] = field(default_factory=list)
    reason: str | None = None
    status: RescheduleStatus = RescheduleStatus.PENDING
    chosen_time: str | None = None
    resolved_by_id: str | None = None
    created_at: str | None = None
    resolved_at: str | None = None


class RescheduleRepository:
    """Repository for reschedule negotiation rows."""

    def create(self, conn: sqlite3.Connection, request: RescheduleRequest) -> RescheduleRequest:
        """Insert a PENDING request."""
        request.id = request.id or str(uuid.uuid4())
        now = datetime.now().isoformat()

        conn.execute("""
            INSERT INTO reschedule_requests (
                id, appointment_id, case_id, requested_by_role, requested_by_id,
                status, preferred_times, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            request.id, request.appointment_id, request.case_id,
            request.requested_by_role, request.requested_by_id,
            request.status.value, json.dumps(request.preferred_times),
            request.reason, now
        ))

        request.created_at = now
        return request

    def get_by_id(self, conn: sqlite3.Connection, request_id: str) -> RescheduleRequest | None:
        """Get a reschedule request by ID."""
        row = conn.execute("SELECT * FROM reschedule_requests WHERE id = ?", (request_id,)).fetchone()
        return self._row_to_request(row) if row else None

    def get_pending_for_appointment(
        self, conn: sqlite3.Connection, appointment_id: str
    ) -> RescheduleRequest | None:
        """The open request on an appointment, if any."""
        row = conn.execute(
            "SELECT * FROM reschedule_requests WHERE appointment_id = ? AND status = 'PENDING'",
            (appointment_id,),
        ).fetchone()
        return self._row_to_request(row) if row else None

    def list_for_case(self, conn: sqlite3.Connection, case_id: str) -> list[RescheduleRequest]:
        """Negotiation history for a case, newest first."""
        rows = conn.execute(
            "SELECT * FROM reschedule_requests WHERE case_id = ? ORDER BY created_at DESC",
            (case_id,),
        ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def resolve(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        status: RescheduleStatus,
        resolved_by_id: str,
        chosen_time: str | None = None,
    ) -> RescheduleRequest | None:
        """Close a PENDING request. Returns None if it was already resolved."""
        now = datetime.now().isoformat()
        cursor = conn.execute(
            """UPDATE reschedule_requests
               SET status = ?, resolved_by_id = ?, chosen_time = ?, resolved_at = ?
               WHERE id = ? AND status = 'PENDING'""",
            (status.value, resolved_by_id, chosen_time, now, request_id),
        )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(conn, request_id)

    def _row_to_request(self, row) -> RescheduleRequest:
        """Convert a database row to a RescheduleRequest object."""
        return RescheduleRequest(
            id=row["id"],
            appointment_id=row["appointment_id"],
            case_id=row["case_id"],
            requested_by_role=row["requested_by_role"],
            requested_by_id=row["requested_by_id"],
            preferred_times=json.loads(row["preferred_times"]) if row["preferred_times"] else [],
            reason=row["reason"],
            status=RescheduleStatus(row["status"]),
            chosen_time=row["chosen_time"],
            resolved_by_id=row["resolved_by_id"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )
