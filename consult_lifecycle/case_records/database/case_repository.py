"""Case repository with versioned status updates."""

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime

from consult_lifecycle.status_model import CaseStatus


@dataclass
class Case:
    id: str
    owner_patient_id: str
    status: CaseStatus = CaseStatus.SUBMITTED
    title: str | None = None
    description: str | None = None
    urgency_level: str = "MEDIUM"
    complexity: str = "MODERATE"
    required_specialization: str | None = None
    assigned_doctor_id: str | None = None
    dependent_id: str | None = None
    rejection_reason: str | None = None
    closure_reason: str | None = None
    version: int = 1
    created_at: str | None = None
    status_changed_at: str | None = None


class CaseRepository:
    """Repository for case rows.

    Every method takes the caller's connection so that several repositories
    can write inside one transaction.
    """

    # Fields that may change together with a status change
    MUTABLE_FIELDS = ["assigned_doctor_id", "rejection_reason", "closure_reason"]

    def create(self, conn: sqlite3.Connection, case: Case) -> Case:
        """Insert a new case in SUBMITTED state."""
        case.id = case.id or str(uuid.uuid4())
        now = datetime.now().isoformat()

        conn.execute("""
            INSERT INTO cases (
                id, owner_patient_id, dependent_id, title, description,
                urgency_level, complexity, required_specialization,
                status, assigned_doctor_id, version, created_at, status_changed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            case.id, case.owner_patient_id, case.dependent_id, case.title, case.description,
            case.urgency_level, case.complexity, case.required_specialization,
            case.status.value, case.assigned_doctor_id, case.version, now, now
        ))

        case.created_at = now
        case.status_changed_at = now
        return case

    def get_by_id(self, conn: sqlite3.Connection, case_id: str) -> Case | None:
        """Get a case by ID."""
        row = conn.execute("SELECT * FROM cases WHERE id = ?", (case_id,)).fetchone()
        return self._row_to_case(row) if row else None

    def list_for_patient(self, conn: sqlite3.Connection, patient_id: str) -> list[Case]:
        """All cases owned by a patient, newest first."""
        rows = conn.execute(
            "SELECT * FROM cases WHERE owner_patient_id = ? ORDER BY created_at DESC",
            (patient_id,),
        ).fetchall()
        return [self._row_to_case(row) for row in rows]

    def list_for_doctor(self, conn: sqlite3.Connection, doctor_id: str) -> list[Case]:
        """All cases assigned to a doctor, newest first."""
        rows = conn.execute(
            "SELECT * FROM cases WHERE assigned_doctor_id = ? ORDER BY created_at DESC",
            (doctor_id,),
        ).fetchall()
        return [self._row_to_case(row) for row in rows]

    def update_status(
        self,
        conn: sqlite3.Connection,
        case_id: str,
        expected_version: int,
        status: CaseStatus,
        **fields,
    ) -> Case | None:
        """Compare-and-swap the case status.

        Returns None when the stored version no longer matches
        ``expected_version`` (someone else committed first).
        """
        now = datetime.now().isoformat()
        updates = {key: value for key, value in fields.items() if key in self.MUTABLE_FIELDS}

        set_clause = "status = ?, status_changed_at = ?, version = version + 1"
        values = [status.value, now]
        for field, value in updates.items():
            set_clause += f", {field} = ?"
            values.append(value)
        values += [case_id, expected_version]

        cursor = conn.execute(
            f"UPDATE cases SET {set_clause} WHERE id = ? AND version = ?",
            values,
        )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(conn, case_id)

    def bump_version(self, conn: sqlite3.Connection, case_id: str, expected_version: int) -> Case | None:
        """Claim the case for a change that does not move its status."""
        cursor = conn.execute(
            "UPDATE cases SET version = version + 1 WHERE id = ? AND version = ?",
            (case_id, expected_version),
        )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(conn, case_id)

    def _row_to_case(self, row) -> Case:
        """Convert a database row to a Case object."""
        return Case(
            id=row["id"],
            owner_patient_id=row["owner_patient_id"],
            status=CaseStatus(row["status"]),
            title=row["title"],
            description=row["description"],
            urgency_level=row["urgency_level"],
            complexity=row["complexity"],
            required_specialization=row["required_specialization"],
            assigned_doctor_id=row["assigned_doctor_id"],
            dependent_id=row["dependent_id"],
            rejection_reason=row["rejection_reason"],
            closure_reason=row["closure_reason"],
            version=row["version"],
            created_at=row["created_at"],
            status_changed_at=row["status_changed_at"],
        )
