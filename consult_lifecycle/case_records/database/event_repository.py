"""Lifecycle event log: audit trail and notification outbox."""

import json
import sqlite3

from consult_lifecycle.events import EventType, LifecycleEvent


class EventRepository:
    """Append-only store of emitted events."""

    def append(self, conn: sqlite3.Connection, event: LifecycleEvent) -> None:
        """Persist an event inside the caller's transaction."""
        conn.execute("""
            INSERT INTO lifecycle_events (id, case_id, event_type, payload, actor_role, actor_id, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            event.id, event.case_id, event.event_type.value, json.dumps(event.payload),
            event.actor_role, event.actor_id, event.occurred_at
        ))

    def list_for_case(self, conn: sqlite3.Connection, case_id: str, limit: int = 100) -> list[LifecycleEvent]:
        """Event history for a case, oldest first."""
        rows = conn.execute("""
            SELECT * FROM lifecycle_events
            WHERE case_id = ?
            ORDER BY occurred_at, rowid
            LIMIT ?
        """, (case_id, limit)).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row) -> LifecycleEvent:
        """Convert a database row to a LifecycleEvent object."""
        return LifecycleEvent(
            event_type=EventType(row["event_type"]),
            case_id=row["case_id"],
            payload=json.loads(row["payload"]),
            actor_role=row["actor_role"],
            actor_id=row["actor_id"],
            id=row["id"],
            occurred_at=row["occurred_at"],
        )
