"""Coupon ledger backed by the coupons table."""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class Coupon:
    code: str
    value: int
    assigned_patient_id: str | None = None
    currency: str = "USD"
    status: str = "AVAILABLE"
    expires_at: str | None = None
    redeemed_at: str | None = None
    redeemed_appointment_id: str | None = None
    created_at: str | None = None

    def is_past_expiry(self, now: datetime | None = None) -> bool:
        """True when expires_at is set and already behind us."""
        if not self.expires_at:
            return False
        # fromisoformat only accepts a trailing Z from Python 3.11
        expires = datetime.fromisoformat(self.expires_at.replace("Z", "+00:00"))
        if now is None:
            now = datetime.now(timezone.utc) if expires.tzinfo else datetime.now()
        elif expires.tzinfo and now.tzinfo is None:
            now = now.astimezone()
        elif now.tzinfo and expires.tzinfo is None:
            expires = expires.astimezone()
        return expires < now


class CouponRepository:
    """Coupon lookups are always scoped to the patient the coupon belongs to."""

    def create(self, conn: sqlite3.Connection, coupon: Coupon) -> Coupon:
        """Issue a coupon."""
        now = datetime.now().isoformat()
        conn.execute("""
            INSERT INTO coupons (code, assigned_patient_id, value, currency, status, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            coupon.code, coupon.assigned_patient_id, coupon.value, coupon.currency,
            coupon.status, coupon.expires_at, now
        ))
        coupon.created_at = now
        return coupon

    def lookup(self, conn: sqlite3.Connection, code: str, patient_id: str) -> Coupon | None:
        """Find a coupon by code for a patient. Other patients' coupons are invisible."""
        row = conn.execute(
            "SELECT * FROM coupons WHERE code = ? AND assigned_patient_id = ?",
            (code, patient_id),
        ).fetchone()
        return self._row_to_coupon(row) if row else None

    def list_available(self, conn: sqlite3.Connection, patient_id: str) -> list[Coupon]:
        """Coupons a patient can still use."""
        rows = conn.execute(
            """SELECT * FROM coupons
               WHERE assigned_patient_id = ? AND status = 'AVAILABLE'
               ORDER BY expires_at""",
            (patient_id,),
        ).fetchall()
        return [c for c in (self._row_to_coupon(row) for row in rows) if not c.is_past_expiry()]

    def mark_redeemed(self, conn: sqlite3.Connection, code: str, appointment_id: str) -> bool:
        """Flip AVAILABLE -> REDEEMED. False if someone redeemed it first."""
        now = datetime.now().isoformat()
        cursor = conn.execute(
            """UPDATE coupons
               SET status = 'REDEEMED', redeemed_at = ?, redeemed_appointment_id = ?
               WHERE code = ? AND status = 'AVAILABLE'""",
            (now, appointment_id, code),
        )
        return cursor.rowcount == 1

    def _row_to_coupon(self, row) -> Coupon:
        """Convert a database row to a Coupon object."""
        return Coupon(
            code=row["code"],
            value=row["value"],
            assigned_patient_id=row["assigned_patient_id"],
            currency=row["currency"],
            status=row["status"],
            expires_at=row["expires_at"],
            redeemed_at=row["redeemed_at"],
            redeemed_appointment_id=row["redeemed_appointment_id"],
            created_at=row["created_at"],
        )
