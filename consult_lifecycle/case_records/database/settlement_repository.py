"""Payment settlement repository."""

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime


@dataclass
class PaymentSettlement:
    id: str
    appointment_id: str
    case_id: str
    method: str
    amount: int
    currency: str = "USD"
    coupon_code: str | None = None
    transaction_ref: str | None = None
    settled_by_id: str | None = None
    settled_at: str | None = None


class SettlementRepository:
    """Repository for settlement rows (at most one per appointment)."""

    def create(self, conn: sqlite3.Connection, settlement: PaymentSettlement) -> PaymentSettlement:
        """Record a settlement."""
        settlement.id = settlement.id or str(uuid.uuid4())
        now = datetime.now().isoformat()

        conn.execute("""
            INSERT INTO payment_settlements (
                id, appointment_id, case_id, method, amount, currency,
                coupon_code, transaction_ref, settled_by_id, settled_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            settlement.id, settlement.appointment_id, settlement.case_id,
            settlement.method, settlement.amount, settlement.currency,
            settlement.coupon_code, settlement.transaction_ref,
            settlement.settled_by_id, now
        ))

        settlement.settled_at = now
        return settlement

    def get_for_appointment(self, conn: sqlite3.Connection, appointment_id: str) -> PaymentSettlement | None:
        """Get the settlement recorded against an appointment."""
        row = conn.execute(
            "SELECT * FROM payment_settlements WHERE appointment_id = ?", (appointment_id,)
        ).fetchone()
        return self._row_to_settlement(row) if row else None

    def list_for_case(self, conn: sqlite3.Connection, case_id: str) -> list[PaymentSettlement]:
        rows = conn.execute(
            "SELECT * FROM payment_settlements WHERE case_id = ? ORDER BY settled_at",
            (case_id,),
        ).fetchall()
        return [self._row_to_settlement(row) for row in rows]

    def _row_to_settlement(self, row) -> PaymentSettlement:
        """Convert a database row to a PaymentSettlement object."""
        return PaymentSettlement(
            id=row["id"],
            appointment_id=row["appointment_id"],
            case_id=row["case_id"],
            method=row["method"],
            amount=row["amount"],
            currency=row["currency"],
            coupon_code=row["coupon_code"],
            transaction_ref=row["transaction_ref"],
            settled_by_id=row["settled_by_id"],
            settled_at=row["settled_at"],
        )
