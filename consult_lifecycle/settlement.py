"""Payment settlement: resolve a PAYMENT_PENDING appointment to CONFIRMED.

Exactly one method settles an appointment: a card/wallet charge through the
external processor, or redemption of a full-fee coupon from the patient's
coupon ledger. Requests naming both are rejected before the ledger or the
processor is touched.
"""

import logging
import sqlite3
from enum import Enum

from pydantic import BaseModel, Field, ValidationError, field_validator

from consult_lifecycle.case_records.database.appointment_repository import Appointment
from consult_lifecycle.case_records.database.coupon_repository import CouponRepository
from consult_lifecycle.case_records.database.settlement_repository import (
    PaymentSettlement,
    SettlementRepository,
)
from consult_lifecycle.errors import (
    AmountMismatch,
    CouponExpired,
    CouponNotRedeemable,
    DuplicateSettlement,
    InvalidMethod,
    InvalidPayload,
    InvalidTransition,
    SettlementFailed,
    SettlementTimeout,
)
from consult_lifecycle.locks import KeyedLocks
from consult_lifecycle.payment_processor import (
    ChargeResult,
    PaymentProcessor,
    PaymentProcessorError,
    PaymentProcessorTimeout,
)
from consult_lifecycle.status_model import AppointmentStatus

logger = logging.getLogger(__name__)


class PaymentMethod(Enum):
    CARD = "CARD"
    WALLET = "WALLET"
    COUPON = "COUPON"


class SettlementRequest(BaseModel):
    """What the patient (or supervisor) submitted on the payment page."""

    payment_method: PaymentMethod | None = Field(None, description="CARD, WALLET or COUPON")
    method_token: str | None = Field(None, description="Processor token for the card or wallet")
    amount: int | None = Field(None, ge=0, description="Amount in minor units")
    coupon_code: str | None = Field(None, description="Coupon to redeem instead of paying")

    @field_validator("coupon_code", "method_token", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        """Treat empty form fields as absent."""
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @classmethod
    def from_payload(cls, payload: dict | None) -> "SettlementRequest":
        try:
            return cls.model_validate(payload or {})
        except ValidationError as e:
            raise InvalidPayload("Malformed settlement request", errors=e.errors(include_url=False))

    def resolve_method(self) -> PaymentMethod:
        """Pick the single settlement method, or raise InvalidMethod."""
        paying = self.payment_method in (PaymentMethod.CARD, PaymentMethod.WALLET)

        if self.coupon_code and paying:
            raise InvalidMethod(
                "Choose either a payment method or a coupon, not both",
                payment_method=self.payment_method.value,
                coupon_code=self.coupon_code,
            )
        if self.coupon_code:
            return PaymentMethod.COUPON
        if self.payment_method == PaymentMethod.COUPON:
            raise InvalidMethod("Coupon payment needs a coupon code")
        if self.payment_method is None:
            raise InvalidMethod("No payment method or coupon code given")
        if not self.method_token:
            raise InvalidMethod(
                f"{self.payment_method.value} payment needs a method token",
                payment_method=self.payment_method.value,
            )
        return self.payment_method


class PaymentSettlementCoordinator:
    """Settlement mechanics. The orchestrator owns locking and the commit."""

    def __init__(
        self,
        processor: PaymentProcessor | None = None,
        coupons: CouponRepository | None = None,
        settlements: SettlementRepository | None = None,
    ):
        self.processor = processor or PaymentProcessor()
        self.coupons = coupons or CouponRepository()
        self.settlements = settlements or SettlementRepository()
        self._coupon_locks = KeyedLocks()

    def check_settleable(self, conn: sqlite3.Connection, appointment: Appointment) -> None:
        """Reject appointments that are already paid or can no longer be paid."""
        existing = self.settlements.get_for_appointment(conn, appointment.id)
        if existing or appointment.status in (AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS,
                                              AppointmentStatus.COMPLETED):
            raise DuplicateSettlement(
                f"Appointment {appointment.id} is already settled",
                appointment_id=appointment.id,
                appointment_status=appointment.status.value,
                settlement_id=existing.id if existing else None,
            )
        if appointment.status not in (AppointmentStatus.SCHEDULED, AppointmentStatus.PAYMENT_PENDING):
            raise InvalidTransition(appointment.status, AppointmentStatus.CONFIRMED)

    def check_amount(self, appointment: Appointment, request: SettlementRequest) -> None:
        """Guard against a tampered or stale client-side fee."""
        if request.amount != appointment.consultation_fee:
            raise AmountMismatch(
                "Payment amount does not match the consultation fee",
                expected=appointment.consultation_fee,
                received=request.amount,
                currency=appointment.currency,
            )

    def redeem_coupon(
        self,
        conn: sqlite3.Connection,
        appointment: Appointment,
        patient_id: str,
        coupon_code: str,
        settled_by_id: str,
    ) -> PaymentSettlement:
        """Redeem a full-fee coupon inside the caller's transaction."""
        with self._coupon_locks.hold(coupon_code):
            coupon = self.coupons.lookup(conn, coupon_code, patient_id)
            if coupon is None:
                raise CouponNotRedeemable(
                    f"Coupon {coupon_code} is not available to this patient",
                    coupon_code=coupon_code,
                )
            if coupon.status == "EXPIRED" or (coupon.status == "AVAILABLE" and coupon.is_past_expiry()):
                raise CouponExpired(
                    f"Coupon {coupon_code} has expired",
                    coupon_code=coupon_code,
                    expires_at=coupon.expires_at,
                )
            if coupon.status != "AVAILABLE":
                raise CouponNotRedeemable(
                    f"Coupon {coupon_code} is {coupon.status.lower()}",
                    coupon_code=coupon_code,
                    coupon_status=coupon.status,
                )
            # Full-fee coupons only: no partial redemption
            if coupon.currency != appointment.currency or coupon.value < appointment.consultation_fee:
                raise CouponNotRedeemable(
                    f"Coupon {coupon_code} does not cover the consultation fee",
                    coupon_code=coupon_code,
                    coupon_value=coupon.value,
                    consultation_fee=appointment.consultation_fee,
                )
            if not self.coupons.mark_redeemed(conn, coupon_code, appointment.id):
                raise CouponNotRedeemable(
                    f"Coupon {coupon_code} was redeemed by another request",
                    coupon_code=coupon_code,
                )

            return self.settlements.create(conn, PaymentSettlement(
                id=None,
                appointment_id=appointment.id,
                case_id=appointment.case_id,
                method=PaymentMethod.COUPON.value,
                amount=appointment.consultation_fee,
                currency=appointment.currency,
                coupon_code=coupon_code,
                settled_by_id=settled_by_id,
            ))

    def charge(self, appointment: Appointment, request: SettlementRequest, method: PaymentMethod) -> ChargeResult:
        """Call the processor. Must run outside any case lock or transaction."""
        try:
            return self.processor.charge(
                amount=appointment.consultation_fee,
                method_token=request.method_token,
                idempotency_key=f"settle-{appointment.id}",
                currency=appointment.currency,
                method_type=method.value,
            )
        except PaymentProcessorTimeout as e:
            logger.error(
                "Payment processor timed out",
                extra={"appointment_id": appointment.id, "case_id": appointment.case_id},
            )
            raise SettlementTimeout(str(e), appointment_id=appointment.id)
        except PaymentProcessorError as e:
            logger.error(
                "Payment processor rejected charge",
                extra={"appointment_id": appointment.id, "case_id": appointment.case_id, "error": str(e)},
            )
            raise SettlementFailed(str(e), appointment_id=appointment.id)

    def record_charge(
        self,
        conn: sqlite3.Connection,
        appointment: Appointment,
        method: PaymentMethod,
        charge: ChargeResult,
        settled_by_id: str,
    ) -> PaymentSettlement:
        """Store a successful card/wallet charge."""
        if (charge.amount, charge.currency) != (appointment.consultation_fee, appointment.currency):
            raise SettlementFailed(
                "Processor charged a different amount than the consultation fee",
                appointment_id=appointment.id,
                transaction_ref=charge.transaction_ref,
                expected=appointment.consultation_fee,
                expected_currency=appointment.currency,
                charged=charge.amount,
                charged_currency=charge.currency,
            )

        return self.settlements.create(conn, PaymentSettlement(
            id=None,
            appointment_id=appointment.id,
            case_id=appointment.case_id,
            method=method.value,
            amount=appointment.consultation_fee,
            currency=appointment.currency,
            transaction_ref=charge.transaction_ref,
            settled_by_id=settled_by_id,
        ))
