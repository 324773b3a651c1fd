"""Fee composition and display helpers.

All amounts are integer minor units. Settlement only ever compares against
the appointment's consultation fee; the breakdown here is for quoting and
display.
"""

from dataclasses import dataclass

from consult_lifecycle import config


@dataclass(frozen=True)
class FeeBreakdown:
    consultation_fee: int
    platform_fee: int
    processing_fee: int
    currency: str

    @property
    def total(self) -> int:
        return self.consultation_fee + self.platform_fee + self.processing_fee


def platform_surcharge(base: int, rate_bps: int) -> int:
    """Basis-point surcharge, rounded half up to the nearest minor unit."""
    if base < 0 or rate_bps < 0:
        raise ValueError("Fee and rate must be non-negative")
    return (base * rate_bps + 5_000) // 10_000


def compose_fee(
    consultation_fee: int,
    rate_bps: int | None = None,
    processing_fee: int | None = None,
    currency: str | None = None,
) -> FeeBreakdown:
    """Break a consultation fee into what the patient sees on the payment page."""
    rate_bps = config.PLATFORM_FEE_BPS if rate_bps is None else rate_bps
    processing_fee = config.PROCESSING_FEE_MINOR if processing_fee is None else processing_fee
    return FeeBreakdown(
        consultation_fee=consultation_fee,
        platform_fee=platform_surcharge(consultation_fee, rate_bps),
        processing_fee=processing_fee,
        currency=currency or config.DEFAULT_CURRENCY,
    )


def format_minor_units(amount: int, currency: str = "USD") -> str:
    """Render 12345 as '123.45 USD'."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{major:,}.{minor:02d} {currency}"
