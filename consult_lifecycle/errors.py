"""Error taxonomy for lifecycle operations.

Every error a caller can recover from derives from ``LifecycleError`` and
carries a stable ``code`` plus structured ``details`` so a client can render
an actionable message without parsing strings. Storage errors (``sqlite3``)
are never wrapped.
"""


class LifecycleError(Exception):
    """Base class for recoverable lifecycle failures."""

    code = "lifecycle_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        """Serialize for API/console output."""
        return {"code": self.code, "message": self.message, "details": self.details}


# Lookup failures

class CaseNotFound(LifecycleError):
    code = "case_not_found"


class AppointmentNotFound(LifecycleError):
    code = "appointment_not_found"


class RescheduleRequestNotFound(LifecycleError):
    code = "reschedule_request_not_found"


# Graph, permission and race failures

class InvalidTransition(LifecycleError):
    """Raised when a requested edge is not in the state graph."""

    code = "invalid_transition"

    def __init__(self, from_state, to_state, message: str | None = None):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        super().__init__(
            message or f"Cannot move from {from_value} to {to_value}",
            from_state=from_value,
            to_state=to_value,
        )
        self.from_state = from_state
        self.to_state = to_state


class PermissionDenied(LifecycleError):
    """Raised when the actor may not perform the requested transition."""

    code = "permission_denied"

    def __init__(self, decision):
        super().__init__(
            decision.message,
            reason=decision.reason.value,
            current_state=decision.current_state.value if decision.current_state else None,
            required_roles=sorted(role.value for role in decision.required_roles),
        )
        self.decision = decision
        self.reason = decision.reason


class ConcurrentModification(LifecycleError):
    code = "concurrent_modification"


class InvalidPayload(LifecycleError):
    code = "invalid_payload"


# Settlement path

class InvalidMethod(LifecycleError):
    code = "invalid_method"


class CouponNotRedeemable(LifecycleError):
    code = "coupon_not_redeemable"


class CouponExpired(LifecycleError):
    code = "coupon_expired"


class AmountMismatch(LifecycleError):
    code = "amount_mismatch"


class DuplicateSettlement(LifecycleError):
    code = "duplicate_settlement"


class SettlementFailed(LifecycleError):
    code = "settlement_failed"


class SettlementTimeout(LifecycleError):
    code = "settlement_timeout"


# Reschedule path

class AppointmentNotReschedulable(LifecycleError):
    code = "appointment_not_reschedulable"


class TooManyPreferredTimes(LifecycleError):
    code = "too_many_preferred_times"


class NoPreferredTimes(LifecycleError):
    code = "no_preferred_times"


class ExistingPendingRequest(LifecycleError):
    code = "existing_pending_request"


class ChosenTimeNotOffered(LifecycleError):
    code = "chosen_time_not_offered"
