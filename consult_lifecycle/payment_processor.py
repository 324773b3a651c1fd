"""External payment processor integration for card and wallet charges."""

import requests

from consult_lifecycle import config


class PaymentProcessorError(Exception):
    """Raised when a charge could not be completed."""
    pass


class PaymentProcessorTimeout(PaymentProcessorError):
    """Raised when the processor did not answer in time. The charge state is unknown."""
    pass


class ChargeResult:
    """Outcome of a successful charge."""

    def __init__(self, transaction_ref: str, amount: int, currency: str):
        self.success = True
        self.transaction_ref = transaction_ref
        self.amount = amount
        self.currency = currency


class PaymentProcessor:
    """Thin HTTP client for the processor's charge endpoint.

    The idempotency key is sent with every charge so that retrying after a
    timeout or a lost commit never charges the patient twice.
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.api_url = api_url or config.PAYMENT_API_URL
        self.api_key = api_key if api_key is not None else config.PAYMENT_API_KEY
        self.timeout = timeout if timeout is not None else config.PAYMENT_TIMEOUT_SECONDS

    def charge(
        self,
        amount: int,
        method_token: str,
        idempotency_key: str,
        currency: str = "USD",
        method_type: str = "CARD",
    ) -> ChargeResult:
        """
        Charge ``amount`` minor units against a tokenized card or wallet.

        Returns:
            ChargeResult with the processor's transaction reference

        Raises:
            PaymentProcessorTimeout: the request timed out
            PaymentProcessorError: declined, misconfigured, or unreachable
        """
        if amount <= 0:
            raise PaymentProcessorError("Charge amount must be positive")

        if not self.api_key:
            raise PaymentProcessorError("PAYMENT_API_KEY environment variable not set")

        payload = {
            "amount": amount,
            "currency": currency,
            "payment_method": method_token,
            "method_type": method_type,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }

        try:
            response = requests.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise PaymentProcessorTimeout("Payment processor request timed out")
        except requests.exceptions.ConnectionError:
            raise PaymentProcessorError("Failed to connect to payment processor")
        except requests.exceptions.RequestException as e:
            raise PaymentProcessorError(f"Payment processor request failed: {e}")

        if response.status_code == 402:
            error = _error_body(response)
            raise PaymentProcessorError(f"Charge declined: {error.get('message', 'card declined')}")
        elif response.status_code in (401, 403):
            raise PaymentProcessorError("Payment processor rejected the API key")
        elif response.status_code != 200:
            raise PaymentProcessorError(f"Payment processor error: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise PaymentProcessorError("Payment processor returned a malformed response")
        if not isinstance(data, dict):
            raise PaymentProcessorError("Payment processor returned a malformed response")

        if data.get("status") != "succeeded" or "id" not in data:
            raise PaymentProcessorError(f"Unexpected charge status: {data.get('status', 'unknown')}")

        return ChargeResult(
            transaction_ref=data["id"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
        )


def _error_body(response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}
