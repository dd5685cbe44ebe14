"""
Error taxonomy for credit metering and AI invocation.

Credit errors are raised before any provider call and need no cleanup.
Provider errors happen after credits may already have been charged; the
calling endpoint decides whether to refund.
"""

from typing import Optional


class CreditMeterError(Exception):
    """Base class for all credit meter errors."""

    def __init__(self, message: str, *, code: str = "credit_meter_error"):
        super().__init__(message)
        self.code = code


class InsufficientCredits(CreditMeterError):
    """Balance (or guest allowance) is below the feature cost.

    Guests are told to sign up, registered users to buy more credits.
    """

    def __init__(self, required: int, available: int, *, is_guest: bool = False):
        if is_guest:
            message = "You've used all your free credits. Sign up to get 50 more free credits!"
        else:
            message = "Insufficient credits. Please purchase more credits to continue."
        super().__init__(message, code="insufficient_credits")
        self.required = required
        self.available = available
        self.is_guest = is_guest

    @property
    def requires_signup(self) -> bool:
        return self.is_guest

    @property
    def call_to_action(self) -> str:
        return "signup" if self.is_guest else "purchase"


class FeatureDisabled(CreditMeterError):
    """AI features are switched off globally."""

    def __init__(self, message: str = "AI features are currently disabled"):
        super().__init__(message, code="feature_disabled")


class CostCeilingExceeded(CreditMeterError):
    """Worst-case cost of a single request is above the configured ceiling."""

    def __init__(self, message: str):
        super().__init__(message, code="cost_ceiling_exceeded")


class ProviderError(CreditMeterError):
    """Any upstream AI provider failure."""

    def __init__(self, message: str = "AI request failed, please try again", *, code: str = "provider_error"):
        super().__init__(message, code=code)


class ProviderTimeout(ProviderError):
    """Provider call exceeded the caller's time bound."""

    def __init__(self, timeout: Optional[float] = None):
        if timeout is not None:
            message = f"AI request timed out after {timeout:g}s"
        else:
            message = "AI request timed out"
        super().__init__(message, code="provider_timeout")
        self.timeout = timeout


class MalformedResponse(ProviderError):
    """Provider returned content that is not valid structured JSON."""

    def __init__(self, raw: Optional[str], reason: str = "response is not valid JSON"):
        super().__init__(f"Malformed AI response: {reason}", code="malformed_response")
        self.raw = raw
