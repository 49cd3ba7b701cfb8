# app/x402/errors.py
"""
Error taxonomy for the x402 payment gate.

Every denial carries a short machine-readable ``reason`` (the class name) and a
human-readable ``message``. ``status_code`` is the HTTP status the middleware
answers with.
"""
from typing import Any, Dict, Optional


class X402Error(Exception):
    """Base class for payment gate errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def reason(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason}


class ConfigurationError(X402Error):
    """Fatal startup error: bad address, duplicate route, missing credential."""


class MalformedPayment(X402Error):
    """X-PAYMENT header could not be decoded or failed structural checks."""

    status_code = 402


class ReplayedPayment(X402Error):
    """The (payer, nonce, network) triple is already reserved or redeemed."""

    status_code = 402

    def __init__(self, message: str = "Payment authorization has already been used"):
        super().__init__(message)


class PaymentVerificationFailed(X402Error):
    """The facilitator rejected the payment (signature, amount, asset, network)."""

    status_code = 402


class FacilitatorUnavailable(X402Error):
    """Transport failure or timeout while talking to a facilitator."""

    status_code = 502


class InternalError(X402Error):
    """Unexpected fault inside the gate. Details go to logs only."""

    status_code = 500

    def __init__(self, message: str = "Internal payment gate error"):
        super().__init__(message)
