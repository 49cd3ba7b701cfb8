# app/x402/dependencies.py
"""
What business handlers may ask the gate: was this request granted, and with
which receipt. Available once X402Middleware has run.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from app.x402.models import SettlementReceipt

PAYMENT_STATE_KEY = "x402"


@dataclass(frozen=True)
class PaymentContext:
    granted: bool
    receipt: Optional[SettlementReceipt] = None

    @property
    def paid(self) -> bool:
        return self.receipt is not None

    @property
    def payer(self) -> Optional[str]:
        return self.receipt.payer if self.receipt else None

    @property
    def network(self) -> Optional[str]:
        return self.receipt.network if self.receipt else None


UNGATED = PaymentContext(granted=True)


def get_payment_context(request: Request) -> PaymentContext:
    """
    Payment context for the current request.

    Usable directly or as a FastAPI dependency:
    ``payment: PaymentContext = Depends(get_payment_context)``.
    Requests that never went through the gate (no middleware installed, or an
    unpaid route) read as granted without a receipt.
    """
    return getattr(request.state, PAYMENT_STATE_KEY, UNGATED)
