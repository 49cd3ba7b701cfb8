# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Looks up the payment terms of the requested route
2. Passes unpaid routes straight through
3. Returns 402 Payment Required when no valid payment is offered
4. Verifies and settles X-PAYMENT via the route's facilitator
5. Adds X-PAYMENT-RESPONSE to the response of a paid request

The payment decision itself lives in PaymentGate; this module only maps its
outcome onto HTTP.
"""
import logging
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.x402.challenge import create_402_response, create_error_response
from app.x402.dependencies import PAYMENT_STATE_KEY, PaymentContext
from app.x402.errors import InternalError
from app.x402.gate import GateOutcome, GateState, PaymentGate
from app.x402.receipts import X_PAYMENT_HEADER, X_PAYMENT_RESPONSE_HEADER, encode_payment_response

logger = logging.getLogger(__name__)

INTERNAL_SERVER_ERROR_BODY = {
    "success": False,
    "error": "Internal server error",
    "message": "An unexpected error occurred",
}


def internal_server_error_response() -> JSONResponse:
    """Generic 500 for handler failures; details go to logs only."""
    return JSONResponse(status_code=500, content=INTERNAL_SERVER_ERROR_BODY)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def get_resource_url(request: Request) -> str:
    """Fully qualified URL of the requested resource, without query string."""
    return str(request.url.replace(query=""))


def outcome_to_response(outcome: GateOutcome) -> Response:
    """HTTP response for a CHALLENGED or DENIED outcome."""
    if outcome.state is GateState.CHALLENGED:
        return create_402_response(outcome.entry.template, outcome.resource_url)

    error = outcome.error or InternalError()
    if error.status_code == 402:
        return create_402_response(outcome.entry.template, outcome.resource_url, error)
    return create_error_response(error)


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate middleware for FastAPI.

    Business handlers behind a paid route only run once the payment has been
    settled; they can read the receipt with get_payment_context().
    """

    def __init__(self, app, gate: PaymentGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        payment_header = request.headers.get(X_PAYMENT_HEADER)

        try:
            outcome = await self.gate.process(
                method=request.method,
                path=request.url.path,
                resource_url=get_resource_url(request),
                payment_header=payment_header,
                client_ip=get_client_ip(request),
            )
        except Exception:
            logger.exception(f"x402: Payment gate failed for {request.method} {request.url.path}")
            return create_error_response(InternalError())

        if outcome.state is not GateState.GRANTED:
            return outcome_to_response(outcome)

        if not outcome.paid:
            # Not a paid route
            return await call_next(request)

        setattr(request.state, PAYMENT_STATE_KEY, PaymentContext(granted=True, receipt=outcome.receipt))

        try:
            response = await call_next(request)
        except Exception:
            # Settled already: the payer still gets the receipt with the 500
            logger.exception(
                f"x402: Handler failed after settlement for {request.method} {request.url.path}"
            )
            response = internal_server_error_response()
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(outcome.receipt)
        return response
