# app/x402/challenge.py
"""
Builds HTTP 402 Payment Required challenges.

Body shape (x402 v1):
    {"x402Version": 1, "error": "...", "reason": "...", "accepts": [requirements]}

Each route is bound to exactly one facilitator, so ``accepts`` always has a
single element, but stays a list for clients that understand multi-option
challenges.
"""
import logging
from typing import Any, Dict, Optional

from starlette.responses import JSONResponse

from app.x402.errors import X402Error
from app.x402.models import X402_VERSION, PaymentRequirementTemplate, PaymentRequirements

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_REASON = "PaymentRequired"
PAYMENT_REQUIRED_MESSAGE = "X-PAYMENT header is required"


def build_payment_requirements(
    template: PaymentRequirementTemplate,
    resource_url: str,
) -> PaymentRequirements:
    """
    Turn a registered template into the concrete requirements for one request.

    Args:
        template: The route's payment terms
        resource_url: Fully qualified URL of the requested resource

    Returns:
        PaymentRequirements with maxAmountRequired as a decimal string
    """
    return PaymentRequirements(
        scheme=template.scheme,
        network=template.network,
        max_amount_required=str(template.price),
        resource=resource_url,
        description=template.description,
        mime_type=template.mime_type,
        pay_to=template.pay_to,
        max_timeout_seconds=template.max_timeout_seconds,
        asset=template.asset,
        extra=template.extra,
    )


def build_challenge(
    template: PaymentRequirementTemplate,
    resource_url: str,
    error: str = PAYMENT_REQUIRED_MESSAGE,
    reason: str = PAYMENT_REQUIRED_REASON,
) -> Dict[str, Any]:
    requirements = build_payment_requirements(template, resource_url)
    return {
        "x402Version": X402_VERSION,
        "error": error,
        "reason": reason,
        "accepts": [requirements.model_dump(by_alias=True)],
    }


def create_402_response(
    template: PaymentRequirementTemplate,
    resource_url: str,
    error: Optional[X402Error] = None,
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        template: The route's payment terms
        resource_url: Fully qualified URL of the requested resource
        error: Denial to report; None means no payment was offered

    Returns:
        JSONResponse with 402 status and payment details
    """
    if error is None:
        body = build_challenge(template, resource_url)
    else:
        body = build_challenge(template, resource_url, error=error.message, reason=error.reason)

    return JSONResponse(status_code=402, content=body)


def create_error_response(error: X402Error) -> JSONResponse:
    """Non-402 denial (facilitator outage, internal fault) without a challenge."""
    return JSONResponse(
        status_code=error.status_code,
        content={"x402Version": X402_VERSION, **error.to_dict()},
    )
