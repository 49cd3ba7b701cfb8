# app/x402/client.py
"""
Buyer-side helper for calling x402-protected endpoints.

On a 402 answer the client picks the first acceptable requirement, asks a
signer for a payment payload document, and retries once with X-PAYMENT.
Producing the signature is the signer's job; this module only speaks the
HTTP side of the protocol.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from app.x402.models import PaymentRequirements, SettlementReceipt
from app.x402.receipts import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_response,
    encode_payment_header,
)

logger = logging.getLogger(__name__)

PaymentSigner = Callable[
    [PaymentRequirements],
    Union[Dict[str, Any], Awaitable[Dict[str, Any]]],
]


@dataclass
class PaidResponse:
    response: httpx.Response
    receipt: Optional[SettlementReceipt] = None
    requirements: Optional[PaymentRequirements] = None

    @property
    def paid(self) -> bool:
        return self.receipt is not None and self.receipt.success


class X402Client:
    """Async HTTP client that pays for 402-protected resources."""

    def __init__(
        self,
        signer: PaymentSigner,
        base_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self._signer = signer
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def __aenter__(self) -> "X402Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, url: str, **kwargs) -> PaidResponse:
        """
        Send a request, paying once if the server answers 402.

        Returns:
            PaidResponse with the final response and the decoded receipt
            (None when no payment was needed or the payment was refused).
        """
        response = await self._client.request(method, url, **kwargs)
        if response.status_code != 402:
            return PaidResponse(response=response)

        requirements = self._select_requirements(response)
        if requirements is None:
            return PaidResponse(response=response)

        logger.info(
            f"Paying {requirements.max_amount_required} of {requirements.asset} "
            f"on {requirements.network} for {requirements.resource}"
        )
        document = self._signer(requirements)
        if inspect.isawaitable(document):
            document = await document

        headers = dict(kwargs.pop("headers", None) or {})
        headers[X_PAYMENT_HEADER] = encode_payment_header(document)
        paid = await self._client.request(method, url, headers=headers, **kwargs)

        receipt = decode_payment_response(paid.headers.get(X_PAYMENT_RESPONSE_HEADER))
        if paid.status_code == 402:
            logger.warning(f"Payment refused for {url}: {_error_of(paid)}")
        return PaidResponse(response=paid, receipt=receipt, requirements=requirements)

    async def get(self, url: str, **kwargs) -> PaidResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> PaidResponse:
        return await self.request("POST", url, **kwargs)

    @staticmethod
    def _select_requirements(response: httpx.Response) -> Optional[PaymentRequirements]:
        try:
            body = response.json()
        except ValueError:
            logger.warning("402 response body is not JSON")
            return None
        if not isinstance(body, dict):
            logger.warning("402 response body is not a JSON object")
            return None
        accepts = body.get("accepts")
        if not isinstance(accepts, list):
            accepts = []
        for option in accepts:
            if isinstance(option, dict) and option.get("scheme") == "exact":
                return PaymentRequirements.model_validate(option)
        logger.warning("402 response offers no supported payment scheme")
        return None


def _error_of(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    return body.get("error", "") if isinstance(body, dict) else ""
