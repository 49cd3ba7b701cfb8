# app/x402/facilitator.py
"""
HTTP client for an x402 facilitator.

A facilitator exposes two independent endpoints:
- POST {url}/verify  -> {"isValid": bool, "invalidReason": str | null, "payer": str}
- POST {url}/settle  -> {"success": bool, "errorReason": str | null,
                         "transaction": str, "network": str, "payer": str}

Both take {"x402Version": 1, "paymentPayload": ..., "paymentRequirements": ...}.
Calls are bounded by the requirement's maxTimeoutSeconds and never retried:
a facilitator is not assumed to be idempotent.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from app.x402.errors import FacilitatorUnavailable
from app.x402.models import (
    X402_VERSION,
    FacilitatorBinding,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)

logger = logging.getLogger(__name__)


class FacilitatorClient:
    """Talks to one facilitator on behalf of one FacilitatorBinding."""

    def __init__(
        self,
        binding: FacilitatorBinding,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            binding: The facilitator binding (URL and network) this client serves
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.binding = binding
        self._client = httpx.AsyncClient(
            base_url=binding.facilitator_url,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def name(self) -> str:
        return self.binding.name

    @property
    def url(self) -> str:
        return self.binding.facilitator_url

    async def verify(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> VerifyResponse:
        """
        Ask the facilitator whether a payment satisfies the requirements.

        Raises:
            FacilitatorUnavailable: on timeout, transport error or bad response.
        """
        status, data = await self._post("verify", payload, requirements)
        if status >= 400 and "isValid" not in data:
            return VerifyResponse(is_valid=False, invalid_reason=_rejection_reason(status, data))
        try:
            return VerifyResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Facilitator {self.name} returned an invalid verify response: {e}")
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' returned an invalid verify response"
            ) from e

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> SettleResponse:
        """
        Ask the facilitator to execute a verified payment.

        Raises:
            FacilitatorUnavailable: on timeout, transport error or bad response.
        """
        status, data = await self._post("settle", payload, requirements)
        if status >= 400 and "success" not in data:
            return SettleResponse(success=False, error_reason=_rejection_reason(status, data))
        try:
            return SettleResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Facilitator {self.name} returned an invalid settle response: {e}")
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' returned an invalid settle response"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(
        self,
        operation: str,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> Tuple[int, Dict[str, Any]]:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payload.raw,
            "paymentRequirements": requirements.model_dump(by_alias=True),
        }
        deadline = requirements.max_timeout_seconds

        try:
            response = await asyncio.wait_for(
                self._client.post(f"/{operation}", json=body, timeout=deadline),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"Facilitator {self.name} {operation} timed out after {deadline}s")
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' timed out during {operation}", status_code=504
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Facilitator {self.name} {operation} transport error: {e}")
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' is unreachable: {e}"
            ) from e

        # 4xx bodies still carry isValid/success=false with a reason
        if response.status_code >= 500:
            logger.error(
                f"Facilitator {self.name} {operation} returned HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' returned HTTP {response.status_code} during {operation}"
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Facilitator {self.name} {operation} returned non-JSON body (HTTP {response.status_code})")
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' returned an unreadable {operation} response"
            ) from e

        if not isinstance(data, dict):
            raise FacilitatorUnavailable(
                f"Facilitator '{self.name}' returned an unexpected {operation} response"
            )
        logger.debug(f"Facilitator {self.name} {operation} -> HTTP {response.status_code}")
        return response.status_code, data


def _rejection_reason(status: int, data: Dict[str, Any]) -> str:
    for key in ("invalidReason", "errorReason", "error", "message", "detail"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return f"rejected with HTTP {status}"
