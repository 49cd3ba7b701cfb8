# tests/conftest.py
"""
Shared fixtures for the x402 gate tests.

FakeFacilitator stands in for a remote facilitator: it records every call and
answers with configurable verify/settle results.
"""
import asyncio
import base64
import json
import time
import uuid
from typing import Any, Dict, List, Optional

import pytest

from app.core.config import load_settings
from app.x402.errors import FacilitatorUnavailable
from app.x402.models import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

EVM_PAYEE = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
SOLANA_PAYEE = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
EVM_PAYER = "0x857b06519E91e3A54538791bDbb0E22373e36b66"
SOLANA_PAYER = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeFacilitator:
    """In-process facilitator double with call recording."""

    def __init__(self, name: str, network: Optional[str] = None):
        self.name = name
        self.network = network
        self.verify_calls: List[PaymentPayload] = []
        self.settle_calls: List[PaymentPayload] = []
        self.is_valid = True
        self.invalid_reason: Optional[str] = None
        self.settle_success = True
        self.settle_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.settle_delay = 0.0
        self.verify_delay = 0.0
        self.closed = False

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        self.verify_calls.append(payload)
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if self.verify_error is not None:
            raise self.verify_error
        return VerifyResponse(is_valid=self.is_valid, invalid_reason=self.invalid_reason, payer=payload.payer)

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        self.settle_calls.append(payload)
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        if self.settle_error is not None:
            raise self.settle_error
        if not self.settle_success:
            return SettleResponse(success=False, error_reason="insufficient_funds")
        return SettleResponse(
            success=True,
            transaction=f"tx-{len(self.settle_calls)}",
            network=requirements.network,
            payer=payload.payer,
        )

    def go_offline(self) -> None:
        self.settle_error = FacilitatorUnavailable(f"Facilitator '{self.name}' timed out during settle", status_code=504)

    def come_back(self) -> None:
        self.settle_error = None

    async def aclose(self) -> None:
        self.closed = True


def make_payload_document(
    payer: str = EVM_PAYER,
    network: str = "base-sepolia",
    nonce: Optional[str] = None,
    valid_after: Optional[int] = None,
    valid_before: Optional[int] = None,
) -> Dict[str, Any]:
    now = int(time.time())
    return {
        "network": network,
        "payer": payer,
        "nonce": nonce or "0x" + uuid.uuid4().hex * 2,
        "validAfter": now - 60 if valid_after is None else valid_after,
        "validBefore": now + 600 if valid_before is None else valid_before,
        "signedBlob": "0x" + "ab" * 65,
    }


def encode_document(document: Any) -> str:
    return base64.b64encode(json.dumps(document).encode()).decode()


def make_payment_header(**kwargs) -> str:
    return encode_document(make_payload_document(**kwargs))


@pytest.fixture
def settings():
    return load_settings(
        EVM_ADDRESS=EVM_PAYEE,
        SOLANA_ADDRESS=SOLANA_PAYEE,
        PAYAI_FACILITATOR_URL="https://payai.example.com",
        DEXTER_FACILITATOR_URL="https://dexter.example.com/facilitator",
        HEURIST_FACILITATOR_URL="https://heurist.example.com",
        DAYDREAMS_FACILITATOR_URL="https://daydreams.example.com",
    )


@pytest.fixture
def facilitators():
    return {
        "payai": FakeFacilitator("payai", "base-sepolia"),
        "heurist": FakeFacilitator("heurist", "base-sepolia"),
        "daydreams": FakeFacilitator("daydreams", "base-sepolia"),
        "dexter": FakeFacilitator("dexter", "solana"),
    }
