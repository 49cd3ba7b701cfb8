# app/x402/receipts.py
"""
X-PAYMENT / X-PAYMENT-RESPONSE header codecs.

Both headers carry base64-encoded JSON. The server encodes settlement receipts
and decodes payment payloads; clients do the reverse.
"""
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from app.x402.errors import MalformedPayment
from app.x402.models import PaymentPayload, SettleResponse, SettlementReceipt

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


def _b64decode_json(value: str) -> Any:
    raw = base64.b64decode(value.strip(), validate=True)
    return json.loads(raw.decode("utf-8"))


def _b64encode_json(obj: Dict[str, Any]) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_payment_header(header_value: str) -> PaymentPayload:
    """
    Decode the X-PAYMENT header into a PaymentPayload.

    Raises:
        MalformedPayment: on bad base64, bad JSON, or missing/invalid fields.
    """
    if not header_value or not header_value.strip():
        raise MalformedPayment("X-PAYMENT header is empty")

    try:
        document = _b64decode_json(header_value)
    except (binascii.Error, ValueError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors too
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        raise MalformedPayment("Invalid X-PAYMENT header format") from e

    if not isinstance(document, dict):
        raise MalformedPayment("X-PAYMENT header must encode a JSON object")

    try:
        return PaymentPayload.from_document(document)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) or err["msg"] for err in e.errors()
        )
        logger.warning(f"X-PAYMENT payload failed validation: {fields}")
        raise MalformedPayment(f"Invalid payment payload: {fields}") from e


def encode_payment_header(document: Dict[str, Any]) -> str:
    """Client side: encode a payment payload document for X-PAYMENT."""
    return _b64encode_json(document)


def build_receipt(
    settle_response: SettleResponse,
    payload: PaymentPayload,
    settled_at: Optional[datetime] = None,
) -> SettlementReceipt:
    """Receipt for a successful settlement, falling back to payload fields."""
    settled_at = settled_at or datetime.now(timezone.utc)
    return SettlementReceipt(
        success=settle_response.success,
        network=settle_response.network or payload.network,
        payer=settle_response.payer or payload.payer,
        transaction_reference=settle_response.transaction,
        settled_at=settled_at.isoformat(),
    )


def encode_payment_response(receipt: SettlementReceipt) -> str:
    """
    Encode a settlement receipt for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    return _b64encode_json(receipt.model_dump(by_alias=True))


def decode_payment_response(header_value: Optional[str]) -> Optional[SettlementReceipt]:
    """
    Client side: decode an X-PAYMENT-RESPONSE header.

    Returns:
        The receipt, or None if the header is missing or unreadable.
    """
    if not header_value:
        return None
    try:
        return SettlementReceipt.model_validate(_b64decode_json(header_value))
    except (binascii.Error, ValueError) as e:
        # pydantic's ValidationError is a ValueError as well
        logger.warning(f"Failed to decode X-PAYMENT-RESPONSE header: {e}")
        return None
