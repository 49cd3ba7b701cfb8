# app/x402/models.py
"""
Pydantic models for the x402 payment gate.

Wire models use camelCase aliases (``maxAmountRequired``, ``payTo``, ...) and
accept either the alias or the python name when parsing.
"""
from typing import Any, Dict, FrozenSet, Literal, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator

X402_VERSION = 1


def normalize_method(method: str) -> str:
    return method.strip().upper()


def normalize_path(path: str) -> str:
    """
    Paths match exactly, as the router does.

    ``/api/weather/`` is not ``/api/weather``: the router only redirects it, so
    charging for it would settle a payment that never reaches the handler.
    """
    path = path.strip() or "/"
    if not path.startswith("/"):
        path = "/" + path
    return path


def normalize_route(method: str, path: str) -> Tuple[str, str]:
    return normalize_method(method), normalize_path(path)


class PaymentRequirementTemplate(BaseModel):
    """
    Registered payment terms for one route.

    ``price`` is in the asset's smallest unit (USDC: 1 = $0.000001).
    Network, address and price checks happen at registry registration time.
    """
    scheme: Literal["exact"] = "exact"
    network: str
    asset: str
    pay_to: str
    price: int
    resource_path: str
    description: str = ""
    max_timeout_seconds: int = 60
    mime_type: str = "application/json"
    extra: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True


class FacilitatorBinding(BaseModel):
    """A facilitator service, the network it settles on and the routes it owns."""
    name: str
    facilitator_url: str
    network: str
    routes: FrozenSet[Tuple[str, str]] = frozenset()

    class Config:
        frozen = True

    @field_validator("routes", mode="before")
    @classmethod
    def _normalize_routes(cls, routes):
        return frozenset(normalize_route(method, path) for method, path in routes)

    @field_validator("facilitator_url")
    @classmethod
    def _strip_trailing_slash(cls, url: str) -> str:
        return str(url).rstrip("/")


class PaymentRequirements(BaseModel):
    """One entry of the ``accepts`` array of a 402 challenge."""
    scheme: str
    network: str
    max_amount_required: str = Field(..., alias="maxAmountRequired")
    resource: str
    description: str = ""
    mime_type: str = Field("application/json", alias="mimeType")
    pay_to: str = Field(..., alias="payTo")
    max_timeout_seconds: int = Field(..., alias="maxTimeoutSeconds")
    asset: str
    extra: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True


class PaymentPayload(BaseModel):
    """
    Client-submitted payment authorization, decoded from the X-PAYMENT header.

    Only the structural fields are interpreted here; the signature and anything
    else in the document are opaque and go to the facilitator untouched via
    ``raw``. Both the flat form and the x402 v1 exact EVM envelope
    (``payload.authorization``) are accepted.
    """
    network: str = Field(..., min_length=1)
    payer: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1)
    valid_after: int = Field(..., alias="validAfter", ge=0)
    valid_before: int = Field(..., alias="validBefore", ge=0)
    signed_blob: Any = Field(None, alias="signedBlob")

    _raw: Dict[str, Any] = PrivateAttr(default_factory=dict)

    class Config:
        populate_by_name = True
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def _lift_exact_evm_envelope(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "payer" in data:
            return data
        inner = data.get("payload")
        if not isinstance(inner, dict):
            return data
        authorization = inner.get("authorization")
        if not isinstance(authorization, dict):
            return data
        return {
            "network": data.get("network"),
            "payer": authorization.get("from"),
            "nonce": authorization.get("nonce"),
            "validAfter": authorization.get("validAfter"),
            "validBefore": authorization.get("validBefore"),
            "signedBlob": inner.get("signature"),
        }

    @model_validator(mode="after")
    def _check_validity_window(self) -> "PaymentPayload":
        if self.valid_after > self.valid_before:
            raise ValueError("validAfter must not be later than validBefore")
        return self

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PaymentPayload":
        payload = cls.model_validate(document)
        payload._raw = dict(document)
        return payload

    @property
    def raw(self) -> Dict[str, Any]:
        """The decoded document as the client sent it."""
        return dict(self._raw) if self._raw else self.model_dump(by_alias=True)


class VerifyResponse(BaseModel):
    is_valid: bool = Field(..., alias="isValid")
    invalid_reason: Optional[str] = Field(None, alias="invalidReason")
    payer: Optional[str] = None

    class Config:
        populate_by_name = True


class SettleResponse(BaseModel):
    success: bool
    error_reason: Optional[str] = Field(None, alias="errorReason")
    transaction: str = ""
    network: Optional[str] = None
    payer: Optional[str] = None

    class Config:
        populate_by_name = True


class SettlementReceipt(BaseModel):
    """Proof of settlement returned to the caller in X-PAYMENT-RESPONSE."""
    success: bool
    network: str
    payer: Optional[str] = None
    transaction_reference: str = Field("", alias="transaction")
    settled_at: Optional[str] = Field(None, alias="settledAt")

    class Config:
        populate_by_name = True
