# app/x402/gate.py
"""
Payment gate: the per-request x402 state machine.

    UNCHALLENGED -> GRANTED                   (route is not paid)
    UNCHALLENGED -> CHALLENGED                (paid route, no X-PAYMENT)
    UNCHALLENGED -> DENIED                    (malformed payload, replayed nonce)
    UNCHALLENGED -> VERIFYING -> DENIED       (facilitator rejected / unreachable)
    VERIFYING -> SETTLING -> GRANTED | DENIED

The nonce of a payload is reserved before the first facilitator call. It is
released whenever settlement did not happen, so the authorization stays
usable, and confirmed once settlement succeeds, so it can never be used
again. A settle call already in flight is shielded from request cancellation
and its completion alone decides between release and confirm.
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from app.x402.audit import AuditLog, generate_request_id
from app.x402.challenge import PAYMENT_REQUIRED_REASON, build_payment_requirements
from app.x402.errors import (
    ConfigurationError,
    InternalError,
    MalformedPayment,
    PaymentVerificationFailed,
    ReplayedPayment,
    X402Error,
)
from app.x402.facilitator import FacilitatorClient
from app.x402.models import PaymentPayload, PaymentRequirements, SettleResponse, SettlementReceipt
from app.x402.nonces import NonceStore
from app.x402.receipts import build_receipt, decode_payment_header
from app.x402.registry import RouteEntry, RouteRegistry

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    UNCHALLENGED = "unchallenged"
    CHALLENGED = "challenged"
    VERIFYING = "verifying"
    SETTLING = "settling"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class GateOutcome:
    """Terminal result of running one request through the gate."""
    state: GateState
    entry: Optional[RouteEntry] = None
    resource_url: Optional[str] = None
    payload: Optional[PaymentPayload] = None
    receipt: Optional[SettlementReceipt] = None
    error: Optional[X402Error] = None

    @property
    def granted(self) -> bool:
        return self.state is GateState.GRANTED

    @property
    def paid(self) -> bool:
        return self.granted and self.receipt is not None


class PaymentGate:
    """Resolves, challenges, verifies and settles payments for incoming requests."""

    def __init__(
        self,
        registry: RouteRegistry,
        clients: Mapping[str, FacilitatorClient],
        nonce_store: NonceStore,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            registry: Frozen route registry
            clients: Facilitator clients keyed by binding name
            nonce_store: Shared replay-protection store
            audit: Optional audit trail
            clock: Time source returning unix seconds
        """
        missing = [b.name for b in registry.bindings() if b.name not in clients]
        if missing:
            raise ConfigurationError(
                f"No facilitator client configured for: {', '.join(sorted(missing))}"
            )
        self.registry = registry
        self._clients = dict(clients)
        self._nonces = nonce_store
        self._audit = audit or AuditLog("x402_audit.jsonl", enabled=False)
        self._clock = clock

    @property
    def nonce_store(self) -> NonceStore:
        return self._nonces

    def client_for(self, entry: RouteEntry) -> FacilitatorClient:
        return self._clients[entry.binding.name]

    async def process(
        self,
        method: str,
        path: str,
        resource_url: str,
        payment_header: Optional[str],
        client_ip: str = "unknown",
    ) -> GateOutcome:
        """
        Run one request through the gate.

        Args:
            method: HTTP method
            path: Request path (used for the registry lookup)
            resource_url: Fully qualified resource URL for the challenge
            payment_header: Raw X-PAYMENT header value, if any
            client_ip: Caller address for logs and audit

        Returns:
            GateOutcome; GRANTED without receipt means the route is not paid.
        """
        entry = self.registry.lookup(method, path)
        if entry is None:
            return GateOutcome(state=GateState.GRANTED)

        request_id = generate_request_id()
        self._audit.request_received(client_ip, method, path, request_id=request_id)

        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header for {method} {path}, returning 402")
            self._audit.payment_required_sent(
                client_ip, resource_url, entry.template.network,
                str(entry.template.price), PAYMENT_REQUIRED_REASON, request_id=request_id,
            )
            return GateOutcome(state=GateState.CHALLENGED, entry=entry, resource_url=resource_url)

        try:
            payload = decode_payment_header(payment_header)
            self._check_validity_window(payload)
        except MalformedPayment as e:
            logger.warning(f"x402: Malformed payment from {client_ip} for {method} {path}: {e.message}")
            return self._deny(entry, resource_url, e, client_ip, request_id)

        self._audit.payment_received(
            client_ip, payload.payer, payload.network, payload.nonce, request_id=request_id
        )

        try:
            requirements = build_payment_requirements(entry.template, resource_url)
            client = self.client_for(entry)
            if not self._nonces.reserve(
                payload.payer, payload.nonce, payload.network, payload.valid_before
            ):
                raise ReplayedPayment()
            receipt = await self._redeem(client, payload, requirements, client_ip, request_id)
        except X402Error as e:
            logger.warning(
                f"x402: Payment denied for {method} {path} ({e.reason}): {e.message}"
            )
            return self._deny(entry, resource_url, e, client_ip, request_id, payload)
        except Exception as e:
            logger.exception(f"x402: Unexpected error while processing payment for {method} {path}")
            self._audit.error(client_ip, type(e).__name__, str(e), {"path": path}, request_id=request_id)
            return self._deny(entry, resource_url, InternalError(), client_ip, request_id, payload)

        logger.info(
            f"x402: Payment settled for {method} {path}: payer={receipt.payer} "
            f"network={receipt.network} tx={receipt.transaction_reference}"
        )
        return GateOutcome(
            state=GateState.GRANTED,
            entry=entry,
            resource_url=resource_url,
            payload=payload,
            receipt=receipt,
        )

    async def _redeem(
        self,
        client: FacilitatorClient,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        client_ip: str,
        request_id: str,
    ) -> SettlementReceipt:
        """VERIFYING -> SETTLING for a payload whose nonce is already reserved."""
        logger.debug(f"x402: {GateState.VERIFYING.value} payer {payload.payer} via {client.name}")

        verified = False
        try:
            verify_response = await client.verify(payload, requirements)
            verified = verify_response.is_valid
        finally:
            if not verified:
                self._release(payload)

        if not verify_response.is_valid:
            raise PaymentVerificationFailed(
                f"Payment verification failed: {verify_response.invalid_reason or 'Unknown reason'}"
            )

        logger.info(f"x402: Payment verified by {client.name} for payer {payload.payer}")
        self._audit.payment_verified(client_ip, payload.payer, client.name, request_id=request_id)

        logger.debug(f"x402: {GateState.SETTLING.value} payer {payload.payer} via {client.name}")
        settle_task = asyncio.ensure_future(client.settle(payload, requirements))
        settle_task.add_done_callback(functools.partial(self._settlement_done, payload))
        settle_response = await asyncio.shield(settle_task)

        if not settle_response.success:
            raise PaymentVerificationFailed(
                f"Payment settlement failed: {settle_response.error_reason or 'Unknown reason'}"
            )

        receipt = build_receipt(settle_response, payload)
        self._audit.payment_settled(
            client_ip, payload.payer, receipt.network, receipt.transaction_reference,
            client.name, request_id=request_id,
        )
        return receipt

    def _settlement_done(self, payload: PaymentPayload, task: "asyncio.Future[SettleResponse]") -> None:
        """Confirm or release the nonce once settle finishes, even if the request is gone."""
        if task.cancelled() or task.exception() is not None or not task.result().success:
            self._release(payload)
        else:
            self._nonces.confirm(payload.payer, payload.nonce, payload.network)

    def _release(self, payload: PaymentPayload) -> None:
        self._nonces.release(payload.payer, payload.nonce, payload.network)

    def _check_validity_window(self, payload: PaymentPayload) -> None:
        now = self._clock()
        if now < payload.valid_after:
            raise MalformedPayment("Payment authorization is not valid yet")
        if now > payload.valid_before:
            raise MalformedPayment("Payment authorization has expired")

    def _deny(
        self,
        entry: RouteEntry,
        resource_url: str,
        error: X402Error,
        client_ip: str,
        request_id: str,
        payload: Optional[PaymentPayload] = None,
    ) -> GateOutcome:
        self._audit.payment_failed(
            client_ip, error.reason, error.message,
            wallet_address=payload.payer if payload else None, request_id=request_id,
        )
        return GateOutcome(
            state=GateState.DENIED,
            entry=entry,
            resource_url=resource_url,
            payload=payload,
            error=error,
        )

    async def aclose(self) -> None:
        """Close every facilitator client."""
        for client in self._clients.values():
            await client.aclose()
