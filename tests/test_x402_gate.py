# tests/test_x402_gate.py
"""
Tests for the payment gate state machine.
"""
import asyncio
import time

import pytest

from app.x402.catalog import build_route_registry
from app.x402.errors import ConfigurationError, FacilitatorUnavailable
from app.x402.gate import GateState, PaymentGate
from app.x402.nonces import NonceStore

from conftest import EVM_PAYER, SOLANA_PAYER, make_payment_header

WEATHER_URL = "http://testserver/api/weather"
COMPUTE_URL = "http://testserver/api/compute"


@pytest.fixture
def gate(settings, facilitators):
    return PaymentGate(
        registry=build_route_registry(settings),
        clients=facilitators,
        nonce_store=NonceStore(),
    )


def solana_header(**kwargs):
    return make_payment_header(payer=SOLANA_PAYER, network="solana", **kwargs)


class TestConstruction:
    """Test gate wiring checks."""

    def test_missing_client_rejected(self, settings, facilitators):
        """Every bound facilitator needs a client."""
        del facilitators["dexter"]
        with pytest.raises(ConfigurationError, match="dexter"):
            PaymentGate(build_route_registry(settings), facilitators, NonceStore())


class TestUnpaidAndChallenge:
    """Test the UNCHALLENGED -> GRANTED / CHALLENGED transitions."""

    @pytest.mark.asyncio
    async def test_unpaid_route_granted(self, gate, facilitators):
        """Routes without a registry entry pass without a receipt."""
        outcome = await gate.process("GET", "/health", "http://testserver/health", None)

        assert outcome.state is GateState.GRANTED
        assert outcome.paid is False
        assert all(not f.verify_calls for f in facilitators.values())

    @pytest.mark.asyncio
    async def test_missing_header_challenged(self, gate):
        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, None)

        assert outcome.state is GateState.CHALLENGED
        assert outcome.entry.binding.name == "payai"
        assert outcome.resource_url == WEATHER_URL

    @pytest.mark.asyncio
    async def test_empty_header_challenged(self, gate):
        """An empty X-PAYMENT is the same as none."""
        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, "")
        assert outcome.state is GateState.CHALLENGED


class TestMalformedPayments:
    """Test that bad payloads never reach a facilitator."""

    @pytest.mark.asyncio
    async def test_garbage_header_denied(self, gate, facilitators):
        """Malformed twice gives the same reason and no facilitator call."""
        first = await gate.process("GET", "/api/weather", WEATHER_URL, "garbage!!")
        second = await gate.process("GET", "/api/weather", WEATHER_URL, "garbage!!")

        assert first.state is GateState.DENIED
        assert first.error.reason == "MalformedPayment"
        assert second.error.reason == first.error.reason
        assert second.error.message == first.error.message
        assert facilitators["payai"].verify_calls == []

    @pytest.mark.asyncio
    async def test_expired_authorization(self, gate, facilitators):
        now = int(time.time())
        header = make_payment_header(valid_after=now - 600, valid_before=now - 60)

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)

        assert outcome.error.reason == "MalformedPayment"
        assert "expired" in outcome.error.message
        assert facilitators["payai"].verify_calls == []

    @pytest.mark.asyncio
    async def test_not_yet_valid_authorization(self, gate):
        now = int(time.time())
        header = make_payment_header(valid_after=now + 600, valid_before=now + 1200)

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)

        assert outcome.error.reason == "MalformedPayment"
        assert "not valid yet" in outcome.error.message

    @pytest.mark.asyncio
    async def test_malformed_does_not_reserve(self, gate):
        await gate.process("GET", "/api/weather", WEATHER_URL, "garbage!!")
        assert len(gate.nonce_store) == 0


class TestSuccessfulPayment:
    """Test VERIFYING -> SETTLING -> GRANTED."""

    @pytest.mark.asyncio
    async def test_paid_request_granted_with_receipt(self, gate, facilitators):
        outcome = await gate.process("POST", "/api/compute", COMPUTE_URL, solana_header(nonce="n-1"))

        assert outcome.state is GateState.GRANTED
        assert outcome.paid is True
        assert outcome.receipt.success is True
        assert outcome.receipt.network == "solana"
        assert outcome.receipt.payer == SOLANA_PAYER
        assert outcome.receipt.transaction_reference == "tx-1"
        assert len(facilitators["dexter"].verify_calls) == 1
        assert len(facilitators["dexter"].settle_calls) == 1
        assert gate.nonce_store.is_redeemed(SOLANA_PAYER, "n-1", "solana") is True

    @pytest.mark.asyncio
    async def test_replay_denied(self, gate, facilitators):
        """A redeemed authorization is refused without contacting the facilitator."""
        header = solana_header()
        await gate.process("POST", "/api/compute", COMPUTE_URL, header)

        outcome = await gate.process("POST", "/api/compute", COMPUTE_URL, header)

        assert outcome.state is GateState.DENIED
        assert outcome.error.reason == "ReplayedPayment"
        assert outcome.error.status_code == 402
        assert len(facilitators["dexter"].verify_calls) == 1
        assert len(facilitators["dexter"].settle_calls) == 1


class TestFailures:
    """Test DENIED outcomes and nonce release."""

    @pytest.mark.asyncio
    async def test_verification_rejected(self, gate, facilitators):
        facilitators["payai"].is_valid = False
        facilitators["payai"].invalid_reason = "invalid_signature"

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, make_payment_header())

        assert outcome.state is GateState.DENIED
        assert outcome.error.reason == "PaymentVerificationFailed"
        assert "invalid_signature" in outcome.error.message
        assert facilitators["payai"].settle_calls == []

    @pytest.mark.asyncio
    async def test_release_after_verify_failure(self, gate, facilitators):
        """After a rejected verify the same payload can still succeed."""
        header = make_payment_header()
        facilitators["payai"].is_valid = False
        await gate.process("GET", "/api/weather", WEATHER_URL, header)

        facilitators["payai"].is_valid = True
        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)

        assert outcome.state is GateState.GRANTED

    @pytest.mark.asyncio
    async def test_release_after_verify_outage(self, gate, facilitators):
        header = make_payment_header()
        facilitators["payai"].verify_error = FacilitatorUnavailable("down")

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)
        assert outcome.error.reason == "FacilitatorUnavailable"
        assert outcome.error.status_code == 502

        facilitators["payai"].verify_error = None
        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)
        assert outcome.state is GateState.GRANTED

    @pytest.mark.asyncio
    async def test_settlement_failure_releases(self, gate, facilitators):
        """success=false from settle is a denial and frees the nonce."""
        header = make_payment_header(nonce="0xfeed")
        facilitators["payai"].settle_success = False

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)

        assert outcome.error.reason == "PaymentVerificationFailed"
        assert "insufficient_funds" in outcome.error.message
        assert gate.nonce_store.get(EVM_PAYER, "0xfeed", "base-sepolia") is None

        facilitators["payai"].settle_success = True
        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)
        assert outcome.paid is True

    @pytest.mark.asyncio
    async def test_settle_timeout_then_recovery(self, gate, facilitators):
        """Facilitator outage during settle, then the same payload succeeds."""
        header = solana_header()
        facilitators["dexter"].go_offline()

        outcome = await gate.process("POST", "/api/compute", COMPUTE_URL, header)
        assert outcome.error.reason == "FacilitatorUnavailable"
        assert outcome.error.status_code == 504

        facilitators["dexter"].come_back()
        outcome = await gate.process("POST", "/api/compute", COMPUTE_URL, header)
        assert outcome.paid is True

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, gate, facilitators):
        """Bugs surface as InternalError and release the nonce."""
        header = make_payment_header(nonce="0xbug")
        facilitators["payai"].verify_error = RuntimeError("facilitator double exploded")

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)

        assert outcome.error.reason == "InternalError"
        assert outcome.error.status_code == 500
        assert "exploded" not in outcome.error.message
        assert gate.nonce_store.get(EVM_PAYER, "0xbug", "base-sepolia") is None


class TestRouteIsolation:
    """Test that each route only reaches its own facilitator."""

    @pytest.mark.asyncio
    async def test_each_route_uses_its_facilitator(self, gate, facilitators):
        await gate.process("GET", "/api/weather", WEATHER_URL, make_payment_header())
        await gate.process("POST", "/api/ai/image", "http://testserver/api/ai/image", make_payment_header())
        await gate.process("POST", "/api/agent/task", "http://testserver/api/agent/task", make_payment_header())
        await gate.process("POST", "/api/compute", COMPUTE_URL, solana_header())

        for name in ("payai", "heurist", "daydreams", "dexter"):
            assert len(facilitators[name].verify_calls) == 1, name
            assert len(facilitators[name].settle_calls) == 1, name

    @pytest.mark.asyncio
    async def test_outage_does_not_leak_to_other_routes(self, gate, facilitators):
        facilitators["dexter"].go_offline()

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, make_payment_header())

        assert outcome.paid is True
        assert facilitators["dexter"].verify_calls == []


class TestConcurrency:
    """Test at-most-once redemption under concurrent submissions."""

    @pytest.mark.asyncio
    async def test_concurrent_identical_payloads(self, gate, facilitators):
        """Only one of many simultaneous identical payloads is settled."""
        header = solana_header()
        facilitators["dexter"].verify_delay = 0.01
        facilitators["dexter"].settle_delay = 0.01

        outcomes = await asyncio.gather(*[
            gate.process("POST", "/api/compute", COMPUTE_URL, header) for _ in range(20)
        ])

        granted = [o for o in outcomes if o.granted]
        replayed = [o for o in outcomes if o.error and o.error.reason == "ReplayedPayment"]
        assert len(granted) == 1
        assert len(replayed) == 19
        assert len(facilitators["dexter"].settle_calls) == 1

    @pytest.mark.asyncio
    async def test_distinct_payloads_all_settle(self, gate, facilitators):
        outcomes = await asyncio.gather(*[
            gate.process("POST", "/api/compute", COMPUTE_URL, solana_header()) for _ in range(10)
        ])

        assert all(o.paid for o in outcomes)
        assert len(facilitators["dexter"].settle_calls) == 10


class TestCancellation:
    """Test that a vanished request never leaves a nonce in a wrong state."""

    @pytest.mark.asyncio
    async def test_cancel_during_verify_releases(self, gate, facilitators):
        facilitators["payai"].verify_delay = 1.0
        header = make_payment_header(nonce="0xc1")

        task = asyncio.ensure_future(gate.process("GET", "/api/weather", WEATHER_URL, header))
        while not facilitators["payai"].verify_calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gate.nonce_store.get(EVM_PAYER, "0xc1", "base-sepolia") is None

    @pytest.mark.asyncio
    async def test_cancel_during_settle_still_confirms(self, gate, facilitators):
        """Settlement in flight completes and the nonce ends up redeemed."""
        facilitators["payai"].settle_delay = 0.1
        header = make_payment_header(nonce="0xc2")

        task = asyncio.ensure_future(gate.process("GET", "/api/weather", WEATHER_URL, header))
        while not facilitators["payai"].settle_calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert gate.nonce_store.is_redeemed(EVM_PAYER, "0xc2", "base-sepolia") is True

        outcome = await gate.process("GET", "/api/weather", WEATHER_URL, header)
        assert outcome.error.reason == "ReplayedPayment"

    @pytest.mark.asyncio
    async def test_cancel_during_failing_settle_releases(self, gate, facilitators):
        facilitators["payai"].settle_delay = 0.1
        facilitators["payai"].settle_success = False
        header = make_payment_header(nonce="0xc3")

        task = asyncio.ensure_future(gate.process("GET", "/api/weather", WEATHER_URL, header))
        while not facilitators["payai"].settle_calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert gate.nonce_store.get(EVM_PAYER, "0xc3", "base-sepolia") is None


class TestClose:
    """Test resource cleanup."""

    @pytest.mark.asyncio
    async def test_aclose_closes_every_client(self, gate, facilitators):
        await gate.aclose()
        assert all(f.closed for f in facilitators.values())
