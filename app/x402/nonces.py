# app/x402/nonces.py
"""
Replay protection for payment authorizations.

A (payer, nonce, network) triple moves through three states:
- absent: the authorization has never been presented (or was released)
- reserved: a request is verifying/settling it right now
- confirmed: settlement succeeded; it can never be used again

Records are kept until the authorization's validBefore has passed, after
which the authorization is unusable anyway and the record is evicted.
Thread-safe for concurrent access; every operation is atomic under one lock.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from app.x402.networks import canonical_address

logger = logging.getLogger(__name__)

NonceKey = Tuple[str, str, str]


@dataclass
class NonceRecord:
    payer: str
    nonce: str
    network: str
    reserved_at: float
    expires_at: float
    redeemed_at: Optional[float] = None

    @property
    def confirmed(self) -> bool:
        return self.redeemed_at is not None


def make_key(payer: str, nonce: str, network: str) -> NonceKey:
    # EVM nonces are bytes32 hex, compared case-insensitively like the payer
    return (
        canonical_address(network, payer),
        canonical_address(network, nonce),
        network,
    )


class NonceStore:
    """In-memory store of reserved and redeemed payment nonces."""

    def __init__(
        self,
        cleanup_interval: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the nonce store.

        Args:
            cleanup_interval: Seconds between sweeps of expired records.
            clock: Time source returning unix seconds.
        """
        self._records: Dict[NonceKey, NonceRecord] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = clock()

    def reserve(self, payer: str, nonce: str, network: str, expires_at: float) -> bool:
        """
        Atomically reserve a triple if nobody holds it.

        Returns:
            True if the reservation was taken, False if the triple is already
            reserved or redeemed (a replay).
        """
        key = make_key(payer, nonce, network)
        now = self._clock()

        with self._lock:
            self._maybe_cleanup(now)

            record = self._records.get(key)
            if record is not None and record.expires_at >= now:
                logger.warning(
                    f"Nonce replay rejected for payer {payer} on {network} "
                    f"({'redeemed' if record.confirmed else 'in flight'})"
                )
                return False

            self._records[key] = NonceRecord(
                payer=key[0],
                nonce=key[1],
                network=network,
                reserved_at=now,
                expires_at=expires_at,
            )
            return True

    def release(self, payer: str, nonce: str, network: str) -> bool:
        """
        Drop a reservation whose settlement did not happen.

        Confirmed records are never released.

        Returns:
            True if a reservation was removed.
        """
        key = make_key(payer, nonce, network)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return False
            if record.confirmed:
                logger.error(f"Refusing to release redeemed nonce for payer {payer} on {network}")
                return False
            del self._records[key]
            logger.debug(f"Released nonce reservation for payer {payer} on {network}")
            return True

    def confirm(self, payer: str, nonce: str, network: str) -> bool:
        """
        Turn a reservation into a permanent redemption record.

        Returns:
            True if the reservation existed and is now confirmed.
        """
        key = make_key(payer, nonce, network)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                logger.error(f"Confirming nonce without reservation for payer {payer} on {network}")
                return False
            if record.redeemed_at is None:
                record.redeemed_at = self._clock()
            return True

    def is_redeemed(self, payer: str, nonce: str, network: str) -> bool:
        key = make_key(payer, nonce, network)
        with self._lock:
            record = self._records.get(key)
            return record is not None and record.confirmed

    def get(self, payer: str, nonce: str, network: str) -> Optional[NonceRecord]:
        key = make_key(payer, nonce, network)
        with self._lock:
            return self._records.get(key)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Evict every record whose expiry has passed. Returns the count."""
        now = self._clock() if now is None else now
        with self._lock:
            return self._purge(now)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            redeemed = sum(1 for record in self._records.values() if record.confirmed)
            return {
                "reserved": len(self._records) - redeemed,
                "redeemed": redeemed,
                "total": len(self._records),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _maybe_cleanup(self, now: float) -> None:
        """Sweep expired records every cleanup_interval seconds. Caller holds the lock."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        removed = self._purge(now)
        if removed:
            logger.debug(f"Cleaned up {removed} expired nonce records")

    def _purge(self, now: float) -> int:
        expired = [key for key, record in self._records.items() if record.expires_at < now]
        for key in expired:
            del self._records[key]
        return len(expired)
