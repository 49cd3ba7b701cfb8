# app/x402/audit.py
"""
Audit logging for x402 transactions.

This module logs x402 payment events for:
- Dispute resolution
- Financial reconciliation
- Debugging failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Request received (timestamp, client IP, endpoint, method)
- 402 returned (price, network, reason)
- Payment received (payer, network, nonce)
- Payment verified / settled (transaction reference, facilitator)
- Payment failed or replayed (reason)
- Error (type, context)

Writing an event never raises; failures are reported to the module logger.
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REPLAYED = "payment_replayed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer wallet address (if available)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


class AuditLog:
    """Append-only JSON-lines audit trail."""

    def __init__(self, path: Union[str, Path], enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled
        self._write_lock = threading.Lock()

    def ensure_directory(self) -> bool:
        """
        Ensure the audit log directory exists.

        Returns:
            True if directory exists or was created, False on error
        """
        try:
            log_dir = self.path.parent
            if not log_dir.exists():
                log_dir.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created audit log directory: {log_dir}")
            return True
        except OSError as e:
            logger.error(f"Failed to create audit log directory: {e}")
            return False

    def log(
        self,
        event_type: AuditEventType,
        data: Dict[str, Any],
        client_ip: Optional[str] = None,
        wallet_address: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Log an audit event.

        Returns:
            The request_id used for this event, or None when disabled or on error
        """
        if not self.enabled:
            return None

        event = create_audit_event(
            event_type=event_type,
            data=data,
            client_ip=client_ip,
            wallet_address=wallet_address,
            request_id=request_id
        )

        try:
            self.ensure_directory()
            line = json.dumps(event, default=str) + "\n"
            with self._write_lock, open(self.path, "a") as f:
                f.write(line)

            logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
            return event["request_id"]

        except OSError as e:
            logger.error(f"Failed to write audit event: {e}")
            return None

    # Convenience methods for specific event types

    def request_received(self, client_ip: str, method: str, path: str,
                         request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.REQUEST_RECEIVED,
            {"method": method, "path": path},
            client_ip=client_ip,
            request_id=request_id,
        )

    def payment_required_sent(self, client_ip: str, resource: str, network: str,
                              amount: str, reason: str,
                              request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.PAYMENT_REQUIRED_SENT,
            {"resource": resource, "network": network, "amount": amount, "reason": reason},
            client_ip=client_ip,
            request_id=request_id,
        )

    def payment_received(self, client_ip: str, payer: str, network: str, nonce: str,
                         request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.PAYMENT_RECEIVED,
            {"network": network, "nonce": nonce},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_verified(self, client_ip: str, payer: str, facilitator: str,
                         request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.PAYMENT_VERIFIED,
            {"facilitator": facilitator},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_settled(self, client_ip: str, payer: str, network: str, transaction: str,
                        facilitator: str, request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.PAYMENT_SETTLED,
            {"network": network, "transaction": transaction, "facilitator": facilitator},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_failed(self, client_ip: str, reason: str, message: str,
                       wallet_address: Optional[str] = None,
                       request_id: Optional[str] = None) -> Optional[str]:
        event_type = (
            AuditEventType.PAYMENT_REPLAYED if reason == "ReplayedPayment"
            else AuditEventType.PAYMENT_FAILED
        )
        return self.log(
            event_type,
            {"reason": reason, "message": message},
            client_ip=client_ip,
            wallet_address=wallet_address,
            request_id=request_id,
        )

    def error(self, client_ip: str, error_type: str, error_message: str,
              context: Optional[Dict[str, Any]] = None,
              request_id: Optional[str] = None) -> Optional[str]:
        return self.log(
            AuditEventType.ERROR,
            {"error_type": error_type, "error_message": error_message, "context": context or {}},
            client_ip=client_ip,
            request_id=request_id,
        )

    def read(
        self,
        max_entries: int = 100,
        event_type: Optional[AuditEventType] = None,
        client_ip: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Read entries from the audit log.

        Args:
            max_entries: Maximum number of entries to return
            event_type: Filter by event type (optional)
            client_ip: Filter by client IP (optional)

        Returns:
            List of audit events (most recent first)
        """
        try:
            if not self.path.exists():
                return []

            events = []
            with open(self.path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if event_type and event.get("event_type") != event_type.value:
                        continue
                    if client_ip and event.get("client_ip") != client_ip:
                        continue
                    events.append(event)

            return list(reversed(events))[:max_entries]

        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

    def stats(self) -> Dict[str, Any]:
        """
        Get statistics from the audit log.

        Returns:
            Dict with event counts and date range
        """
        if not self.path.exists():
            return {
                "total_events": 0,
                "events_by_type": {},
                "log_path": str(self.path),
                "log_exists": False,
            }

        events_by_type: Dict[str, int] = {}
        total = 0
        first_timestamp = None
        last_timestamp = None

        for event in reversed(self.read(max_entries=10 ** 9)):
            total += 1
            event_type = event.get("event_type", "unknown")
            events_by_type[event_type] = events_by_type.get(event_type, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                if first_timestamp is None:
                    first_timestamp = timestamp
                last_timestamp = timestamp

        return {
            "total_events": total,
            "events_by_type": events_by_type,
            "first_event": first_timestamp,
            "last_event": last_timestamp,
            "log_path": str(self.path),
            "log_exists": True,
        }
