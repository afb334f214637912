# app/x402/audit.py
"""
Payment audit trail for the credit gateway.

Every payment decision is appended as one JSON object per line to
X402_AUDIT_LOG_PATH, so disputes and reconciliation can be worked from a
single file. ``payment_settled`` and ``payment_verified_signature_only`` are
kept apart on purpose: the latter moved no funds and is not revenue.

A failing audit write is logged and ignored; it never turns a verified
payment into an error response.
"""
import json
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


class AuditEventType(Enum):
    """Kinds of entries in the audit trail."""
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_VERIFIED_SIGNATURE_ONLY = "payment_verified_signature_only"
    PAYMENT_FAILED = "payment_failed"
    RESOURCE_SERVED = "resource_served"
    ERROR = "error"


def generate_request_id() -> str:
    """Short id tying together the events of one request."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build one audit record.

    Args:
        event_type: What happened
        data: Event-specific fields
        client_ip: Requesting client, if known
        wallet_address: Payer address, if known
        request_id: Id shared by events of the same request; generated when omitted
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit trail.

    Returns:
        The event's request_id, or None if the write failed
    """
    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    path = get_audit_log_path()

    try:
        line = json.dumps(event) + "\n"
        with _write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(line)
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"x402: Audit write failed for {event_type.value}: {e}")
        return None

    logger.debug(f"x402: audit {event_type.value} [{event['request_id']}]")
    return event["request_id"]


# --- One helper per event type, used by the middleware ---

def log_request_received(client_ip: str, method: str, path: str, has_payment: bool,
                         request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REQUEST_RECEIVED,
        {"method": method, "path": path, "has_payment": has_payment},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_required_sent(client_ip: str, amount: str, network: str, pay_to: str, resource: str,
                              reason: Optional[str] = None, request_id: Optional[str] = None) -> Optional[str]:
    """Record a 402 challenge; ``reason`` is set when it follows a rejected payment."""
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {"amount": amount, "network": network, "pay_to": pay_to, "resource": resource, "reason": reason},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_received(client_ip: str, payer: str, amount: str, nonce: str, network: str,
                         request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_RECEIVED,
        {"amount": amount, "nonce": nonce, "network": network},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_settled(client_ip: str, payer: str, amount: str, transaction_hash: str, network: str,
                        request_id: Optional[str] = None) -> Optional[str]:
    """Record a transferWithAuthorization that was mined."""
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        {"amount": amount, "transaction_hash": transaction_hash, "network": network, "funds_moved": True},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_verified_signature_only(client_ip: str, payer: str, amount: str, network: str,
                                        fallback_reason: str, request_id: Optional[str] = None) -> Optional[str]:
    """Record a payment accepted on its signature alone, with why settlement was skipped."""
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED_SIGNATURE_ONLY,
        {"amount": amount, "network": network, "funds_moved": False, "fallback_reason": fallback_reason},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_failed(client_ip: str, reason: str, stage: str, wallet_address: Optional[str] = None,
                       request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"reason": reason, "stage": stage},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_resource_served(client_ip: str, resource: str, status_code: int, wallet_address: Optional[str] = None,
                        request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.RESOURCE_SERVED,
        {"resource": resource, "status_code": status_code},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_error(client_ip: str, error_type: str, error_message: str, context: Optional[Dict[str, Any]] = None,
              wallet_address: Optional[str] = None, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ERROR,
        {"error_type": error_type, "error_message": error_message, "context": context or {}},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


# --- Reading ---

def _iter_events(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield events in file order, skipping blank and truncated lines."""
    with open(path, "r") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"x402: Skipping unreadable audit line in {path}")


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Return the newest audit events first.

    Args:
        max_entries: Upper bound on returned events
        event_type: Only events of this type
        wallet_address: Only events for this payer (case-insensitive)
    """
    path = get_audit_log_path()
    if not path.exists():
        return []

    wallet = wallet_address.lower() if wallet_address else None
    try:
        matches = [
            event for event in _iter_events(path)
            if (event_type is None or event.get("event_type") == event_type.value)
            and (wallet is None or (event.get("wallet_address") or "").lower() == wallet)
        ]
    except OSError as e:
        logger.error(f"x402: Cannot read audit log {path}: {e}")
        return []

    matches.reverse()
    return matches[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Summarise the audit trail: totals per event type and the time span covered."""
    path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(path),
        "log_exists": path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    counts: Counter = Counter()
    try:
        for event in _iter_events(path):
            counts[event.get("event_type", "unknown")] += 1
            timestamp = event.get("timestamp")
            if timestamp:
                stats["first_event"] = stats["first_event"] or timestamp
                stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"x402: Cannot read audit log {path}: {e}")
        stats["error"] = str(e)
        return stats

    stats["total_events"] = sum(counts.values())
    stats["events_by_type"] = dict(counts)
    return stats
