# =============================================================================
# File: wabridge/webhooks/payloads.py
# Description: Outbound webhook payload (wire contract)
# =============================================================================

"""
Webhook Payload

Every delivery carries exactly these fields:

    event      canonical kind string (EventKind value)
    instance   instance scope
    data       kind-specific body
    date_time  ISO-8601 timestamp of the observation
    sender     the instance's own identity, when known

Renaming a field or a kind string breaks existing subscribers.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from wabridge.events.types import NormalizedEvent
from wabridge.identity.identifiers import Identifier

WEBHOOK_FIELDS = ("event", "instance", "data", "date_time", "sender")


def to_json_safe(value: Any) -> Any:
    """Convert enums, identifiers, datetimes and containers to JSON types."""
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Identifier):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


def build_webhook_payload(event: NormalizedEvent, sender: Optional[str] = None) -> Dict[str, Any]:
    return {
        "event": event.kind.value,
        "instance": event.instance,
        "data": to_json_safe(event.payload),
        "date_time": to_json_safe(event.observed_at),
        "sender": sender,
    }
