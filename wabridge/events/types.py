# =============================================================================
# File: wabridge/events/types.py
# Description: Raw and normalized event types
# =============================================================================

"""
Event Types

- RawEvent: one upstream notification as handed over by the protocol library
- NormalizedEvent: the fixed internal representation keyed by EventKind
- MessageStatus: delivery status names shared by the normalizer and the
  message store
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from wabridge.events.kinds import EventKind
from wabridge.identity.identifiers import Identifier


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageStatus(str, Enum):
    """Message delivery status (upstream numeric codes 0..5)"""
    ERROR = "ERROR"
    PENDING = "PENDING"
    SERVER_ACK = "SERVER_ACK"
    DELIVERY_ACK = "DELIVERY_ACK"
    READ = "READ"
    PLAYED = "PLAYED"

    @classmethod
    def from_upstream(cls, value: Any) -> Optional["MessageStatus"]:
        """Map an upstream status (numeric code or name) to a MessageStatus."""
        if isinstance(value, MessageStatus):
            return value
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return _STATUS_BY_CODE.get(value)
        if isinstance(value, str):
            if value.isdigit():
                return _STATUS_BY_CODE.get(int(value))
            try:
                return cls(value.upper())
            except ValueError:
                return None
        return None


_STATUS_BY_CODE = {
    0: MessageStatus.ERROR,
    1: MessageStatus.PENDING,
    2: MessageStatus.SERVER_ACK,
    3: MessageStatus.DELIVERY_ACK,
    4: MessageStatus.READ,
    5: MessageStatus.PLAYED,
}


@dataclass
class RawEvent:
    """One upstream notification."""
    instance: str
    event_type: str
    payload: Any
    received_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class NormalizedEvent:
    """
    Fixed internal event representation.

    `event_id` and `observed_at` do not take part in equality: replaying the
    same upstream batch yields equal events.
    """
    kind: EventKind
    subject_id: Optional[Identifier]
    payload: Dict[str, Any]
    instance: str
    buffer_group_key: Optional[str] = None
    resolution_incomplete: bool = False
    unresolved: Tuple[str, ...] = ()
    observed_at: datetime = field(default_factory=utc_now, compare=False)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)

    def with_changes(self, **changes: Any) -> "NormalizedEvent":
        """Copy with selected fields replaced (event_id is preserved)."""
        return replace(self, **changes)
