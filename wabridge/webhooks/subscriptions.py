# =============================================================================
# File: wabridge/webhooks/subscriptions.py
# Description: Subscription snapshot models and registry
# =============================================================================

"""
Subscriptions

The control plane owns subscription configuration; this module only reads
snapshots of it. Kind names are validated once, when a snapshot is loaded:
an unknown name, a differently spelled duplicate or a malformed document
is a ConfigurationError.

Snapshot document:
    {
      "instance": "main",
      "settings": {"ignore_groups": false},
      "subscriptions": [
        {"recipient_url": "https://example.org/hook",
         "enabled_kinds": ["messages.upsert", "groups.update"],
         "by_events": false,
         "headers": {"Authorization": "Bearer ..."}}
      ]
    }
"""

from __future__ import annotations

import threading
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from wabridge.common.exceptions.exceptions import ConfigurationError
from wabridge.config.logging_config import get_logger
from wabridge.events.kinds import EventKind, validate_kind_names

log = get_logger("wabridge.webhooks.subscriptions")


class Subscription(BaseModel):
    """One recipient endpoint and the kinds it receives."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    recipient_url: str
    enabled_kinds: FrozenSet[EventKind] = Field(default_factory=frozenset)
    enabled: bool = True
    # Append the kind to the URL path (messages.upsert -> /messages-upsert)
    by_events: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("recipient_url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("recipient_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("enabled_kinds", mode="before")
    @classmethod
    def kinds_must_be_canonical(cls, v: Any) -> FrozenSet[EventKind]:
        if isinstance(v, (str, bytes)) or not isinstance(v, (list, tuple, set, frozenset)):
            raise ValueError("enabled_kinds must be a list of kind names")
        names = [k.value if isinstance(k, EventKind) else k for k in v]
        return validate_kind_names(names)

    def accepts(self, kind: EventKind) -> bool:
        return self.enabled and kind in self.enabled_kinds

    def target_url(self, kind: EventKind) -> str:
        if not self.by_events:
            return self.recipient_url
        suffix = kind.value.replace(".", "-").replace("_", "-")
        return f"{self.recipient_url}/{suffix}"


class InstanceSettings(BaseModel):
    """Per-instance behaviour passed explicitly into dispatch."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    ignore_groups: bool = False


class SubscriptionSnapshot(BaseModel):
    """Read-only view of one instance's subscriptions."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    instance: str
    settings: InstanceSettings = Field(default_factory=InstanceSettings)
    subscriptions: Tuple[Subscription, ...] = ()

    def matching(self, kind: EventKind) -> List[Subscription]:
        return [s for s in self.subscriptions if s.accepts(kind)]


def load_subscription_snapshot(data: Mapping[str, Any]) -> SubscriptionSnapshot:
    """
    Validate a control-plane document into a snapshot.

    Raises:
        ConfigurationError: malformed document or invalid kind names
    """
    try:
        snapshot = SubscriptionSnapshot.model_validate(data)
    except ConfigurationError:
        raise
    except ValidationError as e:
        raise ConfigurationError(f"Invalid subscription snapshot: {e}") from e

    log.info(
        f"Loaded {len(snapshot.subscriptions)} subscription(s) for instance '{snapshot.instance}'",
        extra={"instance": snapshot.instance},
    )
    return snapshot


class SubscriptionRegistry:
    """Holds the current snapshot per instance; replaced atomically."""

    def __init__(self, snapshots: Optional[Mapping[str, SubscriptionSnapshot]] = None):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, SubscriptionSnapshot] = dict(snapshots or {})

    def replace(self, snapshot: SubscriptionSnapshot) -> None:
        with self._lock:
            snapshots = dict(self._snapshots)
            snapshots[snapshot.instance] = snapshot
            self._snapshots = snapshots

    def load(self, data: Mapping[str, Any]) -> SubscriptionSnapshot:
        snapshot = load_subscription_snapshot(data)
        self.replace(snapshot)
        return snapshot

    def current(self, instance: str) -> SubscriptionSnapshot:
        """Snapshot for the instance (empty when none was loaded)."""
        snapshot = self._snapshots.get(instance)
        if snapshot is None:
            return SubscriptionSnapshot(instance=instance)
        return snapshot
