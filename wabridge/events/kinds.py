# =============================================================================
# File: wabridge/events/kinds.py
# Description: Closed set of canonical event kinds (single source of truth)
# =============================================================================

"""
Canonical Event Kinds

Every component that needs a kind string takes it from EventKind. The
string values are the outward webhook contract (the `event` field), so a
rename is a breaking change for subscribers.

Traits:
    mergeable          partial updates for the same subject are merged in
                       the normalizer's buffering window
    identity_bearing   payload carries participant/chat identifiers that go
                       through identity resolution
"""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Iterable

from wabridge.common.exceptions.exceptions import ConfigurationError


class EventKind(str, Enum):
    """Canonical event kinds"""

    # Instance lifecycle
    QRCODE_UPDATED = "qrcode.updated"
    CONNECTION_UPDATE = "connection.update"

    # Messages
    MESSAGES_SET = "messages.set"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_EDITED = "messages.edited"
    MESSAGES_DELETE = "messages.delete"

    # Contacts
    CONTACTS_SET = "contacts.set"
    CONTACTS_UPSERT = "contacts.upsert"
    CONTACTS_UPDATE = "contacts.update"
    PRESENCE_UPDATE = "presence.update"

    # Chats
    CHATS_SET = "chats.set"
    CHATS_UPSERT = "chats.upsert"
    CHATS_UPDATE = "chats.update"
    CHATS_DELETE = "chats.delete"

    # Groups
    GROUPS_UPSERT = "groups.upsert"
    GROUPS_UPDATE = "groups.update"
    GROUP_PARTICIPANTS_UPDATE = "group-participants.update"

    # Labels and calls
    LABELS_EDIT = "labels.edit"
    LABELS_ASSOCIATION = "labels.association"
    CALL = "call"

    @property
    def mergeable(self) -> bool:
        return self in MERGEABLE_KINDS

    @property
    def identity_bearing(self) -> bool:
        return self not in INSTANCE_SCOPED_KINDS

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        """
        Exact lookup by canonical string.

        No case folding and no aliases: "GROUP_UPDATE", "groups.Update" and
        "group.update" are all rejected.
        """
        try:
            return _BY_VALUE[value]
        except (KeyError, TypeError):
            raise ConfigurationError(
                f"Unknown event kind {value!r}; expected one of: {', '.join(sorted(_BY_VALUE))}"
            ) from None

    @classmethod
    def values(cls) -> FrozenSet[str]:
        return frozenset(_BY_VALUE)


_BY_VALUE = {kind.value: kind for kind in EventKind}

# Kinds whose upstream notifications are partial state updates of one subject
MERGEABLE_KINDS: FrozenSet[EventKind] = frozenset({
    EventKind.CONNECTION_UPDATE,
    EventKind.MESSAGES_UPDATE,
    EventKind.CONTACTS_UPSERT,
    EventKind.CONTACTS_UPDATE,
    EventKind.PRESENCE_UPDATE,
    EventKind.CHATS_UPSERT,
    EventKind.CHATS_UPDATE,
    EventKind.GROUPS_UPSERT,
    EventKind.GROUPS_UPDATE,
    EventKind.LABELS_EDIT,
})

# Kinds that describe the instance itself rather than a contact/chat
INSTANCE_SCOPED_KINDS: FrozenSet[EventKind] = frozenset({
    EventKind.QRCODE_UPDATED,
    EventKind.CONNECTION_UPDATE,
    EventKind.LABELS_EDIT,
})


def validate_kind_names(names: Iterable[str]) -> FrozenSet[EventKind]:
    """
    Validate a configured list of kind names.

    Raises:
        ConfigurationError: on an unknown name or a name listed twice
    """
    kinds = set()
    for name in names:
        kind = EventKind.parse(name)
        if kind in kinds:
            raise ConfigurationError(f"Duplicate event kind {name!r} in configuration")
        kinds.add(kind)
    return frozenset(kinds)
