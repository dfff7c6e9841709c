# =============================================================================
# File: wabridge/identity/resolver.py
# Description: Identity resolver (rewrites identifiers to canonical ones)
# =============================================================================

"""
Identity Resolver

Walks the identifier-bearing fields of a NormalizedEvent and rewrites them
to canonical identifiers through the IdentityCache.

For each identifier field:
    - OPAQUE primary with a PHONE alternate: upsert(phone, opaque) and
      rewrite the field to the phone identifier
    - PHONE primary with an OPAQUE alternate: upsert(phone, opaque), keep
    - otherwise resolve(); rewrite to the canonical identifier when found
    - unknown OPAQUE: left untouched, event flagged resolution_incomplete
      and the identifier listed in `unresolved`
    - unknown PHONE: first sighting creates its record
    - GROUP identifiers pass through

Display names are never derived from identifiers: a name field that is
empty or equal to an identifier's local part is nulled.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from wabridge.common.exceptions.exceptions import QueryExecutionError
from wabridge.config.logging_config import get_logger
from wabridge.events.kinds import EventKind
from wabridge.events.types import NormalizedEvent
from wabridge.identity.cache import IdentityCache
from wabridge.identity.identifiers import Identifier, IdentifierForm, local_part, parse_jid
from wabridge.infra.metrics.pipeline_metrics import record_resolution_incomplete

log = get_logger("wabridge.identity.resolver")

NAME_FIELDS = ("pushName", "name", "notify", "verifiedName")


@dataclass(frozen=True)
class IdentifierSlot:
    """
    Where an identifier lives in a payload.

    `path` and `alternates` are dotted paths relative to each element of
    `container` (or to the payload root when there is no container).
    With `keys=True` the identifiers are the keys of the container mapping.
    """
    path: str
    alternates: Tuple[str, ...] = ()
    container: Optional[str] = None
    keys: bool = False
    subject: bool = False
    # Name fields describing the identifier at `path`
    names: Tuple[str, ...] = ()
    message_sender: bool = False


def _key_slots(container: Optional[str] = None) -> Tuple[IdentifierSlot, ...]:
    return (
        IdentifierSlot(
            "key.remoteJid", ("key.remoteJidAlt", "key.senderPn", "key.senderLid"),
            container=container, subject=container is None, names=("pushName",), message_sender=True,
        ),
        IdentifierSlot(
            "key.participant", ("key.participantAlt", "key.participantPn", "key.participantLid"),
            container=container, names=("pushName",), message_sender=True,
        ),
    )


_CONTACT_NAMES = ("name", "notify", "verifiedName")
_GROUP_SLOTS = (
    IdentifierSlot("id", subject=True),
    IdentifierSlot("owner", ("ownerPn",)),
    IdentifierSlot("subjectOwner", ("subjectOwnerPn",)),
    IdentifierSlot("author", ("authorPn",)),
    IdentifierSlot("id", ("phoneNumber", "lid"), container="participants"),
)

IDENTIFIER_SLOTS: Dict[EventKind, Tuple[IdentifierSlot, ...]] = {
    EventKind.MESSAGES_UPSERT: _key_slots(),
    EventKind.MESSAGES_UPDATE: _key_slots() + (IdentifierSlot("receiptFrom"),),
    EventKind.MESSAGES_EDITED: _key_slots(),
    EventKind.MESSAGES_DELETE: _key_slots() + (IdentifierSlot("remoteJid", subject=True),),
    EventKind.MESSAGES_SET: _key_slots("messages"),
    EventKind.CONTACTS_UPSERT: (IdentifierSlot("id", ("phoneNumber", "lid"), subject=True, names=_CONTACT_NAMES),),
    EventKind.CONTACTS_UPDATE: (IdentifierSlot("id", ("phoneNumber", "lid"), subject=True, names=_CONTACT_NAMES),),
    EventKind.CONTACTS_SET: (IdentifierSlot("id", ("phoneNumber", "lid"), container="contacts", names=_CONTACT_NAMES),),
    EventKind.PRESENCE_UPDATE: (
        IdentifierSlot("id", subject=True),
        IdentifierSlot("", container="presences", keys=True),
    ),
    EventKind.CHATS_UPSERT: (IdentifierSlot("id", ("pnJid", "lidJid"), subject=True),),
    EventKind.CHATS_UPDATE: (IdentifierSlot("id", ("pnJid", "lidJid"), subject=True),),
    EventKind.CHATS_DELETE: (IdentifierSlot("id", subject=True),),
    EventKind.CHATS_SET: (IdentifierSlot("id", ("pnJid", "lidJid"), container="chats"),),
    EventKind.GROUPS_UPSERT: _GROUP_SLOTS,
    EventKind.GROUPS_UPDATE: _GROUP_SLOTS,
    EventKind.GROUP_PARTICIPANTS_UPDATE: (
        IdentifierSlot("id", subject=True),
        IdentifierSlot("author", ("authorPn",)),
        IdentifierSlot("id", ("phoneNumber", "lid"), container="participants"),
    ),
    EventKind.LABELS_ASSOCIATION: (IdentifierSlot("chatId", subject=True),),
    EventKind.CALL: (
        IdentifierSlot("from", ("callerPn",), subject=True),
        IdentifierSlot("chatId"),
    ),
}


# -----------------------------------------------------------------------------
# Payload path helpers
# -----------------------------------------------------------------------------

def _get(obj: Any, path: str) -> Any:
    if not path:
        return obj
    for part in path.split("."):
        if not isinstance(obj, dict):
            return None
        obj = obj.get(part)
    return obj


def _set(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        obj = obj[part]
    obj[parts[-1]] = value


def parse_alternate(raw: Any) -> Optional[Identifier]:
    """Alternate fields may carry a bare phone number instead of a JID."""
    identifier = parse_jid(raw)
    if identifier is not None:
        return identifier
    if isinstance(raw, str):
        digits = raw.strip().lstrip("+")
        if digits.isdigit():
            return Identifier(IdentifierForm.PHONE, f"{digits}@s.whatsapp.net")
    return None


def _guard_names(node: Any, forbidden: Set[str]) -> None:
    """Null name fields that are empty or that merely repeat an identifier."""
    if isinstance(node, list):
        for item in node:
            _guard_names(item, forbidden)
        return
    if not isinstance(node, dict):
        return
    for key, value in node.items():
        if key in NAME_FIELDS and isinstance(value, str):
            stripped = value.strip()
            if not stripped or stripped.lstrip("+") in forbidden:
                node[key] = None
        elif isinstance(value, (dict, list)):
            _guard_names(value, forbidden)


@dataclass
class _Resolution:
    unresolved: List[str] = field(default_factory=list)
    identifiers_seen: int = 0
    subject: Optional[Identifier] = None


class IdentityResolver:
    """Rewrites identifiers of normalized events through the IdentityCache."""

    def __init__(self, cache: IdentityCache, slots: Optional[Dict[EventKind, Tuple[IdentifierSlot, ...]]] = None):
        self._cache = cache
        self._slots = slots if slots is not None else IDENTIFIER_SLOTS

    @property
    def cache(self) -> IdentityCache:
        return self._cache

    async def resolve(self, event: NormalizedEvent) -> NormalizedEvent:
        """Return a copy of the event with canonical identifiers."""
        if not event.kind.identity_bearing:
            return event

        slots = self._slots.get(event.kind, ())
        payload = copy.deepcopy(event.payload)
        _guard_names(payload, self._local_parts(payload, slots))

        state = _Resolution(subject=event.subject_id)
        for slot in slots:
            for element in self._elements(payload, slot):
                if slot.keys:
                    await self._resolve_keys(element, state, event)
                else:
                    await self._resolve_slot(element, slot, state, event, root=slot.container is None)

        unresolved = tuple(dict.fromkeys(state.unresolved))
        incomplete = bool(unresolved) or state.identifiers_seen == 0
        if incomplete:
            record_resolution_incomplete(event.kind.value)
            if state.identifiers_seen == 0:
                log.debug(f"No identifiers in {event.kind.value} event {event.event_id}")

        return event.with_changes(
            payload=payload,
            subject_id=state.subject,
            resolution_incomplete=incomplete,
            unresolved=unresolved,
        )

    # -------------------------------------------------------------------------
    # Slot walking
    # -------------------------------------------------------------------------

    @staticmethod
    def _elements(payload: Dict[str, Any], slot: IdentifierSlot) -> List[Any]:
        if slot.container is None:
            return [payload]
        container = _get(payload, slot.container)
        if slot.keys:
            return [container] if isinstance(container, dict) else []
        if isinstance(container, list):
            return [container]
        return []

    def _local_parts(self, payload: Dict[str, Any], slots: Tuple[IdentifierSlot, ...]) -> Set[str]:
        parts: Set[str] = set()

        def collect(raw: Any) -> None:
            identifier = parse_alternate(raw)
            if identifier is not None:
                parts.add(local_part(identifier))

        for slot in slots:
            for element in self._elements(payload, slot):
                if slot.keys:
                    for raw in element:
                        collect(raw)
                    continue
                items = element if isinstance(element, list) else [element]
                for item in items:
                    if isinstance(item, str):
                        collect(item)
                        continue
                    collect(_get(item, slot.path))
                    for alt in slot.alternates:
                        collect(_get(item, alt))
        return parts

    async def _resolve_slot(self, element: Any, slot: IdentifierSlot, state: _Resolution,
                            event: NormalizedEvent, root: bool) -> None:
        if isinstance(element, list):
            for index, item in enumerate(element):
                if isinstance(item, str):
                    # Bare identifier list (e.g. participants of an update)
                    identifier = parse_jid(item)
                    if identifier is None:
                        continue
                    state.identifiers_seen += 1
                    canonical = await self._canonicalize(identifier, [], None, state, event)
                    element[index] = canonical.value
                elif isinstance(item, dict):
                    await self._resolve_slot(item, slot, state, event, root=False)
            return

        if not isinstance(element, dict):
            return
        primary = parse_jid(_get(element, slot.path))
        if primary is None:
            return
        state.identifiers_seen += 1

        alternates = [
            alt for alt in (parse_alternate(_get(element, path)) for path in slot.alternates)
            if alt is not None and alt != primary
        ]
        name = self._name_for(element, slot)
        canonical = await self._canonicalize(primary, alternates, name, state, event)

        if canonical != primary:
            _set(element, slot.path, canonical.value)
        if root and slot.subject:
            state.subject = canonical

    async def _resolve_keys(self, mapping: Dict[str, Any], state: _Resolution, event: NormalizedEvent) -> None:
        for raw in list(mapping):
            identifier = parse_jid(raw)
            if identifier is None:
                continue
            state.identifiers_seen += 1
            canonical = await self._canonicalize(identifier, [], None, state, event)
            if canonical.value != raw:
                mapping[canonical.value] = mapping.pop(raw)

    @staticmethod
    def _name_for(element: Dict[str, Any], slot: IdentifierSlot) -> Optional[str]:
        if not slot.names:
            return None
        if slot.message_sender:
            key = element.get("key") or {}
            if key.get("fromMe"):
                return None
            in_group = bool(key.get("participant"))
            # In groups pushName belongs to the participant, not the chat
            if in_group != (slot.path == "key.participant"):
                return None
        for name_field in slot.names:
            value = element.get(name_field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    # -------------------------------------------------------------------------
    # Identity cache interaction
    # -------------------------------------------------------------------------

    async def _canonicalize(
            self,
            primary: Identifier,
            alternates: List[Identifier],
            name: Optional[str],
            state: _Resolution,
            event: NormalizedEvent,
    ) -> Identifier:
        if primary.is_group:
            return primary

        phone_alt = next((a for a in alternates if a.is_phone), None)
        opaque_alt = next((a for a in alternates if a.is_opaque), None)

        try:
            if primary.is_opaque and phone_alt is not None:
                record = await self._cache.upsert(phone_alt, primary, name)
                return record.canonical_id

            if primary.is_phone and opaque_alt is not None:
                record = await self._cache.upsert(primary, opaque_alt, name)
                return record.canonical_id

            record = await self._cache.resolve(primary)
            if record is not None:
                if name and name != record.display_name:
                    record = await self._cache.upsert(record.canonical_id, None, name)
                return record.canonical_id

            if primary.is_opaque:
                state.unresolved.append(str(primary))
                return primary

            record = await self._cache.upsert(primary, None, name)
            return record.canonical_id

        except QueryExecutionError as e:
            log.warning(
                f"Identity store unavailable while resolving {primary}: {e}",
                extra={"event_id": event.event_id, "event_kind": event.kind.value},
            )
            state.unresolved.append(str(primary))
            return primary
