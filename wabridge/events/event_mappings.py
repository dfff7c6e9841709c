# =============================================================================
# File: wabridge/events/event_mappings.py
# Description: Upstream event type mappings (protocol events -> EventKind items)
# =============================================================================

"""
Upstream Event Mappings

Maps upstream protocol event types to extractors that split one raw batch
into per-subject items of a canonical EventKind.

Usage:
    ```python
    from wabridge.events.event_mappings import UPSTREAM_EVENT_EXTRACTORS

    extractor = UPSTREAM_EVENT_EXTRACTORS.get("groups.update")
    items = extractor([{"id": "1203@g.us", "subject": "Team"}])
    # [ExtractedItem(kind=EventKind.GROUPS_UPDATE, subject=GROUP:1203@g.us, ...)]
    ```

Extractors never invent values: a field absent upstream is absent from the
item. In particular no display name is derived from an identifier.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from wabridge.events.kinds import EventKind
from wabridge.events.types import MessageStatus
from wabridge.identity.identifiers import Identifier, parse_jid


@dataclass
class ExtractedItem:
    """One per-subject slice of an upstream batch."""
    kind: EventKind
    subject: Optional[Identifier]
    fields: Dict[str, Any]
    discriminator: Optional[str] = None
    # Set on connection.update when the connection became stable
    flush_signal: bool = False


class MalformedPayloadError(ValueError):
    """Raised by an extractor when the batch has an unusable shape"""
    pass


class ExtractedItems(list):
    """Extractor output. `malformed` counts batch elements skipped for bad shape."""

    def __init__(self, items: Iterable[ExtractedItem] = (), malformed: int = 0):
        super().__init__(items)
        self.malformed = malformed

    def extend_from(self, other: List[ExtractedItem]) -> None:
        self.extend(other)
        self.malformed += getattr(other, "malformed", 0)


# Errors an extractor may hit on a badly shaped batch or batch element
EXTRACTION_ERRORS = (MalformedPayloadError, TypeError, ValueError, KeyError, AttributeError)


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------

# Wrappers that carry the real message one level down
_MESSAGE_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Keys that sit beside the content and never name the message type
_NON_CONTENT_KEYS = frozenset({"messageContextInfo", "senderKeyDistributionMessage"})

# Protocol message types carried inside messages.upsert
_PROTOCOL_REVOKE = 0
_PROTOCOL_EDIT = 14

_KEY_FIELDS = (
    "remoteJid", "remoteJidAlt", "senderPn", "senderLid", "fromMe", "id",
    "participant", "participantAlt", "participantPn", "participantLid",
)


def _as_list(payload: Any) -> List[Any]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, tuple):
        return list(payload)
    return [payload]


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None (absent upstream)."""
    return {k: v for k, v in data.items() if v is not None}


def _pick(source: Dict[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    return _compact({name: copy.deepcopy(source.get(name)) for name in names})


def _each(elements: Iterable[Any], build: Callable[[Any], Optional[ExtractedItem]]) -> ExtractedItems:
    """Build one item per element; an element that fails is counted and skipped."""
    result = ExtractedItems()
    for element in elements:
        try:
            item = build(element)
        except EXTRACTION_ERRORS:
            result.malformed += 1
            continue
        if item is not None:
            result.append(item)
    return result


def normalize_timestamp(value: Any) -> Optional[int]:
    """Upstream timestamps arrive as int, numeric string or {low, high} long."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value) if value.strip().isdigit() else None
    if isinstance(value, dict) and "low" in value:
        low = int(value.get("low") or 0) & 0xFFFFFFFF
        high = int(value.get("high") or 0)
        return (high << 32) + low
    return None


def unwrap_message(message: Any) -> Dict[str, Any]:
    """Strip ephemeral/view-once wrappers."""
    current = message if isinstance(message, dict) else {}
    for _ in range(4):
        for wrapper in _MESSAGE_WRAPPERS:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                current = inner["message"]
                break
        else:
            return current
    return current


def message_type_of(message: Any) -> str:
    content = unwrap_message(message)
    for name in content:
        if name not in _NON_CONTENT_KEYS:
            return name
    return "unknown"


def _message_key(raw_key: Any) -> Dict[str, Any]:
    if not isinstance(raw_key, dict):
        raise MalformedPayloadError("message key missing")
    return _pick(raw_key, _KEY_FIELDS)


def _chat_of(key: Dict[str, Any]) -> Optional[Identifier]:
    return parse_jid(key.get("remoteJid"))


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

def _message_item(raw: Any, kind: EventKind = EventKind.MESSAGES_UPSERT) -> ExtractedItem:
    if not isinstance(raw, dict):
        raise MalformedPayloadError("message must be an object")
    key = _message_key(raw.get("key"))
    message = raw.get("message") or {}
    content = unwrap_message(message)

    protocol = content.get("protocolMessage")
    if isinstance(protocol, dict) and kind is EventKind.MESSAGES_UPSERT:
        protocol_type = protocol.get("type")
        if protocol_type in (_PROTOCOL_EDIT, "MESSAGE_EDIT"):
            kind = EventKind.MESSAGES_EDITED
        elif protocol_type in (_PROTOCOL_REVOKE, "REVOKE"):
            target = protocol.get("key") or {}
            revoked = dict(key)
            if isinstance(target, dict) and target.get("id"):
                revoked["id"] = target["id"]
            return ExtractedItem(
                kind=EventKind.MESSAGES_DELETE,
                subject=_chat_of(key),
                fields={"key": revoked},
                discriminator=revoked.get("id"),
            )

    status = MessageStatus.from_upstream(raw.get("status"))
    fields = _compact({
        "key": key,
        "pushName": raw.get("pushName") or None,
        "message": copy.deepcopy(message),
        "messageType": message_type_of(message),
        "messageTimestamp": normalize_timestamp(raw.get("messageTimestamp")),
        "status": status.value if status else None,
    })
    return ExtractedItem(kind=kind, subject=_chat_of(key), fields=fields, discriminator=key.get("id"))


def extract_messages_upsert(payload: Any) -> List[ExtractedItem]:
    if isinstance(payload, dict) and "messages" in payload:
        messages = payload.get("messages")
    else:
        messages = payload
    return _each(_as_list(messages), _message_item)


def extract_messages_set(payload: Any) -> List[ExtractedItem]:
    parsed = _each(_as_list(payload), _message_item)
    if not parsed:
        return ExtractedItems(malformed=parsed.malformed)
    messages = [item.fields for item in parsed]
    return ExtractedItems(
        [ExtractedItem(kind=EventKind.MESSAGES_SET, subject=None, fields={"messages": messages})],
        malformed=parsed.malformed,
    )


def _message_update_item(raw: Any) -> ExtractedItem:
    if not isinstance(raw, dict):
        raise MalformedPayloadError("message update must be an object")
    key = _message_key(raw.get("key"))
    update = raw.get("update") or {}

    edited = update.get("message")
    if isinstance(edited, dict) and edited:
        return ExtractedItem(
            kind=EventKind.MESSAGES_EDITED,
            subject=_chat_of(key),
            fields=_compact({
                "key": key,
                "message": copy.deepcopy(edited),
                "messageType": message_type_of(edited),
            }),
            discriminator=key.get("id"),
        )

    if update.get("messageStubType") == 1 and "status" not in update:
        return ExtractedItem(
            kind=EventKind.MESSAGES_DELETE,
            subject=_chat_of(key),
            fields={"key": key},
            discriminator=key.get("id"),
        )

    status = MessageStatus.from_upstream(update.get("status"))
    fields = _compact({
        "key": key,
        "status": status.value if status else None,
        "pollUpdates": copy.deepcopy(update.get("pollUpdates")),
    })
    return ExtractedItem(
        kind=EventKind.MESSAGES_UPDATE,
        subject=_chat_of(key),
        fields=fields,
        discriminator=key.get("id"),
    )


def extract_messages_update(payload: Any) -> List[ExtractedItem]:
    return _each(_as_list(payload), _message_update_item)


def _receipt_item(raw: Any) -> ExtractedItem:
    if not isinstance(raw, dict):
        raise MalformedPayloadError("receipt must be an object")
    key = _message_key(raw.get("key"))
    receipt = raw.get("receipt") or {}
    status = MessageStatus.READ if receipt.get("readTimestamp") else MessageStatus.DELIVERY_ACK
    return ExtractedItem(
        kind=EventKind.MESSAGES_UPDATE,
        subject=_chat_of(key),
        fields=_compact({
            "key": key,
            "status": status.value,
            "receiptFrom": receipt.get("userJid"),
        }),
        discriminator=key.get("id"),
    )


def extract_message_receipts(payload: Any) -> List[ExtractedItem]:
    return _each(_as_list(payload), _receipt_item)


def _deleted_key_item(raw_key: Any) -> ExtractedItem:
    key = _message_key(raw_key)
    return ExtractedItem(
        kind=EventKind.MESSAGES_DELETE,
        subject=_chat_of(key),
        fields={"key": key},
        discriminator=key.get("id"),
    )


def extract_messages_delete(payload: Any) -> List[ExtractedItem]:
    if isinstance(payload, dict) and payload.get("all"):
        jid = payload.get("jid")
        return [ExtractedItem(
            kind=EventKind.MESSAGES_DELETE,
            subject=parse_jid(jid),
            fields=_compact({"remoteJid": jid, "all": True}),
        )]
    keys = payload.get("keys") if isinstance(payload, dict) else payload
    return _each(_as_list(keys), _deleted_key_item)


def _reaction_item(raw: Any) -> ExtractedItem:
    if not isinstance(raw, dict):
        raise MalformedPayloadError("reaction must be an object")
    key = _message_key(raw.get("key"))
    reaction = copy.deepcopy(raw.get("reaction") or {})
    return ExtractedItem(
        kind=EventKind.MESSAGES_UPSERT,
        subject=_chat_of(key),
        fields={"key": key, "message": {"reactionMessage": reaction}, "messageType": "reactionMessage"},
        discriminator=key.get("id"),
    )


def extract_reactions(payload: Any) -> List[ExtractedItem]:
    return _each(_as_list(payload), _reaction_item)


# -----------------------------------------------------------------------------
# Contacts, chats, presence
# -----------------------------------------------------------------------------

_CONTACT_FIELDS = ("id", "lid", "phoneNumber", "name", "notify", "verifiedName")


def _contact_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    fields = _pick(raw, _CONTACT_FIELDS)
    picture = raw.get("imgUrl") or raw.get("profilePicUrl")
    if picture and picture != "changed":
        fields["profilePicUrl"] = picture
    return fields


def _contacts(kind: EventKind) -> Callable[[Any], List[ExtractedItem]]:
    def extract(payload: Any) -> List[ExtractedItem]:
        items = []
        for raw in _as_list(payload):
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            items.append(ExtractedItem(kind=kind, subject=parse_jid(raw["id"]), fields=_contact_fields(raw)))
        return items
    return extract


_CHAT_FIELDS = (
    "id", "name", "unreadCount", "conversationTimestamp", "archived",
    "pinned", "mute", "readOnly", "pnJid", "lidJid",
)


def _chats(kind: EventKind) -> Callable[[Any], List[ExtractedItem]]:
    def extract(payload: Any) -> List[ExtractedItem]:
        items = []
        for raw in _as_list(payload):
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            fields = _pick(raw, _CHAT_FIELDS)
            if "conversationTimestamp" in fields:
                fields["conversationTimestamp"] = normalize_timestamp(fields["conversationTimestamp"])
            items.append(ExtractedItem(kind=kind, subject=parse_jid(raw["id"]), fields=_compact(fields)))
        return items
    return extract


def extract_chats_delete(payload: Any) -> List[ExtractedItem]:
    items = []
    for jid in _as_list(payload):
        if isinstance(jid, dict):
            jid = jid.get("id")
        if isinstance(jid, str) and jid:
            items.append(ExtractedItem(kind=EventKind.CHATS_DELETE, subject=parse_jid(jid), fields={"id": jid}))
    return items


def extract_presence(payload: Any) -> List[ExtractedItem]:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise MalformedPayloadError("presence.update without chat id")
    fields = {
        "id": payload["id"],
        "presences": copy.deepcopy(payload.get("presences") or {}),
    }
    return [ExtractedItem(kind=EventKind.PRESENCE_UPDATE, subject=parse_jid(payload["id"]), fields=fields)]


def extract_history_set(payload: Any) -> List[ExtractedItem]:
    """messaging-history.set carries chats, contacts and messages at once."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("messaging-history.set must be an object")
    items = ExtractedItems()
    chats = [_compact(_pick(c, _CHAT_FIELDS)) for c in _as_list(payload.get("chats")) if isinstance(c, dict)]
    if chats:
        items.append(ExtractedItem(kind=EventKind.CHATS_SET, subject=None, fields={"chats": chats}))
    contacts = [_contact_fields(c) for c in _as_list(payload.get("contacts")) if isinstance(c, dict)]
    if contacts:
        items.append(ExtractedItem(kind=EventKind.CONTACTS_SET, subject=None, fields={"contacts": contacts}))
    items.extend_from(extract_messages_set(payload.get("messages")))
    if items and payload.get("isLatest") is not None:
        for item in items:
            item.fields["isLatest"] = bool(payload["isLatest"])
    return items


# -----------------------------------------------------------------------------
# Groups
# -----------------------------------------------------------------------------

_GROUP_FIELDS = (
    "id", "subject", "subjectOwner", "subjectOwnerPn", "subjectTime", "owner", "ownerPn", "desc",
    "descOwner", "creation", "size", "restrict", "announce", "participants",
    "author", "authorPn", "ephemeralDuration", "inviteCode",
)


def _groups(kind: EventKind) -> Callable[[Any], List[ExtractedItem]]:
    def extract(payload: Any) -> List[ExtractedItem]:
        items = []
        for raw in _as_list(payload):
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            items.append(ExtractedItem(kind=kind, subject=parse_jid(raw["id"]), fields=_pick(raw, _GROUP_FIELDS)))
        return items
    return extract


def extract_subject_change(payload: Any) -> List[ExtractedItem]:
    """Group subject change notification: {id, subject|name, author?}."""
    items = []
    for raw in _as_list(payload):
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        fields = _pick(raw, ("id", "author", "authorPn"))
        subject = raw.get("subject") if raw.get("subject") is not None else raw.get("name")
        if subject is not None:
            fields["subject"] = subject
        items.append(ExtractedItem(kind=EventKind.GROUPS_UPDATE, subject=parse_jid(raw["id"]), fields=fields))
    return items


def extract_group_participants(payload: Any) -> List[ExtractedItem]:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise MalformedPayloadError("group-participants.update without group id")
    fields = _pick(payload, ("id", "author", "authorPn", "action", "participants"))
    return [ExtractedItem(kind=EventKind.GROUP_PARTICIPANTS_UPDATE, subject=parse_jid(payload["id"]), fields=fields)]


# -----------------------------------------------------------------------------
# Connection, labels, calls
# -----------------------------------------------------------------------------

def extract_connection(payload: Any) -> List[ExtractedItem]:
    if not isinstance(payload, dict):
        raise MalformedPayloadError("connection.update must be an object")
    items = []
    if payload.get("qr"):
        items.append(ExtractedItem(
            kind=EventKind.QRCODE_UPDATED,
            subject=None,
            fields={"qrcode": {"code": payload["qr"]}},
        ))

    state = payload.get("connection")
    status_reason = None
    last_disconnect = payload.get("lastDisconnect")
    if isinstance(last_disconnect, dict):
        error = last_disconnect.get("error") or {}
        output = error.get("output") if isinstance(error, dict) else None
        if isinstance(output, dict):
            status_reason = output.get("statusCode")

    me = payload.get("me") if isinstance(payload.get("me"), dict) else {}
    fields = _compact({
        "state": state,
        "statusReason": status_reason,
        "wuid": payload.get("wuid") or me.get("id"),
        "profileName": me.get("name"),
        "isNewLogin": payload.get("isNewLogin"),
    })
    if fields:
        items.append(ExtractedItem(
            kind=EventKind.CONNECTION_UPDATE,
            subject=None,
            fields=fields,
            flush_signal=state == "open",
        ))
    return items


def extract_labels_edit(payload: Any) -> List[ExtractedItem]:
    items = []
    for raw in _as_list(payload):
        if not isinstance(raw, dict) or raw.get("id") is None:
            continue
        items.append(ExtractedItem(
            kind=EventKind.LABELS_EDIT,
            subject=None,
            fields=_pick(raw, ("id", "name", "color", "deleted", "predefinedId")),
            discriminator=str(raw["id"]),
        ))
    return items


def extract_labels_association(payload: Any) -> List[ExtractedItem]:
    if not isinstance(payload, dict):
        raise MalformedPayloadError("labels.association must be an object")
    association = payload.get("association") or {}
    chat_id = association.get("chatId")
    fields = _compact({
        "type": payload.get("type"),
        "chatId": chat_id,
        "labelId": association.get("labelId"),
    })
    return [ExtractedItem(kind=EventKind.LABELS_ASSOCIATION, subject=parse_jid(chat_id), fields=fields)]


_CALL_FIELDS = ("id", "from", "callerPn", "chatId", "groupJid", "status", "isGroup", "isVideo", "offline", "date")


def extract_calls(payload: Any) -> List[ExtractedItem]:
    items = []
    for raw in _as_list(payload):
        if not isinstance(raw, dict) or not raw.get("from"):
            continue
        fields = _pick(raw, _CALL_FIELDS)
        items.append(ExtractedItem(kind=EventKind.CALL, subject=parse_jid(raw["from"]), fields=fields))
    return items


# -----------------------------------------------------------------------------
# Upstream Event Type -> Extractor Mapping
# -----------------------------------------------------------------------------

UPSTREAM_EVENT_EXTRACTORS: Dict[str, Callable[[Any], List[ExtractedItem]]] = {
    # =========================================================================
    # MESSAGES
    # =========================================================================
    'messages.upsert': extract_messages_upsert,
    'messages.update': extract_messages_update,
    'message-receipt.update': extract_message_receipts,
    'messages.delete': extract_messages_delete,
    'messages.reaction': extract_reactions,
    'messaging-history.set': extract_history_set,

    # =========================================================================
    # CONTACTS / CHATS / PRESENCE
    # =========================================================================
    'contacts.upsert': _contacts(EventKind.CONTACTS_UPSERT),
    'contacts.update': _contacts(EventKind.CONTACTS_UPDATE),
    'chats.upsert': _chats(EventKind.CHATS_UPSERT),
    'chats.update': _chats(EventKind.CHATS_UPDATE),
    'chats.delete': extract_chats_delete,
    'presence.update': extract_presence,

    # =========================================================================
    # GROUPS
    # =========================================================================
    'groups.upsert': _groups(EventKind.GROUPS_UPSERT),
    'groups.update': _groups(EventKind.GROUPS_UPDATE),
    'subjectChange': extract_subject_change,
    'group-participants.update': extract_group_participants,

    # =========================================================================
    # INSTANCE / LABELS / CALLS
    # =========================================================================
    'connection.update': extract_connection,
    'labels.edit': extract_labels_edit,
    'labels.association': extract_labels_association,
    'call': extract_calls,
}


# =============================================================================
# EOF
# =============================================================================
