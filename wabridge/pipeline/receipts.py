# =============================================================================
# File: wabridge/pipeline/receipts.py
# Description: Read-receipt synchronization against the message store
# =============================================================================

"""
Receipt Synchronizer

Enriches messages.update events through the MessageQueryAdapter:

- attaches `messageId` (row id of the stored message, None when not stored)
- for a READ receipt on an incoming message, marks every earlier incoming
  message of the chat that is still unread (status NULL or DELIVERY_ACK)
  as READ, then derives a chats.update carrying the new unread count

A failed store call yields SyncResult(ok=False, reason=...). The event is
returned either way so the caller still dispatches it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from wabridge.common.exceptions.exceptions import QueryExecutionError
from wabridge.config.logging_config import get_logger
from wabridge.events.kinds import EventKind
from wabridge.events.types import MessageStatus, NormalizedEvent
from wabridge.identity.identifiers import parse_jid
from wabridge.infra.persistence.message_query_adapter import MessageQueryAdapter, MessageReference

log = get_logger("wabridge.pipeline.receipts")

UNREAD_STATUSES = (None, MessageStatus.DELIVERY_ACK)


@dataclass
class SyncResult:
    ok: bool
    event: NormalizedEvent
    reason: Optional[str] = None
    derived_events: List[NormalizedEvent] = field(default_factory=list)
    updated_rows: int = 0


class ReceiptSynchronizer:

    def __init__(self, adapter: MessageQueryAdapter, sync_read_receipts: bool = True):
        self._adapter = adapter
        self._sync_read_receipts = sync_read_receipts

    async def synchronize(self, event: NormalizedEvent) -> SyncResult:
        if event.kind is not EventKind.MESSAGES_UPDATE:
            return SyncResult(ok=True, event=event)

        key = event.payload.get("key") or {}
        chat = parse_jid(key.get("remoteJid"))
        message_id = key.get("id")
        if chat is None or not message_id:
            return SyncResult(ok=True, event=event, reason="no_message_key")

        from_me = bool(key.get("fromMe"))
        ref = MessageReference(
            instance_scope=event.instance,
            chat_id=chat,
            message_id=message_id,
            from_me=from_me,
        )

        try:
            stored = await self._adapter.find_message_by_key(ref)
        except QueryExecutionError as e:
            return self._failed(event, e)

        event = event.with_changes(payload={**event.payload, "messageId": stored.id if stored else None})

        status = MessageStatus.from_upstream(event.payload.get("status"))
        if (
                not self._sync_read_receipts
                or status is not MessageStatus.READ
                or from_me
                or stored is None
                or stored.message_timestamp is None
        ):
            return SyncResult(ok=True, event=event)

        try:
            updated = await self._adapter.update_status_for_chat_up_to_timestamp(
                chat,
                stored.message_timestamp,
                MessageStatus.READ,
                UNREAD_STATUSES,
                instance_scope=event.instance,
            )
            unread = await self._adapter.count_unread(
                chat, MessageStatus.DELIVERY_ACK, instance_scope=event.instance,
            )
        except QueryExecutionError as e:
            return self._failed(event, e)

        log.debug(f"Marked {updated} message(s) read in {chat.value}; {unread} unread left")
        chats_update = NormalizedEvent(
            kind=EventKind.CHATS_UPDATE,
            subject_id=event.subject_id or chat,
            payload={"id": (event.subject_id or chat).value, "unreadMessages": unread},
            instance=event.instance,
        )
        return SyncResult(ok=True, event=event, derived_events=[chats_update], updated_rows=updated)

    @staticmethod
    def _failed(event: NormalizedEvent, error: QueryExecutionError) -> SyncResult:
        log.error(
            f"Receipt sync failed for {event.kind.value} {event.event_id}: {error}",
            extra={"event_id": event.event_id, "operation": error.operation},
        )
        return SyncResult(ok=False, event=event, reason=f"{error.operation}: {error}")
