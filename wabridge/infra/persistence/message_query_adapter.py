# =============================================================================
# File: wabridge/infra/persistence/message_query_adapter.py
# Description: Dialect-portable queries against the message store
# =============================================================================

"""
Message Query Adapter

The message store keeps the message key ({remoteJid, fromMe, id, ...}) as a
JSON document rather than flat columns. Extraction syntax differs between
engines, so the adapter picks a dialect strategy once, when it is built,
and renders every statement through it. Callers never branch on backend
family.

Message table columns (owned by the surrounding system):
    id, instanceId, key (JSON), pushName, messageType, message (JSON),
    messageTimestamp (integer seconds), status (text, nullable)

Only incoming messages (key.fromMe false) take part in status updates and
unread counts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from wabridge.config.logging_config import get_logger
from wabridge.events.types import MessageStatus
from wabridge.identity.identifiers import Identifier
from wabridge.infra.persistence.db_client import DatabaseClient
from wabridge.infra.persistence.dialects import QueryDialect, get_dialect

log = get_logger("wabridge.infra.persistence.message_query_adapter")


@dataclass(frozen=True)
class MessageReference:
    """Query key for one stored message."""
    instance_scope: str
    chat_id: Identifier
    message_id: str
    from_me: bool
    timestamp: Optional[int] = None


@dataclass
class StoredMessage:
    """One row of the message store."""
    id: str
    instance_id: str
    key: Dict[str, Any]
    message_timestamp: Optional[int] = None
    status: Optional[str] = None
    push_name: Optional[str] = None
    message_type: Optional[str] = None
    message: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredMessage":
        return cls(
            id=str(row["id"]),
            instance_id=row["instanceId"],
            key=_json_document(row.get("key")),
            message_timestamp=int(row["messageTimestamp"]) if row.get("messageTimestamp") is not None else None,
            status=row.get("status"),
            push_name=row.get("pushName"),
            message_type=row.get("messageType"),
            message=_json_document(row.get("message")),
        )


def _json_document(value: Any) -> Dict[str, Any]:
    # asyncpg decodes JSONB to str unless a codec is set; sqlite/mysql hand back text too
    if value is None:
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


class MessageQueryAdapter:
    """
    Dialect-portable message store queries.

    Raises:
        ConfigurationError: at construction, when the backend family has no strategy
        QueryExecutionError: from any call, when the backend call fails
    """

    def __init__(self, db: DatabaseClient, dialect: Optional[QueryDialect] = None, table: Optional[str] = None):
        self._db = db
        self._dialect = dialect or get_dialect(db.family)
        self._table = table or db.config.message_table
        d = self._dialect

        self._t = d.quote(self._table)
        self._key = d.quote("key")
        self._instance = d.quote("instanceId")
        self._ts = d.quote("messageTimestamp")
        self._status = d.quote("status")
        self._columns = ", ".join(
            d.quote(c) for c in (
                "id", "instanceId", "key", "pushName", "messageType",
                "message", "messageTimestamp", "status",
            )
        )
        self._incoming = d.json_bool(self._key, "fromMe", False)
        self._chat_match = (
            f"({d.json_text(self._key, 'remoteJid')} = :chat_id "
            f"OR {d.json_text(self._key, 'remoteJidAlt')} = :chat_id)"
        )
        log.debug(f"Message query adapter using {d.name} strategy for table {self._table}")

    @property
    def dialect(self) -> QueryDialect:
        return self._dialect

    async def find_message_by_key(self, ref: MessageReference) -> Optional[StoredMessage]:
        d = self._dialect
        query = (
            f"SELECT {self._columns} FROM {self._t} "
            f"WHERE {self._instance} = :instance "
            f"AND {d.json_text(self._key, 'id')} = :message_id "
            f"AND {self._chat_match} "
            f"AND {d.json_bool(self._key, 'fromMe', ref.from_me)} "
            f"ORDER BY {self._ts} DESC LIMIT 1"
        )
        row = await self._db.fetchrow(
            query,
            {
                "instance": ref.instance_scope,
                "message_id": ref.message_id,
                "chat_id": ref.chat_id.value,
            },
            operation="find_message_by_key",
        )
        return StoredMessage.from_row(row) if row else None

    def _status_filter(self, statuses: Iterable[Optional[MessageStatus]]) -> Tuple[Optional[str], Dict[str, Any]]:
        """Render `status IN (...)` where a None member matches NULL status."""
        wanted = list(dict.fromkeys(statuses))
        include_null = None in wanted
        named = [MessageStatus(s).value for s in wanted if s is not None]
        params = {f"status_{i}": value for i, value in enumerate(named)}

        clauses: List[str] = []
        if include_null:
            clauses.append(f"{self._status} IS NULL")
        if named:
            clauses.append(f"{self._status} IN ({', '.join(':' + p for p in params)})")
        if not clauses:
            return None, {}
        return "(" + " OR ".join(clauses) + ")", params

    async def update_status_for_chat_up_to_timestamp(
            self,
            chat_id: Identifier,
            timestamp: int,
            new_status: MessageStatus,
            only_if_status_in: Iterable[Optional[MessageStatus]],
            *,
            instance_scope: str,
    ) -> int:
        """
        Set `new_status` on incoming messages of the chat with
        messageTimestamp <= timestamp whose current status is in
        `only_if_status_in`. Returns the number of rows changed.
        """
        status_clause, params = self._status_filter(only_if_status_in)
        if status_clause is None:
            return 0

        query = (
            f"UPDATE {self._t} SET {self._status} = :new_status "
            f"WHERE {self._instance} = :instance "
            f"AND {self._chat_match} "
            f"AND {self._incoming} "
            f"AND {self._ts} <= :timestamp "
            f"AND {status_clause}"
        )
        params.update({
            "new_status": MessageStatus(new_status).value,
            "instance": instance_scope,
            "chat_id": chat_id.value,
            "timestamp": int(timestamp),
        })
        return await self._db.execute(query, params, operation="update_status_for_chat")

    async def count_unread(self, chat_id: Identifier, status: Optional[MessageStatus], *, instance_scope: str) -> int:
        """Count incoming messages of the chat still in `status` (None counts NULL status)."""
        status_clause, params = self._status_filter([status])
        query = (
            f"SELECT COUNT(*) FROM {self._t} "
            f"WHERE {self._instance} = :instance "
            f"AND {self._chat_match} "
            f"AND {self._incoming} "
            f"AND {status_clause}"
        )
        params.update({"instance": instance_scope, "chat_id": chat_id.value})
        value = await self._db.fetchval(query, params, operation="count_unread")
        return int(value or 0)
