# =============================================================================
# File: wabridge/identity/store.py
# Description: Identity record persistence
# =============================================================================

"""
Identity Store

Durable side of the identity cache. Two tables:

    identity_records (canonical_id PK, display_name, updated_at)
    identity_aliases (alias_id PK, canonical_id)

Every identifier of a record, the canonical one included, has a row in
identity_aliases. The alias primary key enforces "an identifier belongs to
at most one record"; writing an alias for a new canonical moves it.
"""

from __future__ import annotations

import time
from typing import List, Optional, Protocol, runtime_checkable

from wabridge.config.logging_config import get_logger
from wabridge.identity.identifiers import Identifier
from wabridge.identity.records import IdentityRecord
from wabridge.infra.persistence.db_client import DatabaseClient
from wabridge.infra.persistence.dialects import QueryDialect, get_dialect

log = get_logger("wabridge.identity.store")


@runtime_checkable
class IdentityStore(Protocol):
    """Persistence collaborator of the identity cache."""

    async def load(self, identifier: Identifier) -> Optional[IdentityRecord]:
        """Record owning the identifier (as canonical or alternate), if any."""
        ...

    async def save(self, record: IdentityRecord) -> None:
        """Persist the record and bind every one of its identifiers to it."""
        ...

    async def delete(self, canonical: Identifier) -> None:
        """Remove a record that was merged into another one."""
        ...


class SqlIdentityStore:
    """IdentityStore over the relational store."""

    def __init__(
            self,
            db: DatabaseClient,
            dialect: Optional[QueryDialect] = None,
            records_table: Optional[str] = None,
            aliases_table: Optional[str] = None,
    ):
        self._db = db
        self._dialect = dialect or get_dialect(db.family)
        d = self._dialect
        self._records = d.quote(records_table or db.config.identity_table)
        self._aliases = d.quote(aliases_table or db.config.alias_table)
        self._upsert_record = d.upsert(
            records_table or db.config.identity_table,
            ["canonical_id", "display_name", "updated_at"],
            ["canonical_id"],
        )
        self._upsert_alias = d.upsert(
            aliases_table or db.config.alias_table,
            ["alias_id", "canonical_id"],
            ["alias_id"],
        )

    async def ensure_schema(self) -> None:
        """Create the identity tables when missing (development and tests)."""
        await self._db.execute_script([
            f"CREATE TABLE IF NOT EXISTS {self._records} ("
            f"canonical_id VARCHAR(255) PRIMARY KEY, "
            f"display_name VARCHAR(255) NULL, "
            f"updated_at BIGINT NOT NULL)",
            f"CREATE TABLE IF NOT EXISTS {self._aliases} ("
            f"alias_id VARCHAR(255) PRIMARY KEY, "
            f"canonical_id VARCHAR(255) NOT NULL)",
        ], operation="identity_ensure_schema")

    async def load(self, identifier: Identifier) -> Optional[IdentityRecord]:
        row = await self._db.fetchrow(
            f"SELECT r.canonical_id, r.display_name FROM {self._aliases} a "
            f"JOIN {self._records} r ON r.canonical_id = a.canonical_id "
            f"WHERE a.alias_id = :alias_id",
            {"alias_id": str(identifier)},
            operation="identity_load",
        )
        if row is None:
            return None

        canonical = Identifier.parse(row["canonical_id"])
        alias_rows = await self._db.fetch(
            f"SELECT alias_id FROM {self._aliases} WHERE canonical_id = :canonical_id",
            {"canonical_id": row["canonical_id"]},
            operation="identity_load_aliases",
        )
        alternates: List[Identifier] = [
            Identifier.parse(r["alias_id"]) for r in alias_rows
            if r["alias_id"] != row["canonical_id"]
        ]
        return IdentityRecord(
            canonical_id=canonical,
            alternate_ids=frozenset(alternates),
            display_name=row.get("display_name"),
        )

    async def save(self, record: IdentityRecord) -> None:
        canonical = str(record.canonical_id)
        await self._db.execute(
            self._upsert_record,
            {"canonical_id": canonical, "display_name": record.display_name, "updated_at": int(time.time())},
            operation="identity_save",
        )
        for alias in (record.canonical_id, *record.alternate_ids):
            await self._db.execute(
                self._upsert_alias,
                {"alias_id": str(alias), "canonical_id": canonical},
                operation="identity_save_alias",
            )

    async def delete(self, canonical: Identifier) -> None:
        # Aliases were already rebound by save() of the surviving record
        await self._db.execute(
            f"DELETE FROM {self._aliases} WHERE canonical_id = :canonical_id",
            {"canonical_id": str(canonical)},
            operation="identity_delete_aliases",
        )
        await self._db.execute(
            f"DELETE FROM {self._records} WHERE canonical_id = :canonical_id",
            {"canonical_id": str(canonical)},
            operation="identity_delete",
        )
        log.debug(f"Identity record {canonical} removed after merge")
