# =============================================================================
# File: wabridge/identity/cache.py
# Description: Identity cache (identifier -> canonical contact identity)
# =============================================================================

"""
Identity Cache

Maps any known identifier form of a contact onto one IdentityRecord.

- resolve(): memory first, then read-through to the IdentityStore
- upsert(): create, extend, rebind a contested alternate, or merge two
  records, then write through to the store before returning

Writes are serialized by one asyncio.Lock. Records are immutable and are
swapped whole, so a concurrent resolve() sees either the old record or the
new one. Alternate sets only ever grow by union, which makes concurrent
upserts of the same canonical associative and idempotent.

Contested alternates: an identifier belongs to at most one record. When an
upsert observes an alternate that is bound to a different record, the
alternate moves to the record being written (latest observation wins).
When the observed alternate is the *canonical* of another record, the two
records are merged into the one being written.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from wabridge.config.logging_config import get_logger
from wabridge.identity.identifiers import Identifier
from wabridge.identity.records import IdentityRecord
from wabridge.identity.store import IdentityStore
from wabridge.infra.metrics.pipeline_metrics import record_identity_lookup, record_identity_upsert

log = get_logger("wabridge.identity.cache")

__all__ = ["IdentityCache", "IdentityRecord"]


class IdentityCache:
    """In-process identity cache with optional write-through persistence."""

    def __init__(self, store: Optional[IdentityStore] = None):
        self._store = store
        # canonical -> record
        self._records: Dict[Identifier, IdentityRecord] = {}
        # any identifier -> canonical
        self._index: Dict[Identifier, Identifier] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def lookup(self, identifier: Identifier) -> Optional[IdentityRecord]:
        """Memory-only lookup."""
        canonical = self._index.get(identifier)
        if canonical is None:
            return None
        return self._records.get(canonical)

    async def resolve(self, identifier: Identifier) -> Optional[IdentityRecord]:
        """
        Record whose canonical or alternates contain the identifier.

        Raises:
            QueryExecutionError: the store read failed
        """
        record = self.lookup(identifier)
        if record is not None:
            record_identity_lookup("hit")
            return record

        if self._store is None:
            record_identity_lookup("miss")
            return None

        loaded = await self._store.load(identifier)
        if loaded is None:
            record_identity_lookup("miss")
            return None

        record_identity_lookup("store_hit")
        async with self._lock:
            # A concurrent upsert may have bound it in the meantime
            current = self.lookup(identifier)
            if current is not None:
                return current
            return self._adopt(loaded)

    def records(self) -> List[IdentityRecord]:
        """Snapshot of all records held in memory."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def upsert(
            self,
            canonical: Identifier,
            observed_alternate: Optional[Identifier] = None,
            name: Optional[str] = None,
    ) -> IdentityRecord:
        """
        Bind `observed_alternate` (if any) and `name` (if any) to the record
        of `canonical`, creating it when unknown.

        The in-memory change is visible to resolve() as soon as this returns.

        Raises:
            QueryExecutionError: the store write failed (memory is already updated)
        """
        if observed_alternate == canonical:
            observed_alternate = None

        async with self._lock:
            owner = await self._owner_locked(canonical)
            to_save: List[IdentityRecord] = []
            to_delete: List[Identifier] = []

            if owner is not None and owner.canonical_id == canonical:
                base = owner
                action = "unchanged"
            elif owner is not None and (observed_alternate is None or owner.knows(observed_alternate)):
                # Known only as an alternate and nothing new is claimed
                updated = owner.with_name(name)
                if updated is not owner:
                    self._install(updated, previous=owner)
                    to_save.append(updated)
                    await self._persist(to_save, to_delete)
                record_identity_upsert("unchanged" if updated is owner else "extended")
                return updated
            elif owner is not None:
                # Claimed as canonical together with a new alternate: detach it
                detached = owner.without_alternate(canonical)
                self._install(detached, previous=owner)
                to_save.append(detached)
                base = IdentityRecord(canonical_id=canonical)
                action = "created"
            else:
                base = IdentityRecord(canonical_id=canonical)
                action = "created"

            if observed_alternate is not None:
                alt_owner = await self._owner_locked(observed_alternate)

                if alt_owner is None:
                    base = base.with_alternates([observed_alternate])
                    action = "extended" if action == "unchanged" else action

                elif alt_owner.canonical_id == base.canonical_id:
                    pass

                elif alt_owner.canonical_id == observed_alternate:
                    # The alternate heads its own record: fold that record in
                    base = base.with_alternates(alt_owner.identifiers)
                    if base.display_name is None and alt_owner.display_name:
                        base = base.with_name(alt_owner.display_name)
                    self._forget(alt_owner)
                    to_delete.append(alt_owner.canonical_id)
                    action = "merged"
                    log.info(f"Merged identity {alt_owner.canonical_id} into {base.canonical_id}")

                else:
                    shrunk = alt_owner.without_alternate(observed_alternate)
                    self._install(shrunk, previous=alt_owner)
                    to_save.append(shrunk)
                    base = base.with_alternates([observed_alternate])
                    action = "rebound"
                    log.info(
                        f"Rebound {observed_alternate} from {alt_owner.canonical_id} "
                        f"to {base.canonical_id}"
                    )

            named = base.with_name(name)
            if named is not base and action == "unchanged":
                action = "extended"
            base = named

            record_identity_upsert(action)
            if action == "unchanged":
                return base

            self._install(base, previous=owner if owner is not None and owner.canonical_id == canonical else None)
            to_save.append(base)
            await self._persist(to_save, to_delete)
            return base

    # -------------------------------------------------------------------------
    # Internals (call with the lock held)
    # -------------------------------------------------------------------------

    async def _owner_locked(self, identifier: Identifier) -> Optional[IdentityRecord]:
        record = self.lookup(identifier)
        if record is not None or self._store is None:
            return record
        loaded = await self._store.load(identifier)
        if loaded is None:
            return None
        return self._adopt(loaded)

    def _adopt(self, loaded: IdentityRecord) -> IdentityRecord:
        """Install a store-loaded record, keeping newer in-memory bindings."""
        if loaded.canonical_id in self._index:
            return self._records[self._index[loaded.canonical_id]]
        alternates = frozenset(a for a in loaded.alternate_ids if a not in self._index)
        record = IdentityRecord(loaded.canonical_id, alternates, loaded.display_name)
        self._install(record)
        return record

    def _install(self, record: IdentityRecord, previous: Optional[IdentityRecord] = None) -> None:
        if previous is not None:
            for identifier in previous.identifiers - record.identifiers:
                if self._index.get(identifier) == previous.canonical_id:
                    del self._index[identifier]
        self._records[record.canonical_id] = record
        for identifier in record.identifiers:
            self._index[identifier] = record.canonical_id

    def _forget(self, record: IdentityRecord) -> None:
        self._records.pop(record.canonical_id, None)
        for identifier in record.identifiers:
            if self._index.get(identifier) == record.canonical_id:
                del self._index[identifier]

    async def _persist(self, to_save: List[IdentityRecord], to_delete: List[Identifier]) -> None:
        if self._store is None:
            return
        for record in to_save:
            await self._store.save(record)
        for canonical in to_delete:
            await self._store.delete(canonical)
