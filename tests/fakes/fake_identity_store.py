# =============================================================================
# File: tests/fakes/fake_identity_store.py
# Description: In-memory IdentityStore for unit testing
# Pattern: Ports & Adapters - Fake/Stub adapter
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from wabridge.common.exceptions.exceptions import QueryExecutionError
from wabridge.identity.identifiers import Identifier
from wabridge.identity.records import IdentityRecord


@dataclass
class CallRecord:
    """Record of a method call for verification."""
    method: str
    args: tuple
    kwargs: Dict[str, Any]


class FakeIdentityStore:
    """
    In-memory IdentityStore with call tracking.

    Usage:
        store = FakeIdentityStore()
        store.seed(IdentityRecord(phone, frozenset({opaque})))
        cache = IdentityCache(store)
        assert (await cache.resolve(opaque)).canonical_id == phone
        assert store.was_called("load")
    """

    def __init__(self):
        self.records: Dict[Identifier, IdentityRecord] = {}
        self.aliases: Dict[Identifier, Identifier] = {}
        self._calls: List[CallRecord] = []
        self._should_fail: Dict[str, str] = {}
        self.load_delay = 0.0

    # =========================================================================
    # Test Setup Methods
    # =========================================================================

    def seed(self, record: IdentityRecord) -> None:
        self.records[record.canonical_id] = record
        for identifier in record.identifiers:
            self.aliases[identifier] = record.canonical_id

    def set_failure(self, method: str, message: str = "store unavailable") -> None:
        self._should_fail[method] = message

    def clear_failures(self) -> None:
        self._should_fail.clear()

    def set_load_delay(self, seconds: float) -> None:
        self.load_delay = seconds

    # =========================================================================
    # Verification Methods
    # =========================================================================

    def was_called(self, method: str) -> bool:
        return any(c.method == method for c in self._calls)

    def call_count(self, method: str) -> int:
        return sum(1 for c in self._calls if c.method == method)

    def _track(self, method: str, *args, **kwargs) -> None:
        self._calls.append(CallRecord(method, args, kwargs))
        if method in self._should_fail:
            raise QueryExecutionError(f"identity_{method}", message=self._should_fail[method])

    # =========================================================================
    # IdentityStore
    # =========================================================================

    async def load(self, identifier: Identifier) -> Optional[IdentityRecord]:
        self._track("load", identifier)
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        canonical = self.aliases.get(identifier)
        if canonical is None:
            return None
        record = self.records[canonical]
        alternates = frozenset(a for a, c in self.aliases.items() if c == canonical and a != canonical)
        return IdentityRecord(canonical, alternates, record.display_name)

    async def save(self, record: IdentityRecord) -> None:
        self._track("save", record)
        self.records[record.canonical_id] = record
        for identifier in record.identifiers:
            self.aliases[identifier] = record.canonical_id

    async def delete(self, canonical: Identifier) -> None:
        self._track("delete", canonical)
        self.records.pop(canonical, None)
        for identifier in [a for a, c in self.aliases.items() if c == canonical]:
            del self.aliases[identifier]
