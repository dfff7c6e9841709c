# =============================================================================
# File: wabridge/identity/records.py
# Description: Identity record value type
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, Optional

from wabridge.identity.identifiers import Identifier


@dataclass(frozen=True)
class IdentityRecord:
    """
    One contact identity.

    Immutable: the cache swaps whole records, so a reader never observes a
    record halfway through an update. `alternate_ids` never contains
    `canonical_id`.
    """
    canonical_id: Identifier
    alternate_ids: FrozenSet[Identifier] = field(default_factory=frozenset)
    display_name: Optional[str] = None

    def __post_init__(self):
        if self.canonical_id in self.alternate_ids:
            object.__setattr__(self, "alternate_ids", self.alternate_ids - {self.canonical_id})

    @property
    def identifiers(self) -> FrozenSet[Identifier]:
        return self.alternate_ids | {self.canonical_id}

    def knows(self, identifier: Identifier) -> bool:
        return identifier == self.canonical_id or identifier in self.alternate_ids

    def with_alternates(self, alternates: Iterable[Identifier]) -> "IdentityRecord":
        return replace(self, alternate_ids=self.alternate_ids | frozenset(alternates))

    def without_alternate(self, identifier: Identifier) -> "IdentityRecord":
        return replace(self, alternate_ids=self.alternate_ids - {identifier})

    def with_name(self, name: Optional[str]) -> "IdentityRecord":
        if not name or name == self.display_name:
            return self
        return replace(self, display_name=name)
