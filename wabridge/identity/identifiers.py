# =============================================================================
# File: wabridge/identity/identifiers.py
# Description: Tagged participant/chat identifiers and JID parsing
# =============================================================================

"""
Identifiers

An identifier is a tagged value: the same real-world contact may be known
under a phone-based JID and under an opaque privacy JID (LID). Two
identifiers with different strings may still refer to the same contact;
only the identity cache decides equivalence.

JID suffixes:
    5511999999999@s.whatsapp.net   PHONE
    5511999999999@c.us             PHONE (legacy)
    123456789@lid                  OPAQUE
    120363000000000000@g.us        GROUP
    status@broadcast               GROUP
    120363000000000000@newsletter  GROUP
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class IdentifierForm(str, Enum):
    """Identifier forms"""
    PHONE = "PHONE"
    OPAQUE = "OPAQUE"
    GROUP = "GROUP"


PHONE_SERVERS = frozenset({"s.whatsapp.net", "c.us"})
OPAQUE_SERVERS = frozenset({"lid"})
GROUP_SERVERS = frozenset({"g.us", "broadcast", "newsletter"})


@dataclass(frozen=True)
class Identifier:
    """A tagged identifier value."""
    form: IdentifierForm
    value: str

    def __str__(self) -> str:
        return f"{self.form.value}:{self.value}"

    @property
    def is_opaque(self) -> bool:
        return self.form is IdentifierForm.OPAQUE

    @property
    def is_phone(self) -> bool:
        return self.form is IdentifierForm.PHONE

    @property
    def is_group(self) -> bool:
        return self.form is IdentifierForm.GROUP

    @classmethod
    def parse(cls, text: str) -> "Identifier":
        """Parse the `FORM:value` rendering produced by __str__."""
        form, sep, value = text.partition(":")
        if not sep or not value:
            raise ValueError(f"Not a tagged identifier: {text!r}")
        return cls(IdentifierForm(form), value)


def parse_jid(raw: Any) -> Optional[Identifier]:
    """
    Map a JID string onto an Identifier.

    Device suffixes are stripped ("551199:12@s.whatsapp.net" becomes
    "551199@s.whatsapp.net"). Returns None for empty or unrecognised input.
    """
    if not isinstance(raw, str):
        return None
    jid = raw.strip()
    if "@" not in jid:
        return None

    user, _, server = jid.rpartition("@")
    server = server.lower()
    # user:device or user_agent:device forms
    user = user.split(":", 1)[0]
    if not user:
        return None

    if server in PHONE_SERVERS:
        return Identifier(IdentifierForm.PHONE, f"{user}@s.whatsapp.net")
    if server in OPAQUE_SERVERS:
        return Identifier(IdentifierForm.OPAQUE, f"{user}@lid")
    if server in GROUP_SERVERS:
        return Identifier(IdentifierForm.GROUP, f"{user}@{server}")
    return None


def local_part(identifier: Identifier) -> str:
    """The part of the identifier value before '@' (without device suffix)."""
    return identifier.value.split("@", 1)[0].split(":", 1)[0]
