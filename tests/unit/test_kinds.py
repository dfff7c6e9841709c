import pytest

from wabridge.common.exceptions.exceptions import ConfigurationError
from wabridge.events.kinds import EventKind, validate_kind_names


def test_kind_strings_are_dot_separated_lower_case():
    for kind in EventKind:
        assert kind.value == kind.value.lower()
        assert " " not in kind.value
        assert "_" not in kind.value


def test_parse_exact_match():
    assert EventKind.parse("groups.update") is EventKind.GROUPS_UPDATE


@pytest.mark.parametrize("name", ["GROUPS_UPDATE", "groups.Update", "group.update", "groups-update", "", None])
def test_parse_rejects_non_canonical_spellings(name):
    with pytest.raises(ConfigurationError):
        EventKind.parse(name)


def test_validate_kind_names_returns_kinds():
    kinds = validate_kind_names(["messages.upsert", "call"])

    assert kinds == frozenset({EventKind.MESSAGES_UPSERT, EventKind.CALL})


def test_validate_kind_names_rejects_duplicates():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        validate_kind_names(["messages.upsert", "messages.upsert"])


def test_validate_kind_names_rejects_unknown():
    with pytest.raises(ConfigurationError, match="Unknown event kind"):
        validate_kind_names(["messages.upsert", "message.upsert"])


def test_traits():
    assert EventKind.GROUPS_UPDATE.mergeable
    assert not EventKind.MESSAGES_UPSERT.mergeable
    assert not EventKind.CONNECTION_UPDATE.identity_bearing
    assert EventKind.CHATS_UPDATE.identity_bearing
