import pytest

from wabridge.common.exceptions.exceptions import ConfigurationError
from wabridge.infra.persistence.dialects import (
    MySQLDialect,
    PostgreSQLDialect,
    QueryDialect,
    SQLiteDialect,
    get_dialect,
    supported_families,
)


@pytest.mark.parametrize("family,expected", [
    ("postgresql", PostgreSQLDialect),
    ("postgres", PostgreSQLDialect),
    ("MySQL", MySQLDialect),
    ("mariadb", MySQLDialect),
    (" sqlite ", SQLiteDialect),
])
def test_get_dialect_by_family(family, expected):
    assert isinstance(get_dialect(family), expected)


@pytest.mark.parametrize("family", ["oracle", "", None])
def test_unsupported_family_is_a_configuration_error(family):
    with pytest.raises(ConfigurationError) as exc_info:
        get_dialect(family)
    assert "Supported" in str(exc_info.value)


def test_supported_families_lists_aliases():
    assert {"postgresql", "mysql", "sqlite"} <= set(supported_families())


def test_quoting():
    assert PostgreSQLDialect().quote("Message") == '"Message"'
    assert MySQLDialect().quote("Message") == "`Message`"
    assert SQLiteDialect().quote('we"ird') == '"we""ird"'


def test_json_text_per_backend():
    assert PostgreSQLDialect().json_text('"key"', "id") == "(\"key\"->>'id')"
    assert MySQLDialect().json_text("`key`", "id") == "JSON_UNQUOTE(JSON_EXTRACT(`key`, '$.id'))"
    assert SQLiteDialect().json_text('"key"', "id") == "CAST(json_extract(\"key\", '$.id') AS TEXT)"


def test_json_bool_accepts_native_and_string_booleans():
    predicate = PostgreSQLDialect().json_bool('"key"', "fromMe", False)
    assert predicate == "LOWER((\"key\"->>'fromMe')) IN ('false', '0')"

    predicate = SQLiteDialect().json_bool('"key"', "fromMe", True)
    assert predicate.endswith("IN ('true', '1')")


def test_json_field_names_are_validated():
    with pytest.raises(ValueError):
        PostgreSQLDialect().json_text('"key"', "id'); DROP TABLE x; --")


def test_upsert_statements():
    pg = PostgreSQLDialect().upsert("t", ["id", "name"], ["id"])
    assert pg == (
        'INSERT INTO "t" ("id", "name") VALUES (:id, :name) '
        'ON CONFLICT ("id") DO UPDATE SET "name" = EXCLUDED."name"'
    )

    only_keys = SQLiteDialect().upsert("t", ["id"], ["id"])
    assert only_keys.endswith("DO NOTHING")

    my = MySQLDialect().upsert("t", ["id", "name"], ["id"])
    assert my == (
        "INSERT INTO `t` (`id`, `name`) VALUES (:id, :name) "
        "ON DUPLICATE KEY UPDATE `name` = VALUES(`name`)"
    )


def test_json_binds_and_types():
    assert PostgreSQLDialect().json_value("key") == "CAST(:key AS JSONB)"
    assert SQLiteDialect().json_value("key") == ":key"
    assert MySQLDialect().json_type() == "JSON"
    assert SQLiteDialect().json_type() == "TEXT"


def test_base_strategy_cannot_be_instantiated():
    with pytest.raises(TypeError):
        QueryDialect()
