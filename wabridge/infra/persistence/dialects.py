# =============================================================================
# File: wabridge/infra/persistence/dialects.py
# Description: SQL dialect strategies for the message and identity stores
# =============================================================================

"""
SQL Dialect Strategies

Each supported backend family gets one strategy that renders the SQL
fragments which differ between engines:

- identifier quoting
- text extraction of a field from a JSON column
- boolean predicate over a JSON field (accepts native and string-quoted
  booleans, so rows written by different producers compare the same)
- upsert statement
- JSON column DDL type

Statements use SQLAlchemy named binds (`:name`) on every backend.

Usage:
    ```python
    dialect = get_dialect("postgresql")
    where = dialect.json_bool('"key"', "fromMe", False)
    # ("key"->>'fromMe') IN ('false', '0')
    ```
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Sequence, Type

from wabridge.common.exceptions.exceptions import ConfigurationError

_TRUE_LITERALS = ("true", "1")
_FALSE_LITERALS = ("false", "0")


def _literal_list(values: Sequence[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


def _check_json_field(field: str) -> str:
    # Field names are code constants; reject anything that could break out of the literal
    if not field or not all(ch.isalnum() or ch == "_" for ch in field):
        raise ValueError(f"Invalid JSON field name: {field!r}")
    return field


class QueryDialect(ABC):
    """Base strategy. Subclasses provide the JSON fragments and override only what else differs."""

    name: str = "generic"
    quote_char: str = '"'

    def quote(self, identifier: str) -> str:
        q = self.quote_char
        return f"{q}{identifier.replace(q, q + q)}{q}"

    @abstractmethod
    def json_text(self, column: str, field: str) -> str:
        """Expression yielding the JSON field as text (NULL when absent)."""
        pass

    def json_bool(self, column: str, field: str, value: bool) -> str:
        """Predicate true when the JSON field holds the given boolean."""
        literals = _TRUE_LITERALS if value else _FALSE_LITERALS
        return f"LOWER({self.json_text(column, field)}) IN ({_literal_list(literals)})"

    def json_value(self, bind: str) -> str:
        """Bind placeholder for a serialized JSON document."""
        return f":{bind}"

    @abstractmethod
    def json_type(self) -> str:
        """DDL type of a JSON column."""
        pass

    def upsert(self, table: str, columns: Sequence[str], key_columns: Sequence[str]) -> str:
        """INSERT ... ON CONFLICT (keys) DO UPDATE for the given columns."""
        cols = ", ".join(self.quote(c) for c in columns)
        binds = ", ".join(f":{c}" for c in columns)
        keys = ", ".join(self.quote(c) for c in key_columns)
        updates = [c for c in columns if c not in key_columns]
        sql = f"INSERT INTO {self.quote(table)} ({cols}) VALUES ({binds}) ON CONFLICT ({keys}) "
        if not updates:
            return sql + "DO NOTHING"
        assignments = ", ".join(f"{self.quote(c)} = EXCLUDED.{self.quote(c)}" for c in updates)
        return sql + f"DO UPDATE SET {assignments}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PostgreSQLDialect(QueryDialect):
    name = "postgresql"

    def json_text(self, column: str, field: str) -> str:
        return f"({column}->>'{_check_json_field(field)}')"

    def json_value(self, bind: str) -> str:
        return f"CAST(:{bind} AS JSONB)"

    def json_type(self) -> str:
        return "JSONB"


class MySQLDialect(QueryDialect):
    name = "mysql"
    quote_char = "`"

    def json_text(self, column: str, field: str) -> str:
        return f"JSON_UNQUOTE(JSON_EXTRACT({column}, '$.{_check_json_field(field)}'))"

    def json_value(self, bind: str) -> str:
        return f"CAST(:{bind} AS JSON)"

    def json_type(self) -> str:
        return "JSON"

    def upsert(self, table: str, columns: Sequence[str], key_columns: Sequence[str]) -> str:
        cols = ", ".join(self.quote(c) for c in columns)
        binds = ", ".join(f":{c}" for c in columns)
        updates = [c for c in columns if c not in key_columns] or list(key_columns[:1])
        assignments = ", ".join(f"{self.quote(c)} = VALUES({self.quote(c)})" for c in updates)
        return (
            f"INSERT INTO {self.quote(table)} ({cols}) VALUES ({binds}) "
            f"ON DUPLICATE KEY UPDATE {assignments}"
        )


class SQLiteDialect(QueryDialect):
    name = "sqlite"

    def json_text(self, column: str, field: str) -> str:
        # json_extract returns 1/0 for native booleans and the bare string otherwise
        return f"CAST(json_extract({column}, '$.{_check_json_field(field)}') AS TEXT)"

    def json_type(self) -> str:
        return "TEXT"


_DIALECTS: Dict[str, Type[QueryDialect]] = {
    "postgresql": PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
    "sqlite": SQLiteDialect,
}


def supported_families() -> Sequence[str]:
    return tuple(sorted(_DIALECTS))


def get_dialect(family: str) -> QueryDialect:
    """
    Select the strategy for a backend family.

    Raises:
        ConfigurationError: the family is not supported
    """
    dialect_cls = _DIALECTS.get((family or "").strip().lower())
    if dialect_cls is None:
        raise ConfigurationError(
            f"Unsupported database backend family '{family}'. "
            f"Supported: {', '.join(supported_families())}"
        )
    return dialect_cls()
