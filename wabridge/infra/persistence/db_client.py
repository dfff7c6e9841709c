# =============================================================================
# File: wabridge/infra/persistence/db_client.py
# Description: Async relational store client (SQLAlchemy AsyncEngine)
# =============================================================================

"""
Database Client

Thin async wrapper over a SQLAlchemy AsyncEngine exposing the same four
calls on every backend family: fetch, fetchrow, fetchval, execute.

- Statements are plain SQL with named binds (`:name`), built with the
  dialect strategy in `dialects.py`
- Every call runs under the configured command timeout
- Slow statements are logged with their operation name
- Every backend failure (timeout, syntax, connectivity) surfaces as
  QueryExecutionError(operation, cause)

Usage:
    ```python
    db = await init_database()
    rows = await db.fetch('SELECT * FROM "Message" WHERE "instanceId" = :i', {"i": "x"},
                          operation="list_messages")
    ```
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from wabridge.common.exceptions.exceptions import QueryExecutionError
from wabridge.config.database_config import DatabaseConfig, get_database_config
from wabridge.config.logging_config import get_logger
from wabridge.infra.metrics.pipeline_metrics import record_query

log = get_logger("wabridge.infra.persistence.db_client")

Params = Optional[Mapping[str, Any]]


class DatabaseClient:
    """Async client bound to one engine and one backend family."""

    def __init__(self, engine: AsyncEngine, config: Optional[DatabaseConfig] = None):
        self._engine = engine
        self._config = config or get_database_config()

    @classmethod
    def from_config(cls, config: Optional[DatabaseConfig] = None) -> "DatabaseClient":
        config = config or get_database_config()
        engine = create_async_engine(
            config.connection_uri.get_secret_value(),
            **config.engine_kwargs(),
        )
        return cls(engine, config)

    @property
    def family(self) -> str:
        """Backend family of the engine ("postgresql", "mysql", "sqlite", ...)."""
        return self._config.provider or self._engine.dialect.name

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _run(self, operation: str, query: str, params: Params, mode: str, write: bool) -> Any:
        start = time.monotonic()
        success = False
        try:
            result = await asyncio.wait_for(
                self._execute(query, params, mode, write),
                timeout=self._config.command_timeout,
            )
            success = True
            return result
        except asyncio.TimeoutError as e:
            log.error(f"Query '{operation}' timed out after {self._config.command_timeout}s")
            raise QueryExecutionError(operation, e, f"timed out after {self._config.command_timeout}s") from e
        except SQLAlchemyError as e:
            log.error(f"Query '{operation}' failed: {e}", extra={"operation": operation})
            raise QueryExecutionError(operation, e) from e
        except OSError as e:
            # Driver-level connectivity failures that escape SQLAlchemy wrapping
            log.error(f"Query '{operation}' connection failure: {e}", extra={"operation": operation})
            raise QueryExecutionError(operation, e) from e
        finally:
            elapsed = time.monotonic() - start
            record_query(operation, elapsed, success)
            elapsed_ms = elapsed * 1000
            if success and elapsed_ms > self._config.slow_query_threshold_ms:
                log.warning(
                    f"[SLOW QUERY] {operation} took {elapsed_ms:.1f}ms: {query[:300]}",
                    extra={"operation": operation},
                )

    async def _execute(self, query: str, params: Params, mode: str, write: bool) -> Any:
        statement = text(query)
        bind = dict(params or {})
        if write:
            async with self._engine.begin() as conn:
                result = await conn.execute(statement, bind)
                return result.rowcount
        async with self._engine.connect() as conn:
            result = await conn.execute(statement, bind)
            if mode == "all":
                return [dict(row) for row in result.mappings().all()]
            if mode == "one":
                row = result.mappings().first()
                return dict(row) if row is not None else None
            return result.scalar()

    async def fetch(self, query: str, params: Params = None, *, operation: str = "fetch") -> List[Dict[str, Any]]:
        """Execute the query and return all rows as dicts."""
        return await self._run(operation, query, params, "all", write=False)

    async def fetchrow(self, query: str, params: Params = None, *, operation: str = "fetchrow") -> Optional[Dict[str, Any]]:
        """Execute the query and return the first row (or None)."""
        return await self._run(operation, query, params, "one", write=False)

    async def fetchval(self, query: str, params: Params = None, *, operation: str = "fetchval") -> Any:
        """Execute the query and return the first column of the first row."""
        return await self._run(operation, query, params, "scalar", write=False)

    async def execute(self, query: str, params: Params = None, *, operation: str = "execute") -> int:
        """Execute a write statement in its own transaction. Returns affected row count."""
        return await self._run(operation, query, params, "rowcount", write=True)

    async def execute_script(self, statements: Iterable[str], *, operation: str = "execute_script") -> None:
        """Execute several DDL statements, one transaction each."""
        for statement in statements:
            await self.execute(statement, operation=operation)

    async def health_check(self) -> Dict[str, Any]:
        try:
            value = await self.fetchval("SELECT 1", operation="health_check")
            return {"healthy": value == 1, "family": self.family}
        except QueryExecutionError as e:
            return {"healthy": False, "family": self.family, "error": str(e)}

    async def close(self) -> None:
        await self._engine.dispose()


# =============================================================================
# Module-level client
# =============================================================================

_client: Optional[DatabaseClient] = None


async def init_database(config: Optional[DatabaseConfig] = None) -> DatabaseClient:
    """Create the shared client (idempotent)."""
    global _client
    if _client is None:
        _client = DatabaseClient.from_config(config)
        log.info(f"Database client initialized (family={_client.family})")
    return _client


def get_database() -> DatabaseClient:
    if _client is None:
        raise RuntimeError("Database client not initialized. Call init_database() first.")
    return _client


async def close_database() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
        log.info("Database client closed")
