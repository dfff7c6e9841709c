# =============================================================================
# File: tests/integration/conftest.py
# Description: Database fixtures (sqlite always; postgres/mysql when configured)
# =============================================================================

import json
import os

import pytest
import pytest_asyncio

from wabridge.config.database_config import DatabaseConfig
from wabridge.infra.persistence.db_client import DatabaseClient
from wabridge.infra.persistence.dialects import get_dialect

BACKEND_URIS = {
    "sqlite": None,
    "postgresql": os.getenv("WABRIDGE_TEST_POSTGRES_URI"),
    "mysql": os.getenv("WABRIDGE_TEST_MYSQL_URI"),
}

MESSAGE_COLUMNS = (
    "id", "instanceId", "key", "pushName", "messageType", "message", "messageTimestamp", "status",
)


@pytest_asyncio.fixture(params=list(BACKEND_URIS))
async def db(request, tmp_path):
    family = request.param
    uri = BACKEND_URIS[family]
    if family == "sqlite":
        uri = f"sqlite+aiosqlite:///{tmp_path / 'wabridge.db'}"
    elif not uri:
        pytest.skip(f"no {family} database configured")

    client = DatabaseClient.from_config(DatabaseConfig(connection_uri=uri, command_timeout=5.0))
    dialect = get_dialect(client.family)
    for table in ("Message", "identity_records", "identity_aliases"):
        await client.execute(f"DROP TABLE IF EXISTS {dialect.quote(table)}")
    yield client
    await client.close()


@pytest_asyncio.fixture
async def message_table(db):
    """Create the Message table as the persistence layer lays it out."""
    d = get_dialect(db.family)
    text_type = "TEXT" if db.family == "sqlite" else "VARCHAR(255)"
    await db.execute(
        f"CREATE TABLE {d.quote('Message')} ("
        f"{d.quote('id')} {text_type} PRIMARY KEY, "
        f"{d.quote('instanceId')} {text_type} NOT NULL, "
        f"{d.quote('key')} {d.json_type()} NOT NULL, "
        f"{d.quote('pushName')} {text_type} NULL, "
        f"{d.quote('messageType')} {text_type} NULL, "
        f"{d.quote('message')} {d.json_type()} NULL, "
        f"{d.quote('messageTimestamp')} BIGINT NOT NULL, "
        f"{d.quote('status')} {text_type} NULL)"
    )

    async def insert(row_id, key, timestamp, status=None, instance="main"):
        columns = ", ".join(d.quote(c) for c in MESSAGE_COLUMNS)
        await db.execute(
            f"INSERT INTO {d.quote('Message')} ({columns}) VALUES ("
            f":id, :instance, {d.json_value('key')}, NULL, :message_type, "
            f"{d.json_value('message')}, :ts, :status)",
            {
                "id": row_id,
                "instance": instance,
                "key": json.dumps(key),
                "message_type": "conversation",
                "message": json.dumps({"conversation": "hi"}),
                "ts": timestamp,
                "status": status,
            },
        )

    return insert
