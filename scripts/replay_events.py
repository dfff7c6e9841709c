#!/usr/bin/env python3
"""
Replay recorded upstream events through the pipeline.

Reads a JSON-lines file where every line is {"event": "<upstream type>",
"payload": ...} and pushes it through normalize -> resolve -> dispatch
against a subscription snapshot file.

    python scripts/replay_events.py events.jsonl --subscriptions subs.json
    python scripts/replay_events.py events.jsonl --subscriptions subs.json --dry-run

With --dry-run nothing leaves the process: every webhook is printed.
With --database the identity store and receipt sync use that database.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Iterator, Optional, Tuple

import httpx

from wabridge.config.database_config import DatabaseConfig
from wabridge.config.logging_config import get_logger, setup_logging
from wabridge.config.pipeline_config import get_pipeline_config
from wabridge.config.webhook_config import get_webhook_config
from wabridge.events.normalizer import EventNormalizer
from wabridge.identity.cache import IdentityCache
from wabridge.identity.resolver import IdentityResolver
from wabridge.identity.store import SqlIdentityStore
from wabridge.infra.persistence.db_client import DatabaseClient
from wabridge.infra.persistence.message_query_adapter import MessageQueryAdapter
from wabridge.pipeline.event_pipeline import EventPipeline
from wabridge.pipeline.receipts import ReceiptSynchronizer
from wabridge.webhooks.delivery_log import DeliveryStatus
from wabridge.webhooks.dispatcher import WebhookDispatcher
from wabridge.webhooks.subscriptions import SubscriptionRegistry

log = get_logger("wabridge.scripts.replay")


def _print_request(request: httpx.Request) -> httpx.Response:
    print(f"POST {request.url}")
    print(json.dumps(json.loads(request.content), indent=2, ensure_ascii=False))
    return httpx.Response(200)


def read_records(events_path: Path) -> Iterator[Tuple[str, Any]]:
    """Yield (event type, payload) per usable line; other lines are skipped with a warning."""
    with events_path.open(encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                log.warning(f"Skipping line {line_no}: {e}")
                continue
            event_type = record.get("event") if isinstance(record, dict) else None
            if not isinstance(event_type, str) or not event_type:
                log.warning(f"Skipping line {line_no}: no 'event' type")
                continue
            yield event_type, record.get("payload")


async def replay(events_path: Path, subscriptions_path: Path, dry_run: bool, database: Optional[str]) -> int:
    registry = SubscriptionRegistry()
    snapshot = registry.load(json.loads(subscriptions_path.read_text(encoding="utf-8")))

    db: Optional[DatabaseClient] = None
    store = None
    receipts = None
    if database:
        db = DatabaseClient.from_config(DatabaseConfig(connection_uri=database))
        store = SqlIdentityStore(db)
        await store.ensure_schema()
        receipts = ReceiptSynchronizer(MessageQueryAdapter(db), get_pipeline_config().sync_read_receipts)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_print_request)) if dry_run else None
    dispatcher = WebhookDispatcher(client=client, config=get_webhook_config())
    pipeline = EventPipeline(
        snapshot.instance,
        EventNormalizer(),
        IdentityResolver(IdentityCache(store)),
        dispatcher,
        registry,
        receipts=receipts,
    )

    await pipeline.start()
    replayed = 0
    try:
        for event_type, payload in read_records(events_path):
            pipeline.on_batch(event_type, payload)
            replayed += 1
    finally:
        await pipeline.stop()

    failed = dispatcher.delivery_log.recent(DeliveryStatus.FAILED, limit=1000)
    log.info(f"Replayed {replayed} upstream event(s); {len(failed)} failed deliveries")
    if client is not None:
        await client.aclose()
    await dispatcher.close()
    if db is not None:
        await db.close()
    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay recorded upstream events through the pipeline")
    parser.add_argument("events", type=Path, help="JSON-lines file of upstream events")
    parser.add_argument("--subscriptions", type=Path, required=True, help="Subscription snapshot JSON file")
    parser.add_argument("--dry-run", action="store_true", help="Print webhooks instead of sending them")
    parser.add_argument("--database", help="SQLAlchemy async URI for identity store and receipt sync")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    setup_logging("wabridge-replay", log_level=args.log_level)
    return asyncio.run(replay(args.events, args.subscriptions, args.dry_run, args.database))


if __name__ == "__main__":
    sys.exit(main())
