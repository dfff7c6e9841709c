# =============================================================================
# File: wabridge/infra/metrics/pipeline_metrics.py
# Description: Prometheus metrics for the event pipeline
# =============================================================================
# Metrics for:
#   - Ingestion and normalization (raw events, drops, merges, emitted)
#   - Identity resolution (cache hits/misses, incomplete resolutions)
#   - Message store queries (failures per operation)
#   - Webhook delivery (outcomes, latency, queue depth)
# =============================================================================

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Normalizer Metrics
# =============================================================================

wabridge_raw_events_total = Counter(
    'wabridge_raw_events_total',
    'Raw upstream events received',
    ['event_type']
)

wabridge_events_dropped_total = Counter(
    'wabridge_events_dropped_total',
    'Upstream events dropped by the normalizer',
    ['reason']  # unknown_kind, malformed
)

wabridge_buffer_merges_total = Counter(
    'wabridge_buffer_merges_total',
    'Partial updates merged into an already accumulating buffer slot',
    ['kind']
)

wabridge_events_emitted_total = Counter(
    'wabridge_events_emitted_total',
    'Normalized events emitted by the normalizer',
    ['kind']
)

wabridge_buffer_slots = Gauge(
    'wabridge_buffer_slots',
    'Buffer slots currently tracked by the normalizer'
)

# =============================================================================
# Identity Metrics
# =============================================================================

wabridge_identity_lookups_total = Counter(
    'wabridge_identity_lookups_total',
    'Identity cache lookups',
    ['result']  # hit, store_hit, miss
)

wabridge_identity_upserts_total = Counter(
    'wabridge_identity_upserts_total',
    'Identity cache upserts',
    ['action']  # created, extended, rebound, merged, unchanged
)

wabridge_resolution_incomplete_total = Counter(
    'wabridge_resolution_incomplete_total',
    'Events dispatched with at least one unresolved identifier',
    ['kind']
)

# =============================================================================
# Message Store Metrics
# =============================================================================

wabridge_query_failures_total = Counter(
    'wabridge_query_failures_total',
    'Message store queries that failed',
    ['operation']
)

wabridge_query_latency_seconds = Histogram(
    'wabridge_query_latency_seconds',
    'Message store query latency',
    ['operation'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# =============================================================================
# Webhook Metrics
# =============================================================================

wabridge_webhook_deliveries_total = Counter(
    'wabridge_webhook_deliveries_total',
    'Webhook delivery outcomes',
    ['kind', 'status']  # delivered, failed
)

wabridge_webhook_latency_seconds = Histogram(
    'wabridge_webhook_latency_seconds',
    'Webhook delivery latency (all attempts)',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

wabridge_dispatch_queue_size = Gauge(
    'wabridge_dispatch_queue_size',
    'Events waiting in the dispatch queue'
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_raw_event(event_type: str) -> None:
    """Record a raw upstream event."""
    wabridge_raw_events_total.labels(event_type=event_type).inc()


def record_dropped_event(reason: str, count: int = 1) -> None:
    """Record dropped upstream events (or batch elements)."""
    wabridge_events_dropped_total.labels(reason=reason).inc(count)


def record_buffer_merge(kind: str) -> None:
    wabridge_buffer_merges_total.labels(kind=kind).inc()


def record_emitted_event(kind: str) -> None:
    wabridge_events_emitted_total.labels(kind=kind).inc()


def record_identity_lookup(result: str) -> None:
    wabridge_identity_lookups_total.labels(result=result).inc()


def record_identity_upsert(action: str) -> None:
    wabridge_identity_upserts_total.labels(action=action).inc()


def record_resolution_incomplete(kind: str) -> None:
    wabridge_resolution_incomplete_total.labels(kind=kind).inc()


def record_query(operation: str, duration_seconds: float, success: bool) -> None:
    """Record a message store query."""
    wabridge_query_latency_seconds.labels(operation=operation).observe(duration_seconds)
    if not success:
        wabridge_query_failures_total.labels(operation=operation).inc()


def record_delivery(kind: str, delivered: bool, duration_seconds: float) -> None:
    """Record a webhook delivery outcome."""
    status = "delivered" if delivered else "failed"
    wabridge_webhook_deliveries_total.labels(kind=kind, status=status).inc()
    wabridge_webhook_latency_seconds.observe(duration_seconds)
