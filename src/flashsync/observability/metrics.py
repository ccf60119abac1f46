"""Prometheus counters for the persistence layer.

Exposed through the default registry; the embedding application decides how
to serve them (``prometheus_client.start_http_server`` or its own endpoint).
"""

from __future__ import annotations

from prometheus_client import Counter

GATEWAY_OPERATIONS = Counter(
    "flashsync_gateway_operations_total",
    "Persistence gateway operations by collection, operation and backend",
    labelnames=("collection", "op", "backend"),
)

CAPABILITY_DOWNGRADES = Counter(
    "flashsync_capability_downgrades_total",
    "Cloud to local-only capability downgrades",
)

STREAM_COMMITS = Counter(
    "flashsync_stream_commits_total",
    "Streamed replies committed to a chat, by outcome",
    labelnames=("outcome",),
)

OVERRIDE_PUSHES = Counter(
    "flashsync_override_pushes_total",
    "Administrative override pushes by sub-command kind",
    labelnames=("kind",),
)


def record_operation(collection: str, op: str, backend: str) -> None:
    try:
        GATEWAY_OPERATIONS.labels(collection=collection, op=op, backend=backend).inc()
    except Exception:
        # Never block persistence on metrics
        pass
