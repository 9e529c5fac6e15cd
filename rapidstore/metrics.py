"""
Prometheus metrics for the data-access layer.

This module provides:
- Store operation counter (operation, kind, result)
- Store operation latency histogram (operation, kind)
- Change notification counter (collection)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# Operation counter
# operation: insert, update, delete, query, query_form_data
# result: ok, existing, invalid_resource, validation_error, not_found, storage_error
store_operations_total = Counter(
    "store_operations_total",
    "Total data-access operations",
    labelnames=["operation", "kind", "result"]
)

# Operation latency histogram in seconds
store_operation_latency_seconds = Histogram(
    "store_operation_latency_seconds",
    "Data-access operation latency in seconds",
    labelnames=["operation", "kind"]
)

# Change notifications fired, by top-level collection
change_notifications_total = Counter(
    "change_notifications_total",
    "Total change notifications fired",
    labelnames=["collection"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_store_operation(operation: str, kind: str, result: str, latency_seconds: float) -> None:
    """
    Record a data-access operation in metrics.

    Args:
        operation: insert, update, delete, query or query_form_data
        kind: Resource kind value, or "unknown" when the path did not match
        result: Outcome label
        latency_seconds: Operation time in seconds
    """
    store_operations_total.labels(
        operation=operation,
        kind=kind,
        result=result
    ).inc()

    store_operation_latency_seconds.labels(
        operation=operation,
        kind=kind
    ).observe(latency_seconds)


def record_change_notification(collection: str) -> None:
    """
    Record a fired change notification.

    Args:
        collection: First path segment, e.g. "message" or "formdata"
    """
    change_notifications_total.labels(collection=collection).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
