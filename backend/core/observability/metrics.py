"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] = None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 10:
        metrics["buckets"]["<10"] += 1
    elif value < 100:
        metrics["buckets"]["10-100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    elif value < 10000:
        metrics["buckets"]["1000-10000"] += 1
    else:
        metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement (start from ``time.time()``)."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    for key, data in _metrics.items():
        metric_result = {"count": data["count"], "sum": data["sum"]}

        if data["values"]:
            values = data["values"]
            metric_result.update(
                {
                    "min": min(values),
                    "max": max(values),
                    "avg": data["sum"] / len(values),
                    "buckets": dict(data["buckets"]),
                }
            )

        result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Invoice lifecycle metrics
def increment_invoices_finalized() -> None:
    increment_counter("invoices_finalized_total")


def increment_invoices_cancelled() -> None:
    increment_counter("invoices_cancelled_total")


def increment_finalize_failures(reason: str) -> None:
    increment_counter("finalize_failures_total", labels={"reason": reason})


def increment_cancel_failures(reason: str) -> None:
    increment_counter("cancel_failures_total", labels={"reason": reason})


def record_finalize_duration(duration_ms: float) -> None:
    record_histogram("finalize_duration_ms", duration_ms)


def record_document_duration(kind: str, duration_ms: float) -> None:
    """Render/serialize/embed timings, labelled by stage."""
    record_histogram("document_duration_ms", duration_ms, labels={"kind": kind})


# Storage metrics
def increment_storage_retries(n: float = 1.0) -> None:
    increment_counter("storage_upload_retries_total", value=n)


def increment_storage_failures() -> None:
    increment_counter("storage_upload_failures_total")


# Tenant policy metrics
def increment_tenant_validation_failure(reason: str) -> None:
    increment_counter("tenant_validation_failures_total", labels={"reason": reason})
