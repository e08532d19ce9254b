"""In-process metrics counters and histograms."""

from collections import defaultdict
from typing import Any

from backend.core.config import settings

_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement (bucketed in ms)."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 100:
        metrics["buckets"]["<100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    elif value < 10000:
        metrics["buckets"]["1000-10000"] += 1
    else:
        metrics["buckets"][">=10000"] += 1


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


# Emission pipeline
def increment_emission_attempts(doc_type: str) -> None:
    increment_counter("emission_attempts_total", labels={"doc_type": doc_type})


def increment_emission_submitted(doc_type: str) -> None:
    increment_counter("emission_submitted_total", labels={"doc_type": doc_type})


def increment_emission_failures(doc_type: str, reason: str) -> None:
    increment_counter("emission_failures_total", labels={"doc_type": doc_type, "reason": reason})


# Transmission
def increment_send_attempts() -> None:
    increment_counter("send_attempts_total")


def increment_send_retries() -> None:
    increment_counter("send_retries_total")


def record_send_duration(ms: float) -> None:
    record_histogram("send_duration_ms", ms)


# Credentials
def increment_token_refreshes(grant_type: str) -> None:
    increment_counter("token_refreshes_total", labels={"grant_type": grant_type})


# Numbering
def increment_numbering_reservations(action: str) -> None:
    increment_counter("numbering_reservations_total", labels={"action": action})
