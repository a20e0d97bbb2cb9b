import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "ingest_events_total": 0.0,
    "ingest_blocked_injection": 0.0,
    "suggestions_generated": 0.0,
    "suggestions_fallback": 0.0,
    "sessions_expired_heartbeat": 0.0,
    "stream_connections_active": 0.0,
    "stream_disconnects_total": 0.0,
    "stream_duration_total_sec": 0.0,
    "stream_duration_samples": 0.0,
    "latency_total_ms": 0.0,
    "latency_samples": 0.0,
}

_COUNTER_KEYS = (
    "ingest_events_total",
    "ingest_blocked_injection",
    "suggestions_generated",
    "suggestions_fallback",
    "sessions_expired_heartbeat",
    "stream_connections_active",
    "stream_disconnects_total",
)


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def observe_stream_duration(seconds: float) -> None:
    duration = max(0.0, float(seconds or 0.0))
    with _lock:
        _metrics["stream_duration_total_sec"] = float(_metrics.get("stream_duration_total_sec", 0.0)) + duration
        _metrics["stream_duration_samples"] = float(_metrics.get("stream_duration_samples", 0.0)) + 1.0


def observe_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["latency_total_ms"] = float(_metrics.get("latency_total_ms", 0.0)) + latency
        _metrics["latency_samples"] = float(_metrics.get("latency_samples", 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    stream_samples = max(1.0, float(data.get("stream_duration_samples") or 0.0))
    latency_samples = max(1.0, float(data.get("latency_samples") or 0.0))

    payload: dict[str, Any] = {
        "generated_at": time.time(),
        # Raw totals, useful for computing deltas over a test window
        "stream_duration_total_sec": float(data.get("stream_duration_total_sec") or 0.0),
        "stream_duration_samples": int(data.get("stream_duration_samples") or 0.0),
        "latency_total_ms": float(data.get("latency_total_ms") or 0.0),
        "latency_samples": int(data.get("latency_samples") or 0.0),
        "avg_stream_duration": round(float(data.get("stream_duration_total_sec") or 0.0) / stream_samples, 4),
        "avg_latency_ms": round(float(data.get("latency_total_ms") or 0.0) / latency_samples, 2),
    }
    for key in _COUNTER_KEYS:
        payload[key] = int(data.get(key) or 0.0)

    if extra:
        payload.update(extra)
    return payload
