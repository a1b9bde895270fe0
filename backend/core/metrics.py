"""Prometheus metrics for the automation hub.

Provides:
- HTTP request metrics (count, duration per method/path/status)
- Execution metrics (terminal executions by type and status, durations)
- Gauges set by the engine (in-flight executions) and the event bus
- Uptime

Exposes a plain-text /metrics endpoint compatible with any Prometheus
scraper. The exposition format is generated directly.
"""

import re
import threading
import time
from collections import defaultdict
from typing import Optional

from fastapi import APIRouter, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

_lock = threading.Lock()

_counters: dict[str, float] = defaultdict(float)
_gauges: dict[str, float] = defaultdict(float)
_summaries: dict[str, list[float]] = defaultdict(list)
_start_time = time.time()

_MAX_OBSERVATIONS = 10_000
_ID_SEGMENT = re.compile(r"^([a-z]+_)?[0-9a-f]{32}$|^[0-9a-f-]{36}$")


def _label_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


def inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _counters[key] += value


def gauge_set(name: str, value: float, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _gauges[key] = value


def observe(name: str, value: float, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        values = _summaries[key]
        values.append(value)
        if len(values) > _MAX_OBSERVATIONS:
            del values[: len(values) - _MAX_OBSERVATIONS // 2]


def get_counter(name: str, labels: Optional[dict] = None) -> float:
    with _lock:
        return _counters.get(_label_key(name, labels), 0.0)


def reset() -> None:
    """Clear every series (used by tests)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _summaries.clear()


def _family(lines: list[str], series: dict, kind: str) -> None:
    seen: set[str] = set()
    for key, value in sorted(series.items()):
        base_name = key.split("{")[0]
        if base_name not in seen:
            lines.append(f"# TYPE {base_name} {kind}")
            seen.add(base_name)
        if kind == "summary":
            if value:
                lines.append(f"{key}_count {len(value)}")
                lines.append(f"{key}_sum {sum(value):.4f}")
        else:
            lines.append(f"{key} {value}")
    if series:
        lines.append("")


def generate_metrics() -> str:
    """Generate Prometheus exposition format text."""
    lines = [
        "# HELP automation_hub_uptime_seconds Time since application start.",
        "# TYPE automation_hub_uptime_seconds gauge",
        f"automation_hub_uptime_seconds {time.time() - _start_time:.1f}",
        "",
    ]
    with _lock:
        _family(lines, _counters, "counter")
        _family(lines, _gauges, "gauge")
        _family(lines, _summaries, "summary")
    return "\n".join(lines) + "\n"


def normalize_path(path: str) -> str:
    """Collapse id segments so label cardinality stays bounded."""
    return "/".join("{id}" if _ID_SEGMENT.match(p) else p for p in path.split("/"))


class MetricsMiddleware(BaseHTTPMiddleware):
    """Track HTTP request count and duration per method/path/status."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        labels = {
            "method": request.method,
            "path": normalize_path(request.url.path),
            "status": str(response.status_code),
        }
        inc("automation_hub_http_requests_total", labels=labels)
        observe("automation_hub_http_request_duration_seconds", duration, labels=labels)
        return response


metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return Response(
        content=generate_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
