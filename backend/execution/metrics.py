"""Per-automation execution metrics.

Counters are updated incrementally on every terminal execution, so a
snapshot costs O(1) regardless of history length. rebuild() recomputes
an automation's counters from its history (after loading from storage).
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from core import metrics as prometheus
from core.constants import AutomationStatus
from core.utils import isoformat
from execution.models import Execution


@dataclass
class MetricsSnapshot:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    stopped_executions: int = 0
    average_duration: float = 0.0
    last_execution: Optional[datetime] = None
    next_execution: Optional[datetime] = None
    success_rate: float = 0.0
    performance: Dict[str, float] = field(
        default_factory=lambda: {"cpu_usage": 0.0, "memory_usage": 0.0, "network_usage": 0.0}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "stopped_executions": self.stopped_executions,
            "average_duration": self.average_duration,
            "last_execution": isoformat(self.last_execution),
            "next_execution": isoformat(self.next_execution),
            "success_rate": self.success_rate,
            "performance": dict(self.performance),
        }


class _Counters:
    __slots__ = (
        "total", "successful", "failed", "stopped", "timed", "average_duration",
        "last_execution", "usage_samples", "cpu", "memory", "network",
    )

    def __init__(self):
        self.total = 0
        self.successful = 0
        self.failed = 0
        self.stopped = 0
        self.timed = 0
        self.average_duration = 0.0
        self.last_execution: Optional[datetime] = None
        self.usage_samples = 0
        self.cpu = 0.0
        self.memory = 0.0
        self.network = 0.0

    def add(self, execution: Execution) -> None:
        self.total += 1
        if execution.status == AutomationStatus.COMPLETED:
            self.successful += 1
        elif execution.status == AutomationStatus.ERROR:
            self.failed += 1
        elif execution.status == AutomationStatus.STOPPED:
            self.stopped += 1

        duration = execution.duration
        if duration is not None:
            self.timed += 1
            self.average_duration += (duration - self.average_duration) / self.timed

        if self.last_execution is None or execution.started_at > self.last_execution:
            self.last_execution = execution.started_at

        usage = execution.result.resource_usage if execution.result else None
        if usage is not None:
            self.usage_samples += 1
            self.cpu += usage.cpu
            self.memory += usage.memory
            self.network += usage.network

    def snapshot(self, next_execution: Optional[datetime]) -> MetricsSnapshot:
        rate = (self.successful / self.total) * 100.0 if self.total else 0.0
        samples = self.usage_samples or 1
        return MetricsSnapshot(
            total_executions=self.total,
            successful_executions=self.successful,
            failed_executions=self.failed,
            stopped_executions=self.stopped,
            average_duration=round(self.average_duration, 6),
            last_execution=self.last_execution,
            next_execution=next_execution,
            success_rate=round(min(max(rate, 0.0), 100.0), 2),
            performance={
                "cpu_usage": self.cpu / samples,
                "memory_usage": self.memory / samples,
                "network_usage": self.network / samples,
            },
        )


class MetricsAggregator:
    """Thread-safe counters keyed by automation id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, _Counters] = {}
        self._overall = _Counters()

    def record(self, execution: Execution) -> None:
        """Fold one terminal execution into the counters."""
        if not execution.is_terminal:
            raise ValueError(f"Execution {execution.id} is not terminal")
        with self._lock:
            self._counters.setdefault(execution.automation_id, _Counters()).add(execution)
            self._overall.add(execution)

        labels = {"type": execution.automation_type, "status": execution.status.value}
        prometheus.inc("automation_hub_executions_total", labels=labels)
        if execution.duration is not None:
            prometheus.observe(
                "automation_hub_execution_duration_seconds",
                execution.duration,
                labels={"type": execution.automation_type},
            )

    def snapshot(
        self, automation_id: str, next_execution: Optional[datetime] = None
    ) -> MetricsSnapshot:
        with self._lock:
            counters = self._counters.get(automation_id)
            if counters is None:
                return MetricsSnapshot(next_execution=next_execution)
            return counters.snapshot(next_execution)

    def overall(self) -> MetricsSnapshot:
        with self._lock:
            return self._overall.snapshot(None)

    def rebuild(self, automation_id: str, executions: Iterable[Execution]) -> MetricsSnapshot:
        """Recompute one automation's counters from its terminal executions."""
        fresh = _Counters()
        for execution in executions:
            if execution.is_terminal:
                fresh.add(execution)
        with self._lock:
            self._counters[automation_id] = fresh
            self._overall = _Counters()
            for counters in self._counters.values():
                _merge(self._overall, counters)
            return fresh.snapshot(None)

    def forget(self, automation_id: str) -> None:
        with self._lock:
            self._counters.pop(automation_id, None)


def _merge(into: _Counters, other: _Counters) -> None:
    timed = into.timed + other.timed
    if timed:
        into.average_duration = (
            into.average_duration * into.timed + other.average_duration * other.timed
        ) / timed
    into.timed = timed
    into.total += other.total
    into.successful += other.successful
    into.failed += other.failed
    into.stopped += other.stopped
    if other.last_execution and (
        into.last_execution is None or other.last_execution > into.last_execution
    ):
        into.last_execution = other.last_execution
    into.usage_samples += other.usage_samples
    into.cpu += other.cpu
    into.memory += other.memory
    into.network += other.network
