"""Per-adapter session metrics."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentMetrics:
    """Counters for one adapter type."""

    spawned: int = 0
    completed: int = 0
    stall_count: int = 0
    avg_completion_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AgentMetrics":
        return cls(
            spawned=int(payload.get("spawned", 0) or 0),
            completed=int(payload.get("completed", 0) or 0),
            stall_count=int(payload.get("stall_count", 0) or 0),
            avg_completion_ms=float(payload.get("avg_completion_ms", 0.0) or 0.0),
        )


class MetricsBacking(Protocol):
    """Persistence hook for metrics snapshots."""

    def load_metrics(self) -> dict[str, dict[str, Any]]:
        ...

    def save_metrics(self, snapshot: dict[str, dict[str, Any]]) -> Any:
        ...


class MetricsStore:
    """Thread-safe metrics table, mutated only by the session manager.

    ``spawned`` is counted when a process starts; everything else is folded in
    when the session reaches a terminal state.
    """

    def __init__(self, backing: MetricsBacking | None = None) -> None:
        self._metrics: dict[str, AgentMetrics] = {}
        self._active: dict[str, int] = defaultdict(int)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._backing = backing
        if backing is not None:
            for adapter_type, payload in backing.load_metrics().items():
                self._metrics[adapter_type] = AgentMetrics.from_dict(payload)

    def _lock_for(self, adapter_type: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(adapter_type)
            if lock is None:
                lock = self._locks[adapter_type] = threading.Lock()
            return lock

    def record_spawn(self, adapter_type: str) -> None:
        with self._lock_for(adapter_type):
            metrics = self._metrics.setdefault(adapter_type, AgentMetrics())
            metrics.spawned += 1
            self._active[adapter_type] += 1
        self._persist()

    def record_terminal(
        self,
        adapter_type: str,
        *,
        success: bool,
        elapsed_ms: float,
        stall_episodes: int = 0,
    ) -> AgentMetrics:
        with self._lock_for(adapter_type):
            metrics = self._metrics.setdefault(adapter_type, AgentMetrics())
            if self._active[adapter_type] > 0:
                self._active[adapter_type] -= 1
            metrics.stall_count += max(0, stall_episodes)
            if success:
                metrics.completed += 1
                # running mean over successful sessions only
                metrics.avg_completion_ms += (
                    max(0.0, elapsed_ms) - metrics.avg_completion_ms
                ) / metrics.completed
            result = AgentMetrics(**metrics.to_dict())
        self._persist()
        return result

    def get(self, adapter_type: str) -> AgentMetrics | None:
        with self._lock_for(adapter_type):
            metrics = self._metrics.get(adapter_type)
            return AgentMetrics(**metrics.to_dict()) if metrics is not None else None

    def active(self, adapter_type: str) -> int:
        with self._lock_for(adapter_type):
            return self._active.get(adapter_type, 0)

    def snapshot(self) -> dict[str, AgentMetrics]:
        with self._locks_guard:
            adapter_types = list(self._metrics)
        return {
            adapter_type: metrics
            for adapter_type in adapter_types
            if (metrics := self.get(adapter_type)) is not None
        }

    def _persist(self) -> None:
        if self._backing is None:
            return
        payload = {key: value.to_dict() for key, value in self.snapshot().items()}
        try:
            self._backing.save_metrics(payload)
        except Exception as exc:
            logger.warning("Failed to persist agent metrics", extra={"error": str(exc)})


__all__ = ["AgentMetrics", "MetricsBacking", "MetricsStore"]
