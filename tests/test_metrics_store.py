from __future__ import annotations

import threading
from typing import Any

from codeagent_mcp.metrics import AgentMetrics, MetricsStore


class StubBacking:
    def __init__(self, initial: dict[str, dict[str, Any]] | None = None, *, fail: bool = False) -> None:
        self.initial = initial or {}
        self.saved: list[dict[str, dict[str, Any]]] = []
        self.fail = fail

    def load_metrics(self) -> dict[str, dict[str, Any]]:
        return self.initial

    def save_metrics(self, snapshot: dict[str, dict[str, Any]]) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.saved.append(snapshot)


def test_spawn_then_success_updates_counts_and_average() -> None:
    store = MetricsStore()
    store.record_spawn("claude")
    store.record_spawn("claude")
    assert store.active("claude") == 2

    store.record_terminal("claude", success=True, elapsed_ms=1_000)
    result = store.record_terminal("claude", success=True, elapsed_ms=3_000)

    assert result.spawned == 2
    assert result.completed == 2
    assert result.avg_completion_ms == 2_000
    assert store.active("claude") == 0


def test_failure_counts_stalls_but_not_completion_time() -> None:
    store = MetricsStore()
    store.record_spawn("codex")
    store.record_terminal("codex", success=False, elapsed_ms=50_000, stall_episodes=2)

    metrics = store.get("codex")
    assert metrics == AgentMetrics(spawned=1, completed=0, stall_count=2, avg_completion_ms=0.0)


def test_unknown_adapter_has_no_metrics() -> None:
    store = MetricsStore()
    assert store.get("aider") is None
    assert store.snapshot() == {}


def test_snapshot_returns_copies() -> None:
    store = MetricsStore()
    store.record_spawn("gemini")
    snapshot = store.snapshot()
    snapshot["gemini"].spawned = 99

    assert store.get("gemini").spawned == 1


def test_concurrent_updates_are_not_lost() -> None:
    store = MetricsStore()
    adapters = ["claude", "gemini", "codex", "aider"]

    def worker(adapter: str) -> None:
        for _ in range(200):
            store.record_spawn(adapter)
            store.record_terminal(adapter, success=True, elapsed_ms=10, stall_episodes=1)

    threads = [threading.Thread(target=worker, args=(adapter,)) for adapter in adapters * 2]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for adapter in adapters:
        metrics = store.get(adapter)
        assert metrics.spawned == 400
        assert metrics.completed == 400
        assert metrics.stall_count == 400
        assert store.active(adapter) == 0


def test_spawned_bounds_completed_plus_active() -> None:
    store = MetricsStore()
    for _ in range(3):
        store.record_spawn("shell")
    store.record_terminal("shell", success=True, elapsed_ms=5)
    store.record_terminal("shell", success=False, elapsed_ms=5)

    metrics = store.get("shell")
    assert metrics.spawned >= metrics.completed + store.active("shell")


def test_backing_is_loaded_and_saved() -> None:
    backing = StubBacking(
        {"claude": {"spawned": 4, "completed": 3, "stall_count": 1, "avg_completion_ms": 1200.0}}
    )
    store = MetricsStore(backing=backing)
    assert store.get("claude").completed == 3

    store.record_spawn("claude")
    assert backing.saved[-1]["claude"]["spawned"] == 5


def test_backing_failure_is_logged_not_raised(caplog) -> None:
    store = MetricsStore(backing=StubBacking(fail=True))
    store.record_spawn("claude")

    assert store.get("claude").spawned == 1
    assert "Failed to persist agent metrics" in caplog.text
