from __future__ import annotations

import asyncio

from codeagent_mcp.adapters import PreflightResult, default_registry
from codeagent_mcp.metrics import AgentMetrics, MetricsStore
from codeagent_mcp.selection import (
    AgentSelector,
    SelectionConfig,
    compute_agent_score,
    select_agent_type,
)


def _installed(*names: str, missing: tuple[str, ...] = ()) -> list[PreflightResult]:
    results = [
        PreflightResult(adapter_type=name, installed=True, install_command="", docs_url="")
        for name in names
    ]
    results.extend(
        PreflightResult(adapter_type=name, installed=False, install_command="", docs_url="")
        for name in missing
    )
    return results


def test_cold_start_scores_neutral() -> None:
    assert compute_agent_score(None) == 0.5
    assert compute_agent_score(AgentMetrics()) == 0.5


def test_better_success_rate_scores_higher() -> None:
    good = compute_agent_score(AgentMetrics(spawned=10, completed=9, avg_completion_ms=30_000))
    bad = compute_agent_score(AgentMetrics(spawned=10, completed=3, avg_completion_ms=30_000))
    assert good > bad


def test_score_is_monotonic_in_completed() -> None:
    scores = [
        compute_agent_score(AgentMetrics(spawned=10, completed=completed, stall_count=2))
        for completed in range(11)
    ]
    assert scores == sorted(scores)


def test_stalls_are_penalized() -> None:
    clean = compute_agent_score(AgentMetrics(spawned=10, completed=8, avg_completion_ms=30_000))
    stalled = compute_agent_score(
        AgentMetrics(spawned=10, completed=8, stall_count=8, avg_completion_ms=30_000)
    )
    assert clean > stalled


def test_low_sample_count_blends_toward_neutral() -> None:
    one_spawn = compute_agent_score(AgentMetrics(spawned=1, completed=1, avg_completion_ms=10_000))
    assert 0.45 < one_spawn < 0.65


def test_speed_penalty_is_capped() -> None:
    fast = compute_agent_score(AgentMetrics(spawned=10, completed=10, avg_completion_ms=10_000))
    slow = compute_agent_score(AgentMetrics(spawned=10, completed=10, avg_completion_ms=300_000))
    slower = compute_agent_score(AgentMetrics(spawned=10, completed=10, avg_completion_ms=900_000))
    assert fast > slow
    assert fast - slow <= 0.1
    assert slow == slower


def test_score_stays_within_unit_interval() -> None:
    worst = compute_agent_score(
        AgentMetrics(spawned=10, completed=0, stall_count=10, avg_completion_ms=600_000)
    )
    best = compute_agent_score(AgentMetrics(spawned=50, completed=50))
    assert worst == 0.0
    assert 0.0 <= best <= 1.0


def test_fixed_strategy_ignores_metrics() -> None:
    config = SelectionConfig(strategy="fixed", fixed_agent_type="gemini")
    metrics = {"claude": AgentMetrics(spawned=10, completed=10)}
    assert select_agent_type(config, metrics, _installed("claude")) == "gemini"
    assert select_agent_type(config, {}, []) == "gemini"


def test_ranked_falls_back_when_nothing_installed() -> None:
    config = SelectionConfig(strategy="ranked", fixed_agent_type="codex")
    assert select_agent_type(config, {}, _installed(missing=("claude",))) == "codex"


def test_ranked_returns_best_installed_agent() -> None:
    config = SelectionConfig(strategy="ranked", fixed_agent_type="claude")
    metrics = {
        "claude": AgentMetrics(spawned=10, completed=3, stall_count=5, avg_completion_ms=200_000),
        "gemini": AgentMetrics(spawned=10, completed=9, stall_count=1, avg_completion_ms=30_000),
    }
    assert select_agent_type(config, metrics, _installed("claude", "gemini")) == "gemini"


def test_ranked_skips_agents_that_are_not_installed() -> None:
    config = SelectionConfig(strategy="ranked", fixed_agent_type="claude")
    metrics = {"gemini": AgentMetrics(spawned=10, completed=10, avg_completion_ms=1_000)}
    choice = select_agent_type(config, metrics, _installed("claude", missing=("gemini",)))
    assert choice == "claude"


def test_ranked_ties_follow_default_order() -> None:
    config = SelectionConfig(strategy="ranked", fixed_agent_type="aider")
    choice = select_agent_type(config, {}, _installed("codex", "gemini", "claude"))
    assert choice == "claude"

    choice = select_agent_type(config, {}, _installed("aider", "codex"))
    assert choice == "codex"


class StubPreflight:
    def __init__(self, installed: list[PreflightResult]) -> None:
        self.registry = default_registry()
        self._installed = installed
        self.calls = 0

    async def list_installed(self) -> list[PreflightResult]:
        self.calls += 1
        return self._installed


def test_selector_ranks_with_live_metrics() -> None:
    metrics = MetricsStore()
    for _ in range(5):
        metrics.record_spawn("claude")
        metrics.record_terminal("claude", success=False, elapsed_ms=0)
        metrics.record_spawn("aider")
        metrics.record_terminal("aider", success=True, elapsed_ms=20_000)

    preflight = StubPreflight(_installed("claude", "aider"))
    selector = AgentSelector(
        SelectionConfig(strategy="ranked", fixed_agent_type="claude"),
        metrics=metrics,
        preflight=preflight,  # type: ignore[arg-type]
    )

    assert asyncio.run(selector.choose()) == "aider"
    scores = selector.scores()
    assert scores["aider"] > scores["claude"]
    assert scores["gemini"] == 0.5


def test_selector_fixed_strategy_skips_preflight() -> None:
    preflight = StubPreflight(_installed("claude"))
    selector = AgentSelector(
        SelectionConfig(strategy="fixed", fixed_agent_type="shell"),
        metrics=MetricsStore(),
        preflight=preflight,  # type: ignore[arg-type]
    )

    assert asyncio.run(selector.choose()) == "shell"
    assert preflight.calls == 0
