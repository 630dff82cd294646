"""Adapter selection for sessions spawned without an explicit agent type.

Two strategies:

- ``fixed`` always returns ``SelectionConfig.fixed_agent_type``.
- ``ranked`` scores every installed candidate on success rate, stall
  frequency and completion speed, and returns the best one.
"""

from __future__ import annotations

import logging
from typing import Iterable, Literal, Mapping

from pydantic import BaseModel, Field

from .adapters import AdapterPreflight, PreflightResult
from .adapters.registry import DEFAULT_ORDER
from .metrics import AgentMetrics, MetricsStore

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
FULL_CONFIDENCE_SPAWNS = 5
STALL_PENALTY_WEIGHT = 0.3
SPEED_PENALTY_WEIGHT = 0.1
SLOW_COMPLETION_MS = 300_000


class SelectionConfig(BaseModel):
    """Read-only selection input built from settings."""

    strategy: Literal["fixed", "ranked"] = Field(default="fixed")
    fixed_agent_type: str = Field(default="claude")


def compute_agent_score(metrics: AgentMetrics | None) -> float:
    """Score one adapter in [0, 1]; 0.5 when there is no history.

    The success rate is blended toward neutral until ``FULL_CONFIDENCE_SPAWNS``
    sessions have run. Stalls cost up to 0.3 and slowness at most 0.1.
    """

    if metrics is None or metrics.spawned <= 0:
        return NEUTRAL_SCORE

    spawned = metrics.spawned
    raw_success = metrics.completed / spawned
    volume_weight = min(1.0, spawned / FULL_CONFIDENCE_SPAWNS)
    success_rate = raw_success * volume_weight + NEUTRAL_SCORE * (1 - volume_weight)

    stall_penalty = (metrics.stall_count / spawned) * STALL_PENALTY_WEIGHT
    speed_penalty = min(metrics.avg_completion_ms / SLOW_COMPLETION_MS, 1.0) * SPEED_PENALTY_WEIGHT

    return min(1.0, max(0.0, success_rate - stall_penalty - speed_penalty))


def select_agent_type(
    config: SelectionConfig,
    metrics: Mapping[str, AgentMetrics],
    installed_agents: Iterable[PreflightResult],
    *,
    order: Iterable[str] = DEFAULT_ORDER,
) -> str:
    if config.strategy == "fixed":
        return config.fixed_agent_type

    installed = {result.adapter_type for result in installed_agents if result.installed}
    if not installed:
        return config.fixed_agent_type

    best_agent = config.fixed_agent_type
    best_score = -1.0
    for agent in order:
        if agent not in installed:
            continue
        score = compute_agent_score(metrics.get(agent))
        if score > best_score:
            best_score = score
            best_agent = agent
    return best_agent


class AgentSelector:
    """Resolves the adapter for a spawn request from live metrics and preflight."""

    def __init__(
        self,
        config: SelectionConfig,
        *,
        metrics: MetricsStore,
        preflight: AdapterPreflight,
    ) -> None:
        self.config = config
        self._metrics = metrics
        self._preflight = preflight

    async def choose(self) -> str:
        if self.config.strategy == "fixed":
            return self.config.fixed_agent_type

        installed = await self._preflight.list_installed()
        choice = select_agent_type(
            self.config,
            self._metrics.snapshot(),
            installed,
            order=self._preflight.registry.candidates,
        )
        logger.info(
            "Selected coding agent",
            extra={"adapter_type": choice, "strategy": self.config.strategy},
        )
        return choice

    def scores(self) -> dict[str, float]:
        snapshot = self._metrics.snapshot()
        return {
            adapter_type: compute_agent_score(snapshot.get(adapter_type))
            for adapter_type in self._preflight.registry.candidates
        }


__all__ = [
    "AgentSelector",
    "SelectionConfig",
    "compute_agent_score",
    "select_agent_type",
]
