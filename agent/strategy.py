"""
Context strategies: how wide the agent looks before editing and how long it may run.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import app_config

from .types import Strategy, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyProfile:
    name: Strategy
    max_iterations: int
    max_preloaded_files: int
    dependency_depth: int
    allow_delegation: bool
    line_edits_only: bool


def profile_for(strategy: Strategy) -> StrategyProfile:
    strategy = Strategy(strategy)
    if strategy == Strategy.MINIMAL:
        return StrategyProfile(
            name=strategy,
            max_iterations=app_config.minimal_max_iterations,
            max_preloaded_files=app_config.minimal_preload_files,
            dependency_depth=0,
            allow_delegation=False,
            line_edits_only=False,
        )
    if strategy == Strategy.MAXIMAL:
        return StrategyProfile(
            name=strategy,
            max_iterations=app_config.maximal_max_iterations,
            max_preloaded_files=app_config.maximal_preload_files,
            dependency_depth=2,
            allow_delegation=False,
            line_edits_only=True,
        )
    return StrategyProfile(
        name=Strategy.HYBRID,
        max_iterations=app_config.hybrid_max_iterations,
        max_preloaded_files=app_config.hybrid_preload_files,
        dependency_depth=1,
        allow_delegation=True,
        line_edits_only=False,
    )


def select_strategy(tier: Tier, override: Optional[Strategy] = None) -> Strategy:
    """Pick a strategy for a tier unless the caller forced one."""
    if override is not None:
        return Strategy(override)
    tier = Tier(tier)
    if tier == Tier.TRIVIAL:
        return Strategy.MINIMAL
    if tier == Tier.ARCHITECTURAL:
        return Strategy.MAXIMAL
    return Strategy.HYBRID


def should_escalate_strategy(strategy: Strategy, tier: Tier, iteration: int,
                             mutation_count: int, already_escalated: bool = False) -> bool:
    """A hybrid run at COMPLEX or above that keeps looking without editing goes maximal."""
    if already_escalated or Strategy(strategy) != Strategy.HYBRID:
        return False
    if Tier(tier).rank < Tier.COMPLEX.rank:
        return False
    if mutation_count > 0:
        return False
    escalate = iteration >= app_config.stall_iterations
    if escalate:
        logger.info(f"Strategy escalation: hybrid stalled {iteration} iterations at tier {Tier(tier).value}")
    return escalate
