"""
Stake Scoring Engine - Composite Scorer.

============================================================
PURPOSE
============================================================
Merges the external base score with the normalized
performance sub-scores and the resolved remove level into a
single non-negative integer score.

============================================================
SCORING LOGIC
============================================================
    if remove_level == EmergencyUnstake:
        score = 0
    elif not eligible:
        score = 0
    else:
        base = base_score - floor(concentration * discount)
        base = base * commission_bonus            (opt-in)
        score = floor(base * credit * apy)
        if remove_level == PartialUnstake:
            score = floor(base * credit * apy * 0.5)

Eligibility: commission <= score_max_commission,
active stake >= score_min_stake, defined history average
position >= min_avg_position, not below the top-N line.

The final multiply is done in Decimal with ROUND_FLOOR so the
same inputs always give the same integer.

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from .arithmetic import floor_int
from .config import CompositeConfig
from .types import (
    HistoryAverages,
    NormalizedMetrics,
    PopulationSnapshot,
    RemoveLevel,
    ValidatorTelemetry,
)


logger = logging.getLogger(__name__)


def commission_bonus_multiplier(commission: int) -> int:
    """Base score multiplier rewarding low commission."""
    if commission <= 6:
        return 5
    if commission == 7:
        return 4
    if commission == 8:
        return 3
    if commission == 9:
        return 2
    return 1


class CompositeScorer:
    """Computes the composite integer score for one validator."""

    def __init__(self, config: Optional[CompositeConfig] = None) -> None:
        self._config = config or CompositeConfig()

    def ineligibility_reason(
        self,
        telemetry: ValidatorTelemetry,
        population: PopulationSnapshot,
        history: Optional[HistoryAverages] = None,
    ) -> Optional[str]:
        """Return why the validator cannot score this epoch, or None."""
        cfg = self._config
        if telemetry.commission > cfg.score_max_commission:
            return f"commission {telemetry.commission}% above {cfg.score_max_commission}%"
        if telemetry.active_stake < cfg.score_min_stake:
            return f"active stake {telemetry.active_stake} below {cfg.score_min_stake}"
        if (
            history is not None
            and history.is_defined
            and history.average_position is not None
            and history.average_position < cfg.min_avg_position
        ):
            return f"average position {history.average_position} below {cfg.min_avg_position}"
        if telemetry.vote_address in population.below_line:
            return "below the top-N line"
        return None

    def effective_base(self, telemetry: ValidatorTelemetry, base_score: int) -> int:
        """Base score after concentration discount and commission bonus."""
        cfg = self._config
        discount = floor_int(telemetry.stake_concentration * Decimal(cfg.concentration_point_discount))
        base = max(0, base_score - discount)
        if cfg.commission_bonus_enabled:
            base *= commission_bonus_multiplier(telemetry.commission)
        return base

    def score(
        self,
        telemetry: ValidatorTelemetry,
        base_score: int,
        metrics: NormalizedMetrics,
        remove_level: RemoveLevel,
        population: PopulationSnapshot,
        history: Optional[HistoryAverages] = None,
    ) -> int:
        """
        Compute the composite score.

        Args:
            telemetry: Raw validator metrics
            base_score: External base score (0 if absent)
            metrics: Normalized sub-scores
            remove_level: Resolved remove level
            population: Population snapshot
            history: History averages, if any

        Returns:
            Non-negative integer score
        """
        if remove_level == RemoveLevel.EMERGENCY_UNSTAKE:
            return 0
        if self.ineligibility_reason(telemetry, population, history):
            return 0

        base = self.effective_base(telemetry, base_score)
        if base <= 0:
            return 0

        value = Decimal(base) * metrics.credit_fraction * metrics.apy_fraction
        if remove_level == RemoveLevel.PARTIAL_UNSTAKE:
            value *= self._config.partial_unstake_factor
        return max(0, floor_int(value))

    def preliminary_score(
        self,
        telemetry: ValidatorTelemetry,
        base_score: int,
        metrics: NormalizedMetrics,
        population: PopulationSnapshot,
        history: Optional[HistoryAverages] = None,
    ) -> int:
        """Score implied by the normalizer flags alone, before overstake rules."""
        if metrics.emergency:
            level = RemoveLevel.EMERGENCY_UNSTAKE
        elif metrics.degraded:
            level = RemoveLevel.PARTIAL_UNSTAKE
        else:
            level = RemoveLevel.NONE
        return self.score(telemetry, base_score, metrics, level, population, history)
