"""
Stake Scoring Engine - Overstake Adjuster.

============================================================
PURPOSE
============================================================
Compares the stake a validator currently holds from the pool
against what its score implies it should hold, and derives
the score used for ranking/allocation plus an optional
per-epoch growth ceiling.

The raw composite score is still what gets persisted.

============================================================
ADJUSTMENT LOGIC
============================================================
    should_have = score / total_score * pool

    if concentration exempt (pool stake > 20% of its stake):
        no adjustment
    elif should_have > 2 * held:            (severely under-staked)
        adjusted = floor(score * 0.8)
    elif should_have > held:                (mildly under-staked)
        max_pct = (held + 0.1% of pool) / pool
    else:                                   (over-staked)
        no adjustment

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from .arithmetic import HUNDRED, ZERO, floor_int
from .config import OverstakeConfig
from .types import OverstakeAdjustment


logger = logging.getLogger(__name__)


class OverstakeAdjuster:
    """Derives the allocation score and growth ceiling for one validator."""

    def __init__(self, config: Optional[OverstakeConfig] = None) -> None:
        self._config = config or OverstakeConfig()

    def should_have(self, score: int, total_score: int, total_pool_stake: Decimal) -> Decimal:
        if total_score <= 0 or score <= 0:
            return ZERO
        return Decimal(score) * total_pool_stake / Decimal(total_score)

    def adjust(
        self,
        score: int,
        held_stake: Decimal,
        total_score: int,
        total_pool_stake: Decimal,
        exempt: bool = False,
    ) -> OverstakeAdjustment:
        """
        Compute the adjusted score for one validator.

        Args:
            score: Composite score
            held_stake: Stake currently held from the pool
            total_score: Sum of composite scores over the population
            total_pool_stake: Pool stake from the population snapshot
            exempt: Concentration exemption from AnomalyDetector

        Returns:
            OverstakeAdjustment
        """
        cfg = self._config
        should_have = self.should_have(score, total_score, total_pool_stake)

        if score <= 0:
            return OverstakeAdjustment(
                adjusted_score=0,
                should_have=ZERO,
                overstaked=held_stake > 0,
                exempt=exempt,
            )

        if exempt:
            return OverstakeAdjustment(
                adjusted_score=score,
                should_have=should_have,
                overstaked=should_have < held_stake,
                exempt=True,
            )

        # Severely under-staked, includes a validator holding nothing yet
        if should_have > held_stake * cfg.severe_understake_multiple:
            return OverstakeAdjustment(
                adjusted_score=floor_int(Decimal(score) * cfg.severe_understake_score_factor),
                should_have=should_have,
                severely_understaked=True,
            )

        # Mildly under-staked: growth bounded per epoch
        if should_have > held_stake:
            ceiling = held_stake + total_pool_stake * cfg.max_increase_pool_pct / HUNDRED
            return OverstakeAdjustment(
                adjusted_score=score,
                should_have=should_have,
                max_pct=ceiling / total_pool_stake,
            )

        # Over-staked: reduction is left to AnomalyDetector / AllocationCapper
        return OverstakeAdjustment(
            adjusted_score=score,
            should_have=should_have,
            overstaked=should_have < held_stake,
        )
