"""
Stake Scoring Engine - Anomaly Detector.

============================================================
PURPOSE
============================================================
Resolves the final remove level of each validator as an
explicit decision table. Rules are evaluated strictly in the
order below and the first match wins:

    1. Blacklisted                         -> EmergencyUnstake
    2. Performance emergency (normalizer)  -> EmergencyUnstake
    3. Overstake emergency                 -> EmergencyUnstake
       a. score == 0 and held > 0.45% of pool
       b. score > 0 and held > 2.5x implied stake
    4. Performance degraded (normalizer)   -> PartialUnstake
    5. Otherwise                           -> None

Overstake rules (3) never apply to a validator whose pool
stake is above 20% of its total stake.

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from .arithmetic import HUNDRED, ZERO
from .config import AnomalyConfig
from .types import (
    AnomalyDecision,
    NormalizedMetrics,
    RemoveLevel,
    ValidatorTelemetry,
)


logger = logging.getLogger(__name__)


BLACKLISTED_REASON = "blacklisted"
ZERO_SCORE_OVERSTAKED_REASON = "zero score + overstaked, not concentrated risk"
OVERSTAKED_REASON = "250%+ overstaked"
HEALTHY_REASON = "healthy"


class AnomalyDetector:
    """Pure decision table producing an AnomalyDecision per validator."""

    def __init__(self, config: Optional[AnomalyConfig] = None) -> None:
        self._config = config or AnomalyConfig()

    def is_concentration_exempt(self, telemetry: ValidatorTelemetry) -> bool:
        """
        True when pool stake exceeds the exempt share of the
        validator's total stake.
        """
        if telemetry.active_stake <= 0:
            return False
        share_pct = telemetry.marinade_staked * HUNDRED / telemetry.active_stake
        return share_pct > self._config.concentration_exempt_pct

    def implied_stake(
        self,
        score: int,
        total_score: int,
        total_pool_stake: Decimal,
    ) -> Decimal:
        """Stake the pool would hold with a purely score-proportional split."""
        if total_score <= 0:
            return ZERO
        return Decimal(score) * total_pool_stake / Decimal(total_score)

    def detect(
        self,
        telemetry: ValidatorTelemetry,
        metrics: NormalizedMetrics,
        preliminary_score: int,
        total_preliminary_score: int,
        total_pool_stake: Decimal,
    ) -> AnomalyDecision:
        """
        Resolve the remove level for one validator.

        Args:
            telemetry: Raw validator metrics (held and total stake)
            metrics: Normalizer output with emergency/degraded flags
            preliminary_score: Composite score before overstake rules
            total_preliminary_score: Sum over the population
            total_pool_stake: Pool stake from the population snapshot

        Returns:
            AnomalyDecision
        """
        cfg = self._config
        exempt = self.is_concentration_exempt(telemetry)

        # 1. Blacklist
        if cfg.is_blacklisted(telemetry.vote_address):
            detail = cfg.blacklist.get(telemetry.vote_address)
            reason = f"{BLACKLISTED_REASON}: {detail}" if detail else BLACKLISTED_REASON
            logger.info(f"Blacklisted validator found: {telemetry.vote_address}")
            return AnomalyDecision(RemoveLevel.EMERGENCY_UNSTAKE, reason, exempt)

        # 2. Performance emergency
        if metrics.emergency:
            return AnomalyDecision(
                RemoveLevel.EMERGENCY_UNSTAKE,
                metrics.emergency_reason or "performance emergency",
                exempt,
            )

        # 3. Overstake emergency
        if not exempt:
            held = telemetry.marinade_staked
            if preliminary_score == 0:
                if total_pool_stake > 0 and (
                    held * HUNDRED / total_pool_stake > cfg.zero_score_overstake_pool_pct
                ):
                    return AnomalyDecision(
                        RemoveLevel.EMERGENCY_UNSTAKE,
                        ZERO_SCORE_OVERSTAKED_REASON,
                        exempt,
                    )
            else:
                implied = self.implied_stake(
                    preliminary_score, total_preliminary_score, total_pool_stake
                )
                if held > implied * cfg.overstake_multiple:
                    return AnomalyDecision(
                        RemoveLevel.EMERGENCY_UNSTAKE,
                        OVERSTAKED_REASON,
                        exempt,
                    )

        # 4. Performance degraded
        if metrics.degraded:
            return AnomalyDecision(
                RemoveLevel.PARTIAL_UNSTAKE,
                metrics.degraded_reason or "performance degraded",
                exempt,
            )

        # 5. Healthy
        return AnomalyDecision(RemoveLevel.NONE, HEALTHY_REASON, exempt)
