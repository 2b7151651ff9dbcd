"""
Stake Scoring Engine - Metric Normalizer.

============================================================
PURPOSE
============================================================
Converts raw per-validator epoch metrics into bounded
sub-scores (fractions in [0, 1]) and health flags.

Pure and stateless given its inputs: telemetry, history
averages and the population snapshot.

============================================================
RULES (first match sets the emergency reason)
============================================================
Absolute health:
1. superminority member                       -> emergency
2. commission above healthy maximum (20%)     -> emergency
3. delinquent                                 -> emergency
4. zero credits                               -> emergency
5. release below minimum                      -> emergency
   (skipped while too many validators run an old release)

Population-relative (always applied):
6. credits ratio < 0.80                       -> emergency, fraction 0
7. APY ratio < 0.80                           -> emergency, fraction 0
   credits/APY ratio < 0.90                   -> degraded, fraction <= 0.5
   otherwise fraction = min(ratio, 1)

History (only when history is defined):
8. average position below 35                  -> degraded

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional, Tuple

from .arithmetic import ONE, ZERO, clamp, floor_places, version_below
from .config import NormalizerConfig
from .types import (
    DegenerateAggregateError,
    HistoryAverages,
    NormalizedMetrics,
    PopulationSnapshot,
    ValidatorTelemetry,
)


logger = logging.getLogger(__name__)


AVERAGE_POSITION_SCALE = Decimal("50")


class MetricNormalizer:
    """
    Normalizes one validator's metrics against the population.

    ============================================================
    OUTPUT
    ============================================================
    - credit_fraction, apy_fraction: Decimal in [0, 1]
    - average_position: credits / mean * 50 (50 = average)
    - emergency / degraded flags with reasons, propagated to
      AnomalyDetector rather than silently dropped

    ============================================================
    """

    def __init__(self, config: Optional[NormalizerConfig] = None) -> None:
        self._config = config or NormalizerConfig()

    def normalize(
        self,
        telemetry: ValidatorTelemetry,
        population: PopulationSnapshot,
        history: Optional[HistoryAverages] = None,
    ) -> NormalizedMetrics:
        """
        Compute sub-scores and flags for one validator.

        Raises:
            DegenerateAggregateError: If mean credits is zero or undefined
        """
        cfg = self._config
        if population.mean_credits is None or population.mean_credits <= 0:
            raise DegenerateAggregateError(
                "Mean credits is zero or undefined",
                epoch=population.epoch,
            )
        history = history or HistoryAverages.undefined(telemetry.vote_address)

        credit_ratio = Decimal(telemetry.credits_observed) / population.mean_credits
        average_position = floor_places(credit_ratio * AVERAGE_POSITION_SCALE)

        emergency_reasons = []
        degraded_reasons = []

        # Absolute health rules
        absolute = self._absolute_health(telemetry, population)
        if absolute:
            emergency_reasons.append(absolute)

        # Credits sub-score
        credit_fraction, credit_flag = self._ratio_fraction(
            credit_ratio,
            cfg.credit_emergency_ratio,
            cfg.credit_degraded_ratio,
        )

        if credit_flag == "emergency":
            emergency_reasons.append(
                f"Credits too low compared to the average "
                f"({floor_places(credit_ratio * 100, 2)}% of the average)"
            )
        elif credit_flag == "degraded":
            degraded_reasons.append(
                f"Low production ({floor_places(credit_ratio * 100, 2)}% of credits average)"
            )

        # APY sub-score
        apy_fraction = ONE
        if telemetry.apy is not None and population.mean_apy:
            apy_ratio = telemetry.apy / population.mean_apy
            apy_fraction, apy_flag = self._ratio_fraction(
                apy_ratio,
                cfg.apy_emergency_ratio,
                cfg.apy_degraded_ratio,
            )
            if apy_flag == "emergency":
                emergency_reasons.append(
                    f"APY too low compared to the average "
                    f"({floor_places(apy_ratio * 100, 2)}% of the average)"
                )
            elif apy_flag == "degraded":
                degraded_reasons.append(
                    f"Low APY ({floor_places(apy_ratio * 100, 2)}% of APY average)"
                )

        # History rule, never applied to undefined baselines
        if (
            history.is_defined
            and history.average_position is not None
            and history.average_position < cfg.min_history_average_position
        ):
            degraded_reasons.append(f"Low average position {history.average_position}%")

        return NormalizedMetrics(
            vote_address=telemetry.vote_address,
            credit_fraction=credit_fraction,
            apy_fraction=apy_fraction,
            average_position=average_position,
            emergency=bool(emergency_reasons),
            emergency_reason=emergency_reasons[0] if emergency_reasons else None,
            degraded=bool(degraded_reasons),
            degraded_reason=degraded_reasons[0] if degraded_reasons else None,
        )

    # --------------------------------------------------------
    # RULES
    # --------------------------------------------------------

    def _absolute_health(
        self,
        telemetry: ValidatorTelemetry,
        population: PopulationSnapshot,
    ) -> Optional[str]:
        """Return the emergency reason of the first failing absolute rule."""
        if telemetry.under_nakamoto:
            return "Validator is part of the superminority"
        if telemetry.commission > self._config.healthy_max_commission:
            return (
                f"Commission ({telemetry.commission}%) is above "
                f"{self._config.healthy_max_commission}%"
            )
        if telemetry.delinquent:
            return "DELINQUENT"
        if telemetry.credits_observed == 0:
            return "Validator is not producing credits"
        if not population.release_rule_suspended and version_below(
            telemetry.version, population.min_release_version
        ):
            return (
                f"Node version {telemetry.version} is below the required "
                f"{population.min_release_version}"
            )
        return None

    def _ratio_fraction(
        self,
        ratio: Decimal,
        emergency_ratio: Decimal,
        degraded_ratio: Decimal,
    ) -> Tuple[Decimal, Optional[str]]:
        """
        Map a ratio against the population mean to a fraction.

        Returns:
            (fraction, flag) where flag is "emergency", "degraded" or None
        """
        if ratio < emergency_ratio:
            return ZERO, "emergency"
        fraction = floor_places(clamp(ratio))
        if ratio < degraded_ratio:
            return min(fraction, self._config.degraded_fraction_cap), "degraded"
        return fraction, None
