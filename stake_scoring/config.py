"""
Stake Scoring Engine - Configuration.

============================================================
PURPOSE
============================================================
Defines all configuration dataclasses and threshold values
for the Stake Scoring Engine.

All ratios and percentages are Decimal so that the same
configuration always produces the same integer scores.

============================================================
DESIGN PRINCIPLES
============================================================
- One frozen config per component
- Master config composes the component configs
- Every threshold documented where it is declared
- Environment overrides via StakeScoringConfig.from_env()

============================================================
THRESHOLD PHILOSOPHY
============================================================
Two ratio thresholds per performance metric:
- EMERGENCY ratio: below it, stake is removed this epoch
- DEGRADED ratio: below it, score is halved

At or above DEGRADED = healthy, linear sub-score up to 1.0

============================================================
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv


load_dotenv()


# ============================================================
# BLACKLIST
# ============================================================

# vote_address -> reason. An empty reason means the generic
# "blacklisted" reason is reported.
DEFAULT_BLACKLIST: Dict[str, str] = {
    # Vote lagging to always land on the consensus fork
    "rep1xGEJzUiQCQgnYjNn76mFRpiPaZaKRwc13wm8mNr": "",
    # Second validator of an already staked entity
    "GfZybqTfVXiiF7yjwnqfwWKm2iwP96sSbHsGdSpwGucH": "",
    # Commission changes on epoch boundaries
    "AxP8nEVvay26BvFqSVWFC73ciQ4wVtmhNjAkUz5szjCg": "",
    "DeFiDeAgFR29GgKdyyVZdvsELbDR8k4WqprWGtgtbi1o": "",
    "42GfJFeWySe1zt7xYxXNFK1E2V7xXnf1Jpc6B4g63QTm": "",
    "DpvUS8Losp2UGGaSGyupyKwQqHkmruzfwrZg2VYK7Zg7": "",
    "GUTjLTQTCmeBzTrBgCsWSM7G2JrsLvwXbXdafWvicqbr": "",
    "G2v6wsh4xVHj1xMLtLFzX2hP6T1TTxti5ZxK3iv8TJQZ": "",
    # Vote lagging
    "8Pep3GmYiijRALqrMKpez92cxvF4YPTzoZg83uXh14pW": "",
    # Down for ~2 weeks
    "GBU4potq4TjsmXCUSJXbXwnkYZP8725ZEaeDrLrdQhbA": "",
    # Offline for more than 36 hours in two cluster halts
    "5wNag8umJhaaj9gGdqmBz7Xwwy1NL5yQ1QbvPdQrDd3h": "",
    "7oX5QSP9yBjT1F1sRSDCX91ZxibETqemDM4WLDju5rTM": "",
    "Cva4NEnBRYfFv8i3RtcMTbEYgyVNmewk2aAgh4fco2mP": "",
    # Exiting mainnet
    "2vxNDV7aAbrb4Whnxs9LiuxCsm9oubX3c1hozXPsoD97": "",
    # Stake from the pool flips it in and out of the superminority
    "CogentC52e7kktFfWHwsqSmr8LiS1yAtfqhHcftCPcBJ": "close to the superminority threshold",
}


# ============================================================
# POPULATION CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class PopulationConfig:
    """
    Configuration for population aggregates and health gates.

    ============================================================
    HEALTH GATES
    ============================================================
    Largest data center share above max_largest_dc_stake_percent
    aborts the pass. The three percentage gates below add a
    note to the snapshot:
    - poor voters (credits under the grace share of average)
    - old releases (version below min_release_version), which
      also skips the release rule for the epoch
    - poor block producers (skip rate above cluster average
      plus quality_block_producer_percentage)

    ============================================================
    """

    min_release_version: Optional[str] = None
    max_old_release_version_percentage: int = 10
    max_largest_dc_stake_percent: Decimal = Decimal("35")
    max_poor_voter_percentage: int = 20
    min_epoch_credit_percentage_of_average: int = 50
    max_poor_block_producer_percentage: int = 20
    quality_block_producer_percentage: Decimal = Decimal("15")

    # APY samples at or below this are ignored for the average
    min_apy_for_average: Decimal = Decimal("4.0")

    # Pool stake headroom added to the held total (imagine +100K inflow)
    stake_headroom: Decimal = Decimal("100000")

    # Validators past this base-score rank keep score only if already staked
    stake_top_n_validators: Optional[int] = 430

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_release_version": self.min_release_version,
            "max_old_release_version_percentage": self.max_old_release_version_percentage,
            "max_largest_dc_stake_percent": str(self.max_largest_dc_stake_percent),
            "max_poor_voter_percentage": self.max_poor_voter_percentage,
            "min_epoch_credit_percentage_of_average": self.min_epoch_credit_percentage_of_average,
            "max_poor_block_producer_percentage": self.max_poor_block_producer_percentage,
            "quality_block_producer_percentage": str(self.quality_block_producer_percentage),
            "min_apy_for_average": str(self.min_apy_for_average),
            "stake_headroom": str(self.stake_headroom),
            "stake_top_n_validators": self.stake_top_n_validators,
        }


# ============================================================
# NORMALIZER CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class NormalizerConfig:
    """
    Configuration for MetricNormalizer.

    ============================================================
    THRESHOLD RATIONALE
    ============================================================
    Credits ratio (credits / population mean):
    - EMERGENCY below 0.80: not voting reliably
    - DEGRADED below 0.90: sub-score capped at 0.5

    APY ratio uses the same shape against the mean APY.

    Absolute rules (always emergency):
    - commission above healthy_max_commission (20%)
    - superminority membership
    - delinquent, zero credits, release below minimum

    ============================================================
    """

    credit_emergency_ratio: Decimal = Decimal("0.80")
    credit_degraded_ratio: Decimal = Decimal("0.90")
    apy_emergency_ratio: Decimal = Decimal("0.80")
    apy_degraded_ratio: Decimal = Decimal("0.90")

    # Sub-score ceiling while degraded
    degraded_fraction_cap: Decimal = Decimal("0.5")

    healthy_max_commission: int = 20

    # History average position (50 = average) below this is degraded.
    # Kept under CompositeConfig.min_avg_position: between the two a
    # validator scores 0 without an unstake flag.
    min_history_average_position: Decimal = Decimal("35")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_emergency_ratio": str(self.credit_emergency_ratio),
            "credit_degraded_ratio": str(self.credit_degraded_ratio),
            "apy_emergency_ratio": str(self.apy_emergency_ratio),
            "apy_degraded_ratio": str(self.apy_degraded_ratio),
            "degraded_fraction_cap": str(self.degraded_fraction_cap),
            "healthy_max_commission": self.healthy_max_commission,
            "min_history_average_position": str(self.min_history_average_position),
        }


# ============================================================
# ANOMALY CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class AnomalyConfig:
    """
    Configuration for AnomalyDetector.

    Overstake rules are skipped for validators where pool
    stake exceeds concentration_exempt_pct of their total
    stake: they are too entangled to safely reduce.
    """

    zero_score_overstake_pool_pct: Decimal = Decimal("0.45")
    overstake_multiple: Decimal = Decimal("2.5")
    concentration_exempt_pct: Decimal = Decimal("20")

    blacklist: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_BLACKLIST))

    def is_blacklisted(self, vote_address: str) -> bool:
        return vote_address in self.blacklist

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zero_score_overstake_pool_pct": str(self.zero_score_overstake_pool_pct),
            "overstake_multiple": str(self.overstake_multiple),
            "concentration_exempt_pct": str(self.concentration_exempt_pct),
            "blacklist_size": len(self.blacklist),
        }


# ============================================================
# COMPOSITE CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class CompositeConfig:
    """
    Configuration for CompositeScorer.

    Eligibility (score forced to 0, not an unstake flag):
    - commission above score_max_commission
    - active stake below score_min_stake
    - history average position below min_avg_position

    Eligibility only zeroes the score. The unstake flag for a low
    position uses NormalizerConfig.min_history_average_position,
    which is lower. A validator between the two gets a zero
    target allocation without an unstake flag.
    """

    score_max_commission: int = 8
    score_min_stake: Decimal = Decimal("100")
    min_avg_position: Decimal = Decimal("40")

    # Points removed per unit (fraction) of data-center concentration
    concentration_point_discount: int = 0

    partial_unstake_factor: Decimal = Decimal("0.5")

    # Multiply base score for low-commission validators (<=6%: x5 ... 9%: x2)
    commission_bonus_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score_max_commission": self.score_max_commission,
            "score_min_stake": str(self.score_min_stake),
            "min_avg_position": str(self.min_avg_position),
            "concentration_point_discount": self.concentration_point_discount,
            "partial_unstake_factor": str(self.partial_unstake_factor),
            "commission_bonus_enabled": self.commission_bonus_enabled,
        }


# ============================================================
# OVERSTAKE CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class OverstakeConfig:
    """
    Configuration for OverstakeAdjuster.

    Severely under-staked: should_have > 2x held, score x0.8.
    Mildly under-staked: growth capped at 0.1% of pool per epoch.
    """

    severe_understake_multiple: Decimal = Decimal("2")
    severe_understake_score_factor: Decimal = Decimal("0.8")
    max_increase_pool_pct: Decimal = Decimal("0.1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severe_understake_multiple": str(self.severe_understake_multiple),
            "severe_understake_score_factor": str(self.severe_understake_score_factor),
            "max_increase_pool_pct": str(self.max_increase_pool_pct),
        }


# ============================================================
# CAPPING CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class CappingConfig:
    """Configuration for AllocationCapper."""

    # Hard cap, percent of total pool stake
    pct_cap: Decimal = Decimal("1.5")

    # Decimal places kept in pct (rounded down)
    pct_precision: int = 6

    # Water-filling iteration bound, None means candidates + 1
    max_iterations: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pct_cap": str(self.pct_cap),
            "pct_precision": self.pct_precision,
            "max_iterations": self.max_iterations,
        }


# ============================================================
# DIRECTED STAKE CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class DirectedStakeConfig:
    """
    Configuration for DirectedStakeDistributor.

    ============================================================
    VOTE GAUGES
    ============================================================
    vote_gauges_stake_pct percent of the total score is taken
    from the pool's own scoring and handed out in proportion to
    gauge votes. 0 disables gauges.

    ============================================================
    COLLATERAL
    ============================================================
    Collateral-backed self stake is set aside before capping,
    at most stake_from_collateral_max_pct percent of the pool.
    A validator receiving it is no longer unstaked.

    ============================================================
    """

    vote_gauges_stake_pct: int = 0
    stake_from_collateral_max_pct: Decimal = Decimal("30")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vote_gauges_stake_pct": self.vote_gauges_stake_pct,
            "stake_from_collateral_max_pct": str(self.stake_from_collateral_max_pct),
        }


# ============================================================
# HISTORY CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class HistoryConfig:
    """Configuration for HistoryAggregator."""

    history_epochs: int = 10

    def to_dict(self) -> Dict[str, Any]:
        return {"history_epochs": self.history_epochs}


# ============================================================
# MASTER CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class StakeScoringConfig:
    """
    Master configuration for the Stake Scoring Engine.

    Aggregates all component configs and engine settings.
    """

    population: PopulationConfig = field(default_factory=PopulationConfig)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    composite: CompositeConfig = field(default_factory=CompositeConfig)
    overstake: OverstakeConfig = field(default_factory=OverstakeConfig)
    capping: CappingConfig = field(default_factory=CappingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    directed: DirectedStakeConfig = field(default_factory=DirectedStakeConfig)

    # Engine settings
    engine_version: str = "1.0.0"
    max_workers: int = 8

    # Final check: fewer validators with a positive score aborts the pass
    min_positive_scores: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "population": self.population.to_dict(),
            "normalizer": self.normalizer.to_dict(),
            "anomaly": self.anomaly.to_dict(),
            "composite": self.composite.to_dict(),
            "overstake": self.overstake.to_dict(),
            "capping": self.capping.to_dict(),
            "history": self.history.to_dict(),
            "directed": self.directed.to_dict(),
            "engine_version": self.engine_version,
            "max_workers": self.max_workers,
            "min_positive_scores": self.min_positive_scores,
        }

    @classmethod
    def from_env(cls) -> "StakeScoringConfig":
        """Load configuration from environment variables."""
        defaults = cls()
        extra_blacklist = {
            address.strip(): ""
            for address in os.getenv("STAKE_BLACKLIST", "").split(",")
            if address.strip()
        }
        top_n = os.getenv("STAKE_TOP_N_VALIDATORS", str(defaults.population.stake_top_n_validators))

        return cls(
            population=replace(
                defaults.population,
                min_release_version=os.getenv("MIN_RELEASE_VERSION") or None,
                max_old_release_version_percentage=int(os.getenv("MAX_OLD_RELEASE_VERSION_PERCENTAGE", "10")),
                max_largest_dc_stake_percent=Decimal(os.getenv("MAX_LARGEST_DC_STAKE_PERCENT", "35")),
                max_poor_voter_percentage=int(os.getenv("MAX_POOR_VOTER_PERCENTAGE", "20")),
                max_poor_block_producer_percentage=int(os.getenv("MAX_POOR_BLOCK_PRODUCER_PERCENTAGE", "20")),
                stake_headroom=Decimal(os.getenv("STAKE_HEADROOM", "100000")),
                stake_top_n_validators=None if top_n.lower() in ("", "none", "0") else int(top_n),
            ),
            anomaly=replace(
                defaults.anomaly,
                blacklist={**DEFAULT_BLACKLIST, **extra_blacklist},
            ),
            composite=replace(
                defaults.composite,
                score_max_commission=int(os.getenv("SCORE_MAX_COMMISSION", "8")),
                score_min_stake=Decimal(os.getenv("SCORE_MIN_STAKE", "100")),
                min_avg_position=Decimal(os.getenv("MIN_AVG_POSITION", "40")),
                concentration_point_discount=int(os.getenv("CONCENTRATION_POINT_DISCOUNT", "0")),
                commission_bonus_enabled=os.getenv("COMMISSION_BONUS_ENABLED", "false").lower() == "true",
            ),
            capping=replace(
                defaults.capping,
                pct_cap=Decimal(os.getenv("PCT_CAP", "1.5")),
            ),
            history=replace(
                defaults.history,
                history_epochs=int(os.getenv("HISTORY_EPOCHS", "10")),
            ),
            directed=replace(
                defaults.directed,
                vote_gauges_stake_pct=int(os.getenv("VOTE_GAUGES_STAKE_PCT", "0")),
                stake_from_collateral_max_pct=Decimal(os.getenv("STAKE_FROM_COLLATERAL_MAX_PCT", "30")),
            ),
            max_workers=int(os.getenv("SCORING_MAX_WORKERS", "8")),
            min_positive_scores=int(os.getenv("MIN_POSITIVE_SCORES", "0")),
        )


# ============================================================
# DEFAULT CONFIGURATION
# ============================================================


def get_default_config() -> StakeScoringConfig:
    """
    Return the default Stake Scoring Engine configuration.

    These are the thresholds the program runs with in production.
    """
    return StakeScoringConfig()


def get_conservative_config() -> StakeScoringConfig:
    """
    Return a more conservative configuration.

    Tighter cap, stricter degradation ratio, slower growth.
    """
    return StakeScoringConfig(
        normalizer=NormalizerConfig(
            credit_degraded_ratio=Decimal("0.95"),
            apy_degraded_ratio=Decimal("0.95"),
        ),
        overstake=OverstakeConfig(
            max_increase_pool_pct=Decimal("0.05"),
        ),
        capping=CappingConfig(
            pct_cap=Decimal("1.0"),
        ),
    )
