"""
Stake Scoring Engine - Package.

============================================================
PURPOSE
============================================================
The Stake Scoring Engine decides, once per epoch, how a
delegation pool's stake is spread over a validator set.

For every validator it produces:
- A composite score
- A target fraction of the pool (pct) and should_have stake
- A remove level: None, PartialUnstake or EmergencyUnstake

============================================================
WHAT IT IS
============================================================
- Deterministic: same inputs, same outputs
- Decimal arithmetic with explicit floor rounding
- Population-relative: every ratio is taken against the
  epoch's population means
- History-aware: rolling averages over previous epochs

============================================================
WHAT IT IS NOT
============================================================
- NOT a stake mover (no transactions are signed)
- NOT a telemetry collector (see data_sources)
- NOT a base score model (base scores are an input)

============================================================
PIPELINE
============================================================
1. PopulationAggregator: epoch means, health gates
2. MetricNormalizer: per-validator fractions and flags
3. AnomalyDetector: remove level and reason
4. CompositeScorer: eligibility and integer score
5. OverstakeAdjuster: understake boost, growth ceiling
6. DirectedStakeDistributor: vote gauges, collateral reserve
7. AllocationCapper: water-filling under the 1.5% cap

Steps 2-5 are pure per validator and fan out over a
thread pool. Steps 1, 6 and 7 are sequential reductions.

============================================================
USAGE
============================================================
    from stake_scoring import StakeScoringEngine, get_default_config

    engine = StakeScoringEngine(get_default_config())
    result = engine.score_epoch(
        epoch=512,
        validators=telemetry,
        base_scores={"Vote111...": 1200},
        history=history_averages,
    )

    for record in result.records:
        print(record.rank, record.vote_address, record.pct)

============================================================
"""

from .types import (
    # Enums
    RemoveLevel,

    # Inputs
    ValidatorTelemetry,
    HistoryAverages,
    CollateralShare,

    # Intermediate
    PopulationSnapshot,
    NormalizedMetrics,
    AnomalyDecision,
    OverstakeAdjustment,
    AllocationCandidate,
    Allocation,

    # Outputs
    ValidatorEpochRecord,
    ExcludedValidator,
    EpochScoringResult,

    # Errors
    StakeScoringError,
    MalformedRecordError,
    DegenerateAggregateError,
    PopulationHealthError,
    CapConvergenceError,
    FinalScoreCheckError,
)

from .config import (
    DEFAULT_BLACKLIST,
    PopulationConfig,
    NormalizerConfig,
    AnomalyConfig,
    CompositeConfig,
    OverstakeConfig,
    CappingConfig,
    HistoryConfig,
    DirectedStakeConfig,
    StakeScoringConfig,
    get_default_config,
    get_conservative_config,
)

from .population import PopulationAggregator
from .history import HistoryAggregator
from .normalizer import MetricNormalizer
from .anomaly import AnomalyDetector
from .composite import CompositeScorer, commission_bonus_multiplier
from .overstake import OverstakeAdjuster
from .capping import AllocationCapper, weighted_distribution
from .directed import DirectedStakeDistributor, SELF_STAKE_OVERRIDE

from .engine import (
    StakeScoringEngine,
    score_epoch,
    format_epoch_summary,
    removal_summary,
)


__all__ = [
    # Enums
    "RemoveLevel",
    # Types
    "ValidatorTelemetry",
    "HistoryAverages",
    "CollateralShare",
    "PopulationSnapshot",
    "NormalizedMetrics",
    "AnomalyDecision",
    "OverstakeAdjustment",
    "AllocationCandidate",
    "Allocation",
    "ValidatorEpochRecord",
    "ExcludedValidator",
    "EpochScoringResult",
    # Errors
    "StakeScoringError",
    "MalformedRecordError",
    "DegenerateAggregateError",
    "PopulationHealthError",
    "CapConvergenceError",
    "FinalScoreCheckError",
    # Config
    "DEFAULT_BLACKLIST",
    "PopulationConfig",
    "NormalizerConfig",
    "AnomalyConfig",
    "CompositeConfig",
    "OverstakeConfig",
    "CappingConfig",
    "HistoryConfig",
    "DirectedStakeConfig",
    "StakeScoringConfig",
    "get_default_config",
    "get_conservative_config",
    # Components
    "PopulationAggregator",
    "HistoryAggregator",
    "MetricNormalizer",
    "AnomalyDetector",
    "CompositeScorer",
    "commission_bonus_multiplier",
    "OverstakeAdjuster",
    "AllocationCapper",
    "weighted_distribution",
    "DirectedStakeDistributor",
    "SELF_STAKE_OVERRIDE",
    # Engine
    "StakeScoringEngine",
    "score_epoch",
    "format_epoch_summary",
    "removal_summary",
]
