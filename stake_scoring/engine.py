"""
Stake Scoring Engine - Main Orchestrator.

============================================================
PURPOSE
============================================================
The StakeScoringEngine runs one scoring and allocation pass
for one epoch.

It orchestrates:
1. Record validation (malformed validators excluded)
2. Population reduction (sequential)
3. Normalization + preliminary score (fan-out)
4. Implied-stake denominator (reduction)
5. Anomaly detection + composite score (fan-out)
6. Overstake adjustment (fan-out)
7. Vote gauges (optional)
8. Collateral reserve + allocation capping (sequential)
9. Result packaging + final score check

============================================================
DESIGN PRINCIPLES
============================================================
- Orchestration only, delegates to the components
- Population aggregates are a frozen snapshot passed in
- Per-validator work depends only on its own record plus
  the snapshot, so it runs on a worker pool
- Deterministic: results merged in input order, Decimal math

============================================================
USAGE
============================================================
    from stake_scoring import StakeScoringEngine

    engine = StakeScoringEngine()
    result = engine.score_epoch(
        epoch=512,
        validators=telemetry,
        base_scores={"Vote111...": 300},
        history=history,
    )

    for record in result.records:
        print(record.rank, record.vote_address, record.pct)

============================================================
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .anomaly import AnomalyDetector
from .arithmetic import ONE, ZERO, floor_places
from .capping import AllocationCapper
from .composite import CompositeScorer
from .config import StakeScoringConfig
from .directed import SELF_STAKE_OVERRIDE, DirectedStakeDistributor
from .normalizer import MetricNormalizer
from .overstake import OverstakeAdjuster
from .population import PopulationAggregator
from .types import (
    Allocation,
    AllocationCandidate,
    AnomalyDecision,
    CollateralShare,
    DegenerateAggregateError,
    EpochScoringResult,
    ExcludedValidator,
    FinalScoreCheckError,
    HistoryAverages,
    MalformedRecordError,
    NormalizedMetrics,
    OverstakeAdjustment,
    PopulationSnapshot,
    RemoveLevel,
    StakeScoringError,
    ValidatorEpochRecord,
    ValidatorTelemetry,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class StakeScoringEngine:
    """
    Main stake scoring and allocation engine.

    ============================================================
    ERROR HANDLING
    ============================================================
    - MalformedRecordError: validator excluded, pass continues
    - DegenerateAggregateError, PopulationHealthError,
      CapConvergenceError, FinalScoreCheckError: re-raised,
      pass aborts
    - anything else: wrapped in StakeScoringError

    ============================================================
    """

    def __init__(self, config: Optional[StakeScoringConfig] = None):
        """
        Initialize the Stake Scoring Engine.

        Args:
            config: Engine and component configuration.
                    Uses defaults if not provided.
        """
        self.config = config or StakeScoringConfig()

        self._population = PopulationAggregator(self.config.population)
        self._normalizer = MetricNormalizer(self.config.normalizer)
        self._detector = AnomalyDetector(self.config.anomaly)
        self._scorer = CompositeScorer(self.config.composite)
        self._adjuster = OverstakeAdjuster(self.config.overstake)
        self._capper = AllocationCapper(self.config.capping)
        self._directed = DirectedStakeDistributor(self.config.directed)

    def score_epoch(
        self,
        epoch: int,
        validators: Sequence[ValidatorTelemetry],
        base_scores: Mapping[str, int],
        history: Optional[Mapping[str, HistoryAverages]] = None,
        pool_stake: Optional[Decimal] = None,
        votes: Optional[Mapping[str, int]] = None,
        collateral: Optional[Iterable[CollateralShare]] = None,
    ) -> EpochScoringResult:
        """
        Run the scoring pass for one epoch.

        Args:
            epoch: Epoch being scored
            validators: Chain feed telemetry, one per validator
            base_scores: External feed, vote_address -> base score
            history: vote_address -> HistoryAverages (missing = undefined)
            pool_stake: Stake currently held by the pool, if known
            votes: Gauge votes, vote_address -> votes
            collateral: Collateral-backed self stake deposits

        Returns:
            EpochScoringResult with records sorted by rank

        Raises:
            StakeScoringError: On any fatal failure
        """
        history = history or {}
        try:
            # --------------------------------------------------
            # Step 1: Validate records
            # --------------------------------------------------
            valid, excluded = self._validate(epoch, validators)

            # --------------------------------------------------
            # Step 2: Population reduction
            # --------------------------------------------------
            population = self._population.compute(epoch, valid, base_scores, pool_stake)

            def history_for(v: ValidatorTelemetry) -> HistoryAverages:
                return history.get(v.vote_address) or HistoryAverages.undefined(v.vote_address)

            # --------------------------------------------------
            # Step 3: Normalize + preliminary score
            # --------------------------------------------------
            def normalize(v: ValidatorTelemetry) -> Tuple[NormalizedMetrics, int]:
                metrics = self._normalizer.normalize(v, population, history_for(v))
                preliminary = self._scorer.preliminary_score(
                    v, base_scores.get(v.vote_address, 0), metrics, population, history_for(v)
                )
                return metrics, preliminary

            normalized = self._fan_out(normalize, valid)

            # --------------------------------------------------
            # Step 4: Implied-stake denominator
            # --------------------------------------------------
            total_preliminary = sum(p for _, p in normalized)
            if total_preliminary <= 0:
                raise DegenerateAggregateError(
                    "Total preliminary score is zero",
                    epoch=epoch,
                    context={"validators": len(valid)},
                )

            # --------------------------------------------------
            # Step 5: Anomaly detection + composite score
            # --------------------------------------------------
            def decide(item: Tuple[ValidatorTelemetry, Tuple[NormalizedMetrics, int]]) -> Tuple[AnomalyDecision, int]:
                v, (metrics, preliminary) = item
                decision = self._detector.detect(
                    v, metrics, preliminary, total_preliminary, population.total_pool_stake
                )
                score = self._scorer.score(
                    v,
                    base_scores.get(v.vote_address, 0),
                    metrics,
                    decision.remove_level,
                    population,
                    history_for(v),
                )
                return decision, score

            decided = self._fan_out(decide, list(zip(valid, normalized)))
            total_score = sum(score for _, score in decided)
            if total_score <= 0:
                logger.warning(f"Epoch {epoch}: every validator scored zero, nothing to allocate")

            # --------------------------------------------------
            # Step 6: Overstake adjustment
            # --------------------------------------------------
            def adjust(item: Tuple[ValidatorTelemetry, Tuple[AnomalyDecision, int]]) -> OverstakeAdjustment:
                v, (decision, score) = item
                return self._adjuster.adjust(
                    score,
                    v.marinade_staked,
                    total_score,
                    population.total_pool_stake,
                    exempt=decision.overstake_exempt,
                )

            adjusted = self._fan_out(adjust, list(zip(valid, decided)))

            # --------------------------------------------------
            # Step 7: Vote gauges
            # --------------------------------------------------
            remove_levels = {v.vote_address: d.remove_level for v, (d, _) in zip(valid, decided)}
            votes = votes or {}
            vote_scores = self._directed.vote_scores(
                sum(a.adjusted_score for a in adjusted),
                self._directed.effective_votes(votes, remove_levels),
            )

            def gauged(vote_address: str, score: int) -> int:
                if not vote_scores:
                    return score
                return self._directed.pool_share(score) + vote_scores[vote_address]

            # --------------------------------------------------
            # Step 8: Collateral reserve + capping (sequential)
            # --------------------------------------------------
            pool = population.total_pool_stake
            shares = self._directed.collateral_shares(collateral or (), set(remove_levels))
            reserved = self._directed.reserve(shares, pool)
            budget = ONE - reserved / pool if reserved > ZERO else ONE

            candidates = [
                AllocationCandidate(
                    vote_address=v.vote_address,
                    score=gauged(v.vote_address, score),
                    adjusted_score=gauged(v.vote_address, adjustment.adjusted_score),
                    remove_level=decision.remove_level,
                    max_pct=adjustment.max_pct,
                )
                for v, (decision, score), adjustment in zip(valid, decided, adjusted)
            ]
            allocations = {
                a.vote_address: a for a in self._capper.allocate(candidates, epoch, budget=budget)
            }
            collateral_stakes = self._directed.collateral_stakes(reserved, shares)

            # --------------------------------------------------
            # Step 9: Build output
            # --------------------------------------------------
            records = [
                self._build_record(
                    epoch,
                    v,
                    base_scores.get(v.vote_address, 0),
                    metrics,
                    decision,
                    candidate,
                    allocations[v.vote_address],
                    population,
                    votes.get(v.vote_address, 0),
                    vote_scores.get(v.vote_address, 0),
                    collateral_stakes.get(v.vote_address, ZERO),
                )
                for v, (metrics, _), (decision, _), candidate
                in zip(valid, normalized, decided, candidates)
            ]
            records.sort(key=lambda r: r.rank)
            self._check_final_scores(epoch, records)

            result = EpochScoringResult(
                epoch=epoch,
                records=records,
                population=population,
                excluded=excluded,
                notes=list(population.notes),
                engine_version=self.config.engine_version,
            )
            logger.info(f"Epoch {epoch} scored: {result.to_dict()}")
            return result

        except StakeScoringError:
            raise
        except Exception as e:
            raise StakeScoringError(f"Scoring failed: {str(e)}", epoch=epoch) from e

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _validate(
        self,
        epoch: int,
        validators: Sequence[ValidatorTelemetry],
    ) -> Tuple[List[ValidatorTelemetry], List[ExcludedValidator]]:
        """Split validators into valid records and reported exclusions."""
        valid: List[ValidatorTelemetry] = []
        excluded: List[ExcludedValidator] = []
        seen = set()

        for v in validators:
            try:
                v.validate()
                if v.vote_address in seen:
                    raise MalformedRecordError(
                        "duplicate vote_address in epoch",
                        vote_address=v.vote_address,
                        epoch=epoch,
                    )
            except MalformedRecordError as e:
                logger.warning(f"Excluding validator {v.vote_address or '<empty>'}: {e.message}")
                excluded.append(ExcludedValidator(v.vote_address, e.message))
                continue
            seen.add(v.vote_address)
            valid.append(v)

        if excluded:
            logger.warning(f"Epoch {epoch}: {len(excluded)} validators excluded as malformed")
        return valid, excluded

    def _fan_out(self, fn: Callable[[T], R], items: Sequence[T]) -> List[R]:
        """Apply fn to every item on the worker pool, preserving order."""
        if not items:
            return []
        workers = max(1, min(self.config.max_workers, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stake-scoring") as executor:
            return list(executor.map(fn, items))

    def _build_record(
        self,
        epoch: int,
        v: ValidatorTelemetry,
        base_score: int,
        metrics: NormalizedMetrics,
        decision: AnomalyDecision,
        candidate: AllocationCandidate,
        allocation: Allocation,
        population: PopulationSnapshot,
        votes: int,
        vote_score: int,
        collateral_stake: Decimal,
    ) -> ValidatorEpochRecord:
        pool = population.total_pool_stake
        pct, collateral_stake = self._directed.with_collateral(
            allocation.pct,
            collateral_stake,
            pool,
            self._capper.hard_cap,
            self.config.capping.pct_precision,
        )

        remove_level, reason = decision.remove_level, decision.reason
        if collateral_stake > ZERO and remove_level != RemoveLevel.NONE:
            logger.info(f"{v.vote_address}: {remove_level.label} lifted, {collateral_stake} SOL self stake")
            remove_level, reason = RemoveLevel.NONE, SELF_STAKE_OVERRIDE

        return ValidatorEpochRecord(
            epoch=epoch,
            vote_address=v.vote_address,
            identity_address=v.identity_address,
            name=v.name,
            keybase_id=v.keybase_id,
            credits_observed=v.credits_observed,
            average_position=metrics.average_position,
            commission=v.commission,
            max_commission=v.max_commission,
            delinquent=v.delinquent,
            version=v.version,
            apy=v.apy,
            data_center_asn=v.data_center_asn,
            data_center_location=v.data_center_location,
            stake_concentration=v.stake_concentration,
            base_score=base_score,
            active_stake=v.active_stake,
            marinade_staked=v.marinade_staked,
            should_have=floor_places(pct * pool),
            pct=pct,
            score=candidate.score,
            adjusted_score=candidate.adjusted_score,
            credit_fraction=metrics.credit_fraction,
            apy_fraction=metrics.apy_fraction,
            remove_level=remove_level,
            remove_level_reason=reason,
            votes=votes,
            vote_score=vote_score,
            collateral_stake=collateral_stake,
            rank=allocation.rank,
        )

    def _check_final_scores(self, epoch: int, records: Sequence[ValidatorEpochRecord]) -> None:
        """Refuse output with no positive score or too few scored validators."""
        total = sum(r.score for r in records)
        positive = sum(1 for r in records if r.score > 0)
        if total <= 0:
            raise FinalScoreCheckError(
                "Total score is zero, nothing to allocate",
                epoch=epoch,
                context={"validators": len(records)},
            )
        if positive < self.config.min_positive_scores:
            raise FinalScoreCheckError(
                f"Only {positive} validators have a positive score, "
                f"at least {self.config.min_positive_scores} required",
                epoch=epoch,
                context={"positive": positive, "validators": len(records)},
            )


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================


def score_epoch(
    epoch: int,
    validators: Sequence[ValidatorTelemetry],
    base_scores: Mapping[str, int],
    history: Optional[Mapping[str, HistoryAverages]] = None,
    pool_stake: Optional[Decimal] = None,
    config: Optional[StakeScoringConfig] = None,
    votes: Optional[Mapping[str, int]] = None,
    collateral: Optional[Iterable[CollateralShare]] = None,
) -> EpochScoringResult:
    """
    Convenience function to score an epoch in one call.

    Creates a temporary engine and runs the pass.
    """
    engine = StakeScoringEngine(config=config)
    return engine.score_epoch(epoch, validators, base_scores, history, pool_stake, votes, collateral)


def format_epoch_summary(result: EpochScoringResult, top: int = 10) -> str:
    """
    Format a human-readable epoch summary.

    Useful for logging and operator review of exclusions.
    """
    lines = [
        "=" * 60,
        f"STAKE SCORING SUMMARY - EPOCH {result.epoch}",
        "=" * 60,
        f"Validators scored:  {len(result.records)}",
        f"Excluded:           {len(result.excluded)}",
        f"Emergency unstake:  {result.emergency_count}",
        f"Partial unstake:    {result.partial_count}",
        f"Total score:        {result.total_score}",
        f"Total pct:          {result.total_pct}",
        "",
        f"Top {top}:",
    ]
    for record in result.records[:top]:
        lines.append(
            f"  #{record.rank:<4} {record.vote_address:<44} score={record.score:<8} pct={record.pct}"
        )
    if result.excluded:
        lines.append("")
        lines.append("Excluded validators:")
        for item in result.excluded:
            lines.append(f"  {item.vote_address or '<empty>'}: {item.reason}")
    if result.notes:
        lines.append("")
        lines.append("Notes:")
        for note in result.notes:
            lines.append(f"  - {note}")
    lines.append("=" * 60)
    return "\n".join(lines)


def removal_summary(result: EpochScoringResult) -> Dict[str, List[str]]:
    """Group vote addresses by remove level label."""
    summary: Dict[str, List[str]] = {level.label: [] for level in RemoveLevel}
    for record in result.records:
        summary[record.remove_level.label].append(record.vote_address)
    return summary
