"""
Stake Scoring Engine - Population Aggregates.

============================================================
PURPOSE
============================================================
The sequential reduction step that runs before any
per-validator work. Produces a frozen PopulationSnapshot with:

- mean credits (denominator of the credits ratio)
- mean APY over samples above the APY floor
- total pool stake (held stake plus headroom)
- largest data-center stake share
- population health gates and epoch notes
- the set of validators below the top-N base-score line

============================================================
FAILURE MODES
============================================================
- No validators / zero mean credits    -> DegenerateAggregateError
- APY reported but no valid sample     -> DegenerateAggregateError
- Non-positive pool stake              -> DegenerateAggregateError
- Largest data center above the limit  -> PopulationHealthError

============================================================
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from .arithmetic import HUNDRED, ZERO, floor_places, version_below
from .config import PopulationConfig
from .types import (
    DegenerateAggregateError,
    PopulationHealthError,
    PopulationSnapshot,
    ValidatorTelemetry,
)


logger = logging.getLogger(__name__)


GATES_NOTE = "Population health gate tripped this epoch"


class PopulationAggregator:
    """Computes the PopulationSnapshot for one epoch."""

    def __init__(self, config: Optional[PopulationConfig] = None) -> None:
        self._config = config or PopulationConfig()

    def compute(
        self,
        epoch: int,
        validators: Sequence[ValidatorTelemetry],
        base_scores: Mapping[str, int],
        pool_stake: Optional[Decimal] = None,
    ) -> PopulationSnapshot:
        """
        Reduce the validator population to read-only aggregates.

        Args:
            epoch: Epoch being scored
            validators: Validated telemetry records
            base_scores: vote_address -> base score (absent = 0)
            pool_stake: Stake currently held by the pool, if known;
                defaults to the sum of held stake per validator

        Returns:
            PopulationSnapshot
        """
        cfg = self._config
        count = len(validators)
        if count == 0:
            raise DegenerateAggregateError("No validators to score", epoch=epoch)

        notes: List[str] = []

        # Step 1: Mean credits
        total_credits = sum(v.credits_observed for v in validators)
        if total_credits <= 0:
            raise DegenerateAggregateError(
                "Population mean credits is zero",
                epoch=epoch,
                context={"validators": count},
            )
        mean_credits = floor_places(Decimal(total_credits) / Decimal(count))

        # Step 2: Mean APY
        mean_apy = self._mean_apy(epoch, validators)

        # Step 3: Pool stake
        held = pool_stake if pool_stake is not None else sum(
            (v.marinade_staked for v in validators), ZERO
        )
        total_pool_stake = held + cfg.stake_headroom
        if total_pool_stake <= 0:
            raise DegenerateAggregateError(
                f"Total pool stake is not positive ({total_pool_stake})",
                epoch=epoch,
            )

        # Step 4: Infrastructure concentration (fatal gate)
        largest_dc_pct = self._largest_data_center_pct(validators)
        logger.info(f"Largest data center stake concentration: ~{largest_dc_pct}%")
        if largest_dc_pct > cfg.max_largest_dc_stake_percent:
            raise PopulationHealthError(
                "Largest data center stake concentration is too high",
                epoch=epoch,
                context={
                    "largest_data_center_stake_pct": str(largest_dc_pct),
                    "limit": str(cfg.max_largest_dc_stake_percent),
                },
            )

        # Step 5: Population gates
        tripped = False
        release_suspended = False

        min_credits = floor_places(
            mean_credits * (HUNDRED - cfg.min_epoch_credit_percentage_of_average) / HUNDRED
        )
        notes.append(
            f"Minimum vote credits required for epoch {epoch}: {min_credits} "
            f"(cluster average: {mean_credits}, grace: {cfg.min_epoch_credit_percentage_of_average}%)"
        )
        poor_voters = sum(1 for v in validators if v.credits_observed < min_credits)
        poor_voter_pct = floor_places(Decimal(poor_voters) * HUNDRED / Decimal(count), 2)
        if Decimal(poor_voters) > Decimal(count) * cfg.max_poor_voter_percentage / HUNDRED:
            tripped = True
            notes.append(
                f"Too many validators classified as poor voters for epoch {epoch}: "
                f"{poor_voter_pct}% (limit: {cfg.max_poor_voter_percentage}%)"
            )

        if cfg.min_release_version:
            notes.append(f"Release {cfg.min_release_version} or greater required")
            old_releases = sum(
                1 for v in validators if version_below(v.version, cfg.min_release_version)
            )
            if Decimal(old_releases) > Decimal(count) * cfg.max_old_release_version_percentage / HUNDRED:
                tripped = True
                release_suspended = True
                notes.append(
                    f"Over {cfg.max_old_release_version_percentage}% of validators "
                    f"classified as running an older release, release penalties skipped"
                )

        if self._too_many_poor_block_producers(validators):
            tripped = True
            notes.append(
                f"Over {cfg.max_poor_block_producer_percentage}% of validators "
                f"classified as poor block producers in epoch {epoch}"
            )

        if tripped:
            notes.append(GATES_NOTE)
            logger.warning(f"Epoch {epoch}: {GATES_NOTE}")

        # Step 6: Top-N line
        below_line = self._below_line(validators, base_scores)
        if below_line:
            notes.append(
                f"{len(below_line)} unstaked validators below the top "
                f"{cfg.stake_top_n_validators} line"
            )

        snapshot = PopulationSnapshot(
            epoch=epoch,
            validator_count=count,
            mean_credits=mean_credits,
            mean_apy=mean_apy,
            total_pool_stake=total_pool_stake,
            min_release_version=cfg.min_release_version,
            largest_data_center_stake_pct=largest_dc_pct,
            population_gates_tripped=tripped,
            release_rule_suspended=release_suspended,
            below_line=frozenset(below_line),
            notes=tuple(notes),
        )
        logger.info(f"Population snapshot: {snapshot.to_dict()}")
        return snapshot

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _mean_apy(
        self,
        epoch: int,
        validators: Sequence[ValidatorTelemetry],
    ) -> Optional[Decimal]:
        reported = [v.apy for v in validators if v.apy is not None]
        if not reported:
            return None

        samples = [apy for apy in reported if apy > self._config.min_apy_for_average]
        if not samples:
            raise DegenerateAggregateError(
                f"No APY sample above {self._config.min_apy_for_average}%",
                epoch=epoch,
                context={"reported": len(reported)},
            )
        return floor_places(sum(samples, ZERO) / Decimal(len(samples)))

    @staticmethod
    def _largest_data_center_pct(validators: Sequence[ValidatorTelemetry]) -> Decimal:
        # Validators with no data-center tag are not grouped together
        stake_by_dc: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        total_stake = ZERO
        for v in validators:
            total_stake += v.active_stake
            if v.data_center_asn or v.data_center_location:
                stake_by_dc[v.data_center_id] += v.active_stake

        if total_stake <= 0 or not stake_by_dc:
            return ZERO
        return floor_places(max(stake_by_dc.values()) * HUNDRED / total_stake, 2)

    def _too_many_poor_block_producers(self, validators: Sequence[ValidatorTelemetry]) -> bool:
        rates = [v.skip_rate for v in validators if v.skip_rate is not None]
        if not rates:
            return False

        cluster_average = sum(rates, ZERO) / Decimal(len(rates))
        limit = cluster_average + self._config.quality_block_producer_percentage
        poor = sum(1 for rate in rates if rate > limit)
        poor_pct = Decimal(poor) * HUNDRED / Decimal(len(rates))
        logger.info(
            f"Poor block producers: {poor}/{len(rates)} "
            f"(cluster average skip rate {floor_places(cluster_average, 2)}%)"
        )
        return poor_pct > self._config.max_poor_block_producer_percentage

    def _below_line(
        self,
        validators: Sequence[ValidatorTelemetry],
        base_scores: Mapping[str, int],
    ) -> List[str]:
        top_n = self._config.stake_top_n_validators
        if top_n is None or len(validators) <= top_n:
            return []

        ordered = sorted(
            validators,
            key=lambda v: (-base_scores.get(v.vote_address, 0), v.vote_address),
        )
        # Already staked validators keep their score to avoid stake/unstake churn
        return [
            v.vote_address
            for v in ordered[top_n:]
            if v.marinade_staked == 0
        ]
