"""
Stake Scoring Engine - Directed Stake.

============================================================
PURPOSE
============================================================
Stake that follows something other than performance:

- Vote gauges: token holders vote for validators and a
  configured share of the total score follows the votes
- Collateral: a validator that deposited stake backed by its
  own collateral gets that stake back as self stake

Both inputs are optional. Without votes and collateral the
pass is unchanged.

============================================================
VOTE GAUGES
============================================================
    effective votes = 0 for EmergencyUnstake, else votes
    target          = total adjusted score * pct // 100
    pool share      = score * (100 - pct) // 100
    vote score      = target split by effective votes
    final score     = pool share + vote score

Skipped when pct is 0 or no validator has effective votes.
Runs after the overstake adjustment and before capping.

============================================================
COLLATERAL
============================================================
    share    = min(deposited, collateral)
    reserved = min(sum(shares), max_pct% of the pool)

Capping distributes only the pool left after the reserve.
The reserve is then split by share to the lamport, limited
by the hard cap room left above the capped pct. A validator
that receives collateral stake has its remove level reset
("self stake override").

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Set, Tuple

from .arithmetic import HUNDRED, LAMPORTS_PER_SOL, ZERO, floor_int, floor_places
from .capping import weighted_distribution
from .config import DirectedStakeConfig
from .types import CollateralShare, RemoveLevel


logger = logging.getLogger(__name__)

SELF_STAKE_OVERRIDE = "self stake override"


class DirectedStakeDistributor:
    """Vote gauge and collateral stake rules."""

    def __init__(self, config: Optional[DirectedStakeConfig] = None) -> None:
        self._config = config or DirectedStakeConfig()

    @property
    def gauges_enabled(self) -> bool:
        return self._config.vote_gauges_stake_pct > 0

    # --------------------------------------------------------
    # VOTE GAUGES
    # --------------------------------------------------------

    @staticmethod
    def effective_votes(
        votes: Mapping[str, int],
        remove_levels: Mapping[str, RemoveLevel],
    ) -> Dict[str, int]:
        """Votes counted this epoch, in remove_levels order."""
        return {
            vote_address: 0 if level == RemoveLevel.EMERGENCY_UNSTAKE else votes.get(vote_address, 0)
            for vote_address, level in remove_levels.items()
        }

    def vote_scores(self, total_score: int, effective: Mapping[str, int]) -> Dict[str, int]:
        """
        Split the gauge share of the total score by effective votes.

        Args:
            total_score: Sum of adjusted scores before gauges
            effective: vote_address -> effective votes

        Returns:
            vote_address -> vote score, empty when gauges do not apply
        """
        pct = self._config.vote_gauges_stake_pct
        total_votes = sum(effective.values())
        if pct <= 0 or total_votes <= 0:
            return {}

        target = total_score * pct // 100
        addresses = list(effective)
        parts = weighted_distribution(target, [effective[a] for a in addresses])
        logger.info(f"Vote gauges: {target} points over {total_votes} votes ({pct}% of {total_score})")
        return dict(zip(addresses, parts))

    def pool_share(self, score: int) -> int:
        """The part of a score kept by the pool's own scoring."""
        return score * (100 - self._config.vote_gauges_stake_pct) // 100

    # --------------------------------------------------------
    # COLLATERAL
    # --------------------------------------------------------

    @staticmethod
    def collateral_shares(
        entries: Iterable[CollateralShare],
        known: Set[str],
    ) -> Dict[str, Decimal]:
        """Counted share per scored validator, in SOL."""
        shares: Dict[str, Decimal] = {}
        for entry in entries:
            if entry.vote_address not in known:
                logger.warning(f"Collateral for unscored validator {entry.vote_address} ignored")
                continue
            if entry.undercollateralized:
                logger.warning(
                    f"Validator {entry.vote_address} deposited {entry.deposited} SOL "
                    f"but only {entry.collateral} SOL of collateral remains"
                )
            if entry.share > ZERO:
                shares[entry.vote_address] = shares.get(entry.vote_address, ZERO) + entry.share
        return shares

    def reserve(self, shares: Mapping[str, Decimal], pool_stake: Decimal) -> Decimal:
        """Stake set aside for collateral-backed validators, in SOL."""
        total = sum(shares.values(), ZERO)
        if total <= ZERO or pool_stake <= ZERO:
            return ZERO
        limit = floor_places(pool_stake * self._config.stake_from_collateral_max_pct / HUNDRED, 9)
        reserved = min(total, limit)
        logger.info(f"Collateral reserve: {reserved} SOL of {total} SOL deposited (limit {limit})")
        return reserved

    @staticmethod
    def collateral_stakes(reserved: Decimal, shares: Mapping[str, Decimal]) -> Dict[str, Decimal]:
        """Split the reserve by share, to the lamport."""
        weights = {
            vote_address: floor_int(share * LAMPORTS_PER_SOL)
            for vote_address, share in shares.items()
        }
        weights = {a: w for a, w in weights.items() if w > 0}
        if reserved <= ZERO or not weights:
            return {}

        addresses = list(weights)
        lamports = weighted_distribution(
            floor_int(reserved * LAMPORTS_PER_SOL),
            [weights[a] for a in addresses],
        )
        return {a: Decimal(part) / LAMPORTS_PER_SOL for a, part in zip(addresses, lamports)}

    @staticmethod
    def with_collateral(
        pct: Decimal,
        stake: Decimal,
        pool_stake: Decimal,
        hard_cap: Decimal,
        places: int,
    ) -> Tuple[Decimal, Decimal]:
        """
        Add collateral stake on top of a capped pct.

        Returns:
            (final pct, collateral stake kept) where the final pct
            never exceeds hard_cap
        """
        if stake <= ZERO or pool_stake <= ZERO:
            return pct, ZERO
        room = max(hard_cap - pct, ZERO)
        added = min(floor_places(stake / pool_stake, places), floor_places(room, places))
        kept = min(stake, floor_places(added * pool_stake, 9))
        return pct + added, kept
