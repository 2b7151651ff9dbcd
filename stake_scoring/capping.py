"""
Stake Scoring Engine - Allocation Capper.

============================================================
PURPOSE
============================================================
Converts adjusted scores into target pool fractions (pct),
proportional to score, subject to two caps:

- hard cap: no validator above pct_cap (1.5%) of the pool
- delta cap: per-validator growth ceiling from OverstakeAdjuster

============================================================
ALGORITHM (water-filling)
============================================================
    uncapped = all candidates with adjusted_score > 0
               and remove_level != EmergencyUnstake
    loop:
        share = remaining * score / sum(uncapped scores)
        over  = uncapped validators with share > ceiling
        if none: assign shares, stop
        fix every `over` validator at its ceiling,
        remove it from uncapped, repeat

Every iteration either stops or removes at least one
validator, so candidates + 1 iterations always suffice.
CappingConfig.max_iterations overrides that bound;
exceeding it raises CapConvergenceError.

When every candidate is capped, the remainder stays
unallocated: sum(pct) <= budget <= 1 always holds.

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .arithmetic import HUNDRED, ONE, ZERO, floor_places
from .config import CappingConfig
from .types import (
    Allocation,
    AllocationCandidate,
    CapConvergenceError,
    RemoveLevel,
)


logger = logging.getLogger(__name__)


def weighted_distribution(amount: int, weights: Sequence[int]) -> List[int]:
    """
    Split an integer amount proportionally to integer weights.

    The remainder of integer division is carried forward so
    the parts always sum exactly to amount.

    Raises:
        ValueError: If the weights sum to zero
    """
    remaining_weight = sum(weights)
    if remaining_weight == 0:
        raise ValueError("Sum of weights is 0")

    remaining_amount = amount
    distribution = []
    for weight in weights:
        part = remaining_amount * weight // remaining_weight
        remaining_amount -= part
        remaining_weight -= weight
        distribution.append(part)
    return distribution


class AllocationCapper:
    """
    Sequential final reduction of the scoring pass.

    Has cross-validator dependencies and must never run
    concurrently with itself.
    """

    def __init__(self, config: Optional[CappingConfig] = None) -> None:
        self._config = config or CappingConfig()

    @property
    def hard_cap(self) -> Decimal:
        """Hard cap as a fraction of the pool."""
        return self._config.pct_cap / HUNDRED

    def allocate(
        self,
        candidates: Sequence[AllocationCandidate],
        epoch: Optional[int] = None,
        budget: Decimal = ONE,
    ) -> List[Allocation]:
        """
        Allocate pool fractions to candidates.

        Args:
            candidates: One entry per validator
            epoch: Epoch, for error context
            budget: Fraction of the pool to distribute (stake
                reserved elsewhere is excluded)

        Returns:
            Allocations sorted by rank

        Raises:
            CapConvergenceError: If the iteration bound is exceeded
        """
        eligible = [
            c for c in candidates
            if c.remove_level != RemoveLevel.EMERGENCY_UNSTAKE and c.adjusted_score > 0
        ]
        ceilings = {c.vote_address: self._ceiling(c) for c in eligible}

        fixed: Dict[str, Decimal] = {}
        shares: Dict[str, Decimal] = {}
        uncapped = list(eligible)
        bound = self._config.max_iterations
        if bound is None:
            bound = len(eligible) + 1
        iterations = 0

        while uncapped:
            iterations += 1
            if iterations > bound:
                raise CapConvergenceError(
                    f"Capping did not converge within {bound} iterations",
                    epoch=epoch,
                    context={"uncapped": len(uncapped), "fixed": len(fixed)},
                )

            remaining = max(budget - sum(fixed.values(), ZERO), ZERO)
            weight = Decimal(sum(c.adjusted_score for c in uncapped))
            proposed = {
                c.vote_address: remaining * Decimal(c.adjusted_score) / weight
                for c in uncapped
            }
            over = [c for c in uncapped if proposed[c.vote_address] > ceilings[c.vote_address]]

            if not over:
                shares.update(proposed)
                break

            for c in over:
                fixed[c.vote_address] = ceilings[c.vote_address]
            over_addresses = {c.vote_address for c in over}
            uncapped = [c for c in uncapped if c.vote_address not in over_addresses]

        logger.info(
            f"Capping converged after {iterations} iterations "
            f"({len(fixed)} capped, {len(shares)} proportional)"
        )

        ordered = sorted(
            candidates,
            key=lambda c: (-c.score, -c.adjusted_score, c.vote_address),
        )
        allocations = []
        for rank, c in enumerate(ordered, start=1):
            if c.vote_address in fixed:
                pct, capped = fixed[c.vote_address], True
            else:
                pct, capped = shares.get(c.vote_address, ZERO), False
            allocations.append(Allocation(
                vote_address=c.vote_address,
                pct=floor_places(pct, self._config.pct_precision),
                rank=rank,
                capped=capped,
            ))
        return allocations

    def _ceiling(self, candidate: AllocationCandidate) -> Decimal:
        ceiling = self.hard_cap
        if candidate.max_pct is not None:
            ceiling = min(ceiling, candidate.max_pct)
        return max(ceiling, ZERO)
