"""
Stake Scoring Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the Stake Scoring Engine.

This module defines all types, enums, and dataclasses used
by the scoring and allocation pass. Every component receives
and returns these immutable values; nothing is shared and
mutated between components.

============================================================
DESIGN PRINCIPLES
============================================================
- All types are immutable (frozen dataclasses)
- Stake amounts, fractions and ratios are Decimal
- Undefined history is None, never zero
- Clear separation between input and output types

============================================================
REMOVE LEVELS
============================================================
Each validator ends the epoch with exactly one remove level:

0. NONE              - Healthy, allocated by score
1. PARTIAL_UNSTAKE   - Degraded, score halved
2. EMERGENCY_UNSTAKE - Forced to zero allocation

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple


# ============================================================
# ENUMS
# ============================================================


class RemoveLevel(IntEnum):
    """
    Unstake decision for a validator.

    Values are ordered by severity so that max() of two
    levels yields the stricter one.
    """

    NONE = 0
    PARTIAL_UNSTAKE = 1
    EMERGENCY_UNSTAKE = 2

    @property
    def label(self) -> str:
        """Human-readable label for the level."""
        return {
            0: "None",
            1: "PartialUnstake",
            2: "EmergencyUnstake",
        }[self.value]

    @classmethod
    def from_label(cls, label: str) -> "RemoveLevel":
        """Parse a persisted label back into a RemoveLevel."""
        for level in cls:
            if level.label == label or level.name == label:
                return level
        raise ValueError(f"Unknown remove level: {label}")


# ============================================================
# INPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class ValidatorTelemetry:
    """
    Raw per-validator metrics for one epoch.

    Assembled by the chain data feed. Optional fields are None
    when the feed has no observation (e.g. no APY sample yet).
    """

    vote_address: str
    identity_address: str

    name: str = ""
    keybase_id: str = ""
    url: str = ""

    # Performance
    credits_observed: int = 0
    commission: int = 0
    max_commission: int = 0
    delinquent: bool = False
    version: str = "0.0.0"
    skip_rate: Optional[Decimal] = None     # percent
    apy: Optional[Decimal] = None           # percent

    # Concentration
    data_center_asn: int = 0
    data_center_location: str = ""
    stake_concentration: Decimal = Decimal("0")  # fraction 0-1
    under_nakamoto: bool = False

    # Stake
    active_stake: Decimal = Decimal("0")
    marinade_staked: Decimal = Decimal("0")

    @property
    def data_center_id(self) -> str:
        """Data center key grouping validators by ASN and location."""
        return f"{self.data_center_asn}-{self.data_center_location}"

    def validate(self) -> None:
        """
        Check required fields.

        Raises:
            MalformedRecordError: If any required field is invalid
        """
        if not self.vote_address:
            raise MalformedRecordError("vote_address is empty", vote_address=self.vote_address)
        if not self.identity_address:
            raise MalformedRecordError("identity_address is empty", vote_address=self.vote_address)
        if self.credits_observed < 0:
            raise MalformedRecordError(
                f"credits_observed is negative ({self.credits_observed})",
                vote_address=self.vote_address,
            )
        if not 0 <= self.commission <= 100:
            raise MalformedRecordError(
                f"commission out of range ({self.commission})",
                vote_address=self.vote_address,
            )
        if not 0 <= self.max_commission <= 100:
            raise MalformedRecordError(
                f"max_commission out of range ({self.max_commission})",
                vote_address=self.vote_address,
            )
        if self.active_stake < 0 or self.marinade_staked < 0:
            raise MalformedRecordError("stake amounts must be non-negative", vote_address=self.vote_address)
        if not Decimal("0") <= self.stake_concentration <= Decimal("1"):
            raise MalformedRecordError(
                f"stake_concentration out of range ({self.stake_concentration})",
                vote_address=self.vote_address,
            )


@dataclass(frozen=True)
class HistoryAverages:
    """
    Rolling per-validator averages over the last N epochs.

    Every average is None when the validator has no prior
    records. None means "undefined" and MUST NOT be read as
    zero by any rule.
    """

    vote_address: str
    epochs_observed: int = 0

    score: Optional[Decimal] = None
    average_position: Optional[Decimal] = None
    credits: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    stake_concentration: Optional[Decimal] = None

    @property
    def is_defined(self) -> bool:
        """True when at least one prior epoch was observed."""
        return self.epochs_observed > 0

    @classmethod
    def undefined(cls, vote_address: str) -> "HistoryAverages":
        """Averages for a validator never seen before."""
        return cls(vote_address=vote_address)


@dataclass(frozen=True)
class CollateralShare:
    """
    Self stake a validator backs with its own collateral.

    Only min(deposited, collateral) counts toward the share,
    so a collateral account that lost value shrinks it.
    """

    vote_address: str
    deposited: Decimal
    collateral: Decimal

    @property
    def share(self) -> Decimal:
        return min(self.deposited, self.collateral)

    @property
    def undercollateralized(self) -> bool:
        return self.collateral < self.deposited


@dataclass(frozen=True)
class PopulationSnapshot:
    """
    Population-level aggregates for one epoch.

    Computed once, sequentially, before any per-validator work
    and passed read-only into every component call.
    """

    epoch: int
    validator_count: int
    mean_credits: Decimal
    mean_apy: Optional[Decimal]
    total_pool_stake: Decimal
    min_release_version: Optional[str] = None
    largest_data_center_stake_pct: Decimal = Decimal("0")
    population_gates_tripped: bool = False
    release_rule_suspended: bool = False
    below_line: frozenset = field(default_factory=frozenset)
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "epoch": self.epoch,
            "validator_count": self.validator_count,
            "mean_credits": str(self.mean_credits),
            "mean_apy": str(self.mean_apy) if self.mean_apy is not None else None,
            "total_pool_stake": str(self.total_pool_stake),
            "min_release_version": self.min_release_version,
            "largest_data_center_stake_pct": str(self.largest_data_center_stake_pct),
            "population_gates_tripped": self.population_gates_tripped,
            "release_rule_suspended": self.release_rule_suspended,
            "below_line": len(self.below_line),
            "notes": list(self.notes),
        }


# ============================================================
# INTERMEDIATE CONTRACTS
# ============================================================


@dataclass(frozen=True)
class NormalizedMetrics:
    """Bounded performance sub-scores and health flags for one validator."""

    vote_address: str
    credit_fraction: Decimal
    apy_fraction: Decimal
    average_position: Decimal

    emergency: bool = False
    emergency_reason: Optional[str] = None
    degraded: bool = False
    degraded_reason: Optional[str] = None


@dataclass(frozen=True)
class AnomalyDecision:
    """Resolved remove level for one validator."""

    remove_level: RemoveLevel
    reason: str
    overstake_exempt: bool = False

    @property
    def is_emergency(self) -> bool:
        return self.remove_level == RemoveLevel.EMERGENCY_UNSTAKE

    @property
    def is_partial(self) -> bool:
        return self.remove_level == RemoveLevel.PARTIAL_UNSTAKE


@dataclass(frozen=True)
class OverstakeAdjustment:
    """
    Ranking score and allocation ceiling derived from held stake.

    `max_pct` is None when the validator has no per-epoch
    growth ceiling beyond the hard cap.
    """

    adjusted_score: int
    should_have: Decimal
    max_pct: Optional[Decimal] = None
    severely_understaked: bool = False
    overstaked: bool = False
    exempt: bool = False


@dataclass(frozen=True)
class AllocationCandidate:
    """One row of AllocationCapper input."""

    vote_address: str
    score: int
    adjusted_score: int
    remove_level: RemoveLevel = RemoveLevel.NONE
    max_pct: Optional[Decimal] = None


@dataclass(frozen=True)
class Allocation:
    """One row of AllocationCapper output."""

    vote_address: str
    pct: Decimal
    rank: int
    capped: bool = False


# ============================================================
# OUTPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class ValidatorEpochRecord:
    """
    One scored and allocated validator for one epoch.

    Created once per (epoch, vote_address) and never mutated
    after the epoch closes.
    """

    epoch: int
    vote_address: str
    identity_address: str
    name: str = ""
    keybase_id: str = ""

    # Performance
    credits_observed: int = 0
    average_position: Decimal = Decimal("0")
    commission: int = 0
    max_commission: int = 0
    delinquent: bool = False
    version: str = "0.0.0"
    apy: Optional[Decimal] = None

    # Concentration
    data_center_asn: int = 0
    data_center_location: str = ""
    stake_concentration: Decimal = Decimal("0")

    # Allocation
    base_score: int = 0
    active_stake: Decimal = Decimal("0")
    marinade_staked: Decimal = Decimal("0")
    should_have: Decimal = Decimal("0")
    pct: Decimal = Decimal("0")
    score: int = 0
    adjusted_score: int = 0
    credit_fraction: Decimal = Decimal("0")
    apy_fraction: Decimal = Decimal("0")
    remove_level: RemoveLevel = RemoveLevel.NONE
    remove_level_reason: str = ""

    # Directed stake
    votes: int = 0
    vote_score: int = 0
    collateral_stake: Decimal = Decimal("0")

    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "epoch": self.epoch,
            "rank": self.rank,
            "vote_address": self.vote_address,
            "identity_address": self.identity_address,
            "name": self.name,
            "keybase_id": self.keybase_id,
            "credits_observed": self.credits_observed,
            "average_position": str(self.average_position),
            "commission": self.commission,
            "max_commission": self.max_commission,
            "delinquent": self.delinquent,
            "version": self.version,
            "apy": str(self.apy) if self.apy is not None else None,
            "data_center_asn": self.data_center_asn,
            "data_center_location": self.data_center_location,
            "stake_concentration": str(self.stake_concentration),
            "base_score": self.base_score,
            "active_stake": str(self.active_stake),
            "marinade_staked": str(self.marinade_staked),
            "should_have": str(self.should_have),
            "pct": str(self.pct),
            "score": self.score,
            "adjusted_score": self.adjusted_score,
            "credit_fraction": str(self.credit_fraction),
            "apy_fraction": str(self.apy_fraction),
            "remove_level": self.remove_level.label,
            "remove_level_reason": self.remove_level_reason,
            "votes": self.votes,
            "vote_score": self.vote_score,
            "collateral_stake": str(self.collateral_stake),
        }


@dataclass(frozen=True)
class ExcludedValidator:
    """A validator dropped from the scored set, with the reason."""

    vote_address: str
    reason: str


@dataclass(frozen=True)
class EpochScoringResult:
    """
    Complete output of one scoring pass.

    ============================================================
    OUTPUT GUARANTEES
    ============================================================
    - records sorted by rank (1-based)
    - sum of pct <= 1
    - EmergencyUnstake records have pct == 0
    - excluded lists every validator dropped as malformed

    ============================================================
    """

    epoch: int
    records: List[ValidatorEpochRecord]
    population: PopulationSnapshot
    excluded: List[ExcludedValidator] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    engine_version: str = "1.0.0"

    @property
    def total_score(self) -> int:
        return sum(r.score for r in self.records)

    @property
    def total_pct(self) -> Decimal:
        return sum((r.pct for r in self.records), Decimal("0"))

    @property
    def emergency_count(self) -> int:
        return sum(1 for r in self.records if r.remove_level == RemoveLevel.EMERGENCY_UNSTAKE)

    @property
    def partial_count(self) -> int:
        return sum(1 for r in self.records if r.remove_level == RemoveLevel.PARTIAL_UNSTAKE)

    def get_record(self, vote_address: str) -> Optional[ValidatorEpochRecord]:
        """Look up a record by vote address."""
        for record in self.records:
            if record.vote_address == vote_address:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Summary dictionary for logging (records omitted)."""
        return {
            "epoch": self.epoch,
            "validators": len(self.records),
            "excluded": [{"vote_address": e.vote_address, "reason": e.reason} for e in self.excluded],
            "emergency_unstake": self.emergency_count,
            "partial_unstake": self.partial_count,
            "total_score": self.total_score,
            "total_pct": str(self.total_pct),
            "notes": list(self.notes),
            "population": self.population.to_dict(),
            "computed_at": self.computed_at.isoformat(),
            "engine_version": self.engine_version,
        }


# ============================================================
# ERROR TYPES
# ============================================================


class StakeScoringError(Exception):
    """Base exception for stake scoring errors."""

    def __init__(
        self,
        message: str,
        epoch: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.epoch = epoch
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "epoch": self.epoch,
            "context": self.context,
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.epoch is not None:
            parts.append(f"[epoch={self.epoch}]")
        return " ".join(parts)


class MalformedRecordError(StakeScoringError):
    """
    A validator record failed required-field validation.

    NOTE: Not fatal. The validator is excluded from the
    epoch's scored set and reported alongside the result.
    """

    def __init__(
        self,
        message: str,
        vote_address: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> None:
        super().__init__(message, epoch=epoch, context={"vote_address": vote_address})
        self.vote_address = vote_address


class DegenerateAggregateError(StakeScoringError):
    """A population aggregate is zero or undefined. Fatal."""
    pass


class PopulationHealthError(StakeScoringError):
    """The validator population fails a fatal health gate. Fatal."""
    pass


class CapConvergenceError(StakeScoringError):
    """
    AllocationCapper exceeded its iteration bound.

    Indicates a logic bug; never downgraded to a best-effort
    result.
    """
    pass


class FinalScoreCheckError(StakeScoringError):
    """
    Final scores fail the sanity check before output.

    Raised when the total score is zero or too few validators
    keep a positive score. Fatal.
    """
    pass
