"""
Stake Scoring Engine - Persistence Layer.

============================================================
PURPOSE
============================================================
ORM model for persisted validator epoch records.

Enables:
- Rolling history averages for the next epoch
- Audit trail of every score and unstake decision
- Idempotent re-runs of the in-flight epoch

============================================================
MODELS
============================================================
1. ValidatorEpochScore: one row per (epoch, vote_address)

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database.engine import Base

from .types import RemoveLevel, ValidatorEpochRecord


# ============================================================
# VALIDATOR EPOCH SCORE MODEL
# ============================================================


class ValidatorEpochScore(Base):
    """
    One scored and allocated validator for one epoch.

    ============================================================
    WHAT IT STORES
    ============================================================
    - Identity and performance telemetry of the epoch
    - External base score and composite score
    - Allocation (pct, should_have) and rank
    - Remove level and reason
    - Gauge votes and collateral-backed self stake

    ============================================================
    KEYS
    ============================================================
    (epoch, vote_address) is unique. An epoch's rows are only
    ever replaced as a whole by upsert_epoch().

    ============================================================
    """

    __tablename__ = "validator_epoch_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    epoch: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    vote_address: Mapped[str] = mapped_column(String(64), nullable=False)
    identity_address: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    keybase_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Performance
    credits_observed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_position: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=0)
    commission: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_commission: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delinquent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[str] = mapped_column(String(32), nullable=False, default="0.0.0")
    apy: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)

    # Concentration
    data_center_asn: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data_center_location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    stake_concentration: Mapped[Decimal] = mapped_column(Numeric(18, 9), nullable=False, default=0)

    # Allocation
    base_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_stake: Mapped[Decimal] = mapped_column(Numeric(30, 9), nullable=False, default=0)
    marinade_staked: Mapped[Decimal] = mapped_column(Numeric(30, 9), nullable=False, default=0)
    should_have: Mapped[Decimal] = mapped_column(Numeric(30, 9), nullable=False, default=0)
    pct: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False, default=0)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    adjusted_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_fraction: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False, default=0)
    apy_fraction: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False, default=0)
    remove_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="0=None, 1=PartialUnstake, 2=EmergencyUnstake",
    )
    remove_level_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Directed stake
    votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vote_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    collateral_stake: Mapped[Decimal] = mapped_column(Numeric(30, 9), nullable=False, default=0)

    rank: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("epoch", "vote_address", name="uq_validator_epoch_scores_epoch_vote"),
        Index("ix_validator_epoch_scores_vote_epoch", "vote_address", "epoch"),
    )

    @classmethod
    def from_record(cls, record: ValidatorEpochRecord) -> "ValidatorEpochScore":
        """Build a row from an engine record."""
        return cls(
            epoch=record.epoch,
            vote_address=record.vote_address,
            identity_address=record.identity_address,
            name=record.name,
            keybase_id=record.keybase_id,
            credits_observed=record.credits_observed,
            average_position=record.average_position,
            commission=record.commission,
            max_commission=record.max_commission,
            delinquent=record.delinquent,
            version=record.version,
            apy=record.apy,
            data_center_asn=record.data_center_asn,
            data_center_location=record.data_center_location,
            stake_concentration=record.stake_concentration,
            base_score=record.base_score,
            active_stake=record.active_stake,
            marinade_staked=record.marinade_staked,
            should_have=record.should_have,
            pct=record.pct,
            score=record.score,
            adjusted_score=record.adjusted_score,
            credit_fraction=record.credit_fraction,
            apy_fraction=record.apy_fraction,
            remove_level=int(record.remove_level),
            remove_level_reason=record.remove_level_reason,
            votes=record.votes,
            vote_score=record.vote_score,
            collateral_stake=record.collateral_stake,
            rank=record.rank,
        )

    def to_record(self) -> ValidatorEpochRecord:
        """Convert a row back into an engine record."""
        return ValidatorEpochRecord(
            epoch=self.epoch,
            vote_address=self.vote_address,
            identity_address=self.identity_address,
            name=self.name,
            keybase_id=self.keybase_id,
            credits_observed=self.credits_observed,
            average_position=Decimal(self.average_position),
            commission=self.commission,
            max_commission=self.max_commission,
            delinquent=self.delinquent,
            version=self.version,
            apy=Decimal(self.apy) if self.apy is not None else None,
            data_center_asn=self.data_center_asn,
            data_center_location=self.data_center_location,
            stake_concentration=Decimal(self.stake_concentration),
            base_score=self.base_score,
            active_stake=Decimal(self.active_stake),
            marinade_staked=Decimal(self.marinade_staked),
            should_have=Decimal(self.should_have),
            pct=Decimal(self.pct),
            score=self.score,
            adjusted_score=self.adjusted_score,
            credit_fraction=Decimal(self.credit_fraction),
            apy_fraction=Decimal(self.apy_fraction),
            remove_level=RemoveLevel(self.remove_level),
            remove_level_reason=self.remove_level_reason,
            votes=self.votes,
            vote_score=self.vote_score,
            collateral_stake=Decimal(self.collateral_stake),
            rank=self.rank,
        )

    def __repr__(self) -> str:
        return (
            f"<ValidatorEpochScore(epoch={self.epoch}, vote={self.vote_address}, "
            f"score={self.score}, pct={self.pct})>"
        )
