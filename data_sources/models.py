"""
Data Source Models - Normalized feed data structures.

Provides strict typing for the chain, stake-view and scoring
feeds. No downstream module depends on provider-specific fields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from stake_scoring.arithmetic import LAMPORTS_PER_SOL
from stake_scoring.types import ValidatorTelemetry


class SourceStatus(Enum):
    """Health status of a data source."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class Cluster(Enum):
    """Supported clusters and their public RPC endpoints."""
    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"

    @property
    def default_rpc_url(self) -> str:
        return {
            Cluster.MAINNET: "https://api.mainnet-beta.solana.com",
            Cluster.TESTNET: "https://api.testnet.solana.com",
            Cluster.DEVNET: "https://api.devnet.solana.com",
        }[self]


@dataclass
class SourceHealth:
    """Rolling health of one feed."""
    status: SourceStatus
    last_check: datetime
    latency_ms: Optional[float] = None
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    consecutive_failures: int = 0
    uptime_percentage: float = 100.0

    def is_healthy(self) -> bool:
        return self.status == SourceStatus.HEALTHY

    def is_usable(self) -> bool:
        """Check if source can still be used (healthy or degraded)."""
        return self.status in (SourceStatus.HEALTHY, SourceStatus.DEGRADED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "last_check": self.last_check.isoformat(),
            "latency_ms": self.latency_ms,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "consecutive_failures": self.consecutive_failures,
            "uptime_percentage": self.uptime_percentage,
        }


@dataclass
class SourceMetadata:
    """Static description of a feed."""
    name: str
    display_name: str
    version: str
    base_url: str = ""
    documentation_url: str = ""
    rate_limit_per_minute: Optional[int] = None
    requires_auth: bool = False
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "version": self.version,
            "base_url": self.base_url,
            "documentation_url": self.documentation_url,
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "requires_auth": self.requires_auth,
            "tags": self.tags,
        }


@dataclass
class SourceIncident:
    """One failed feed call."""
    source_name: str
    incident_type: str
    timestamp: datetime
    error_message: str
    request_params: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source_name": self.source_name,
            "incident_type": self.incident_type,
            "timestamp": self.timestamp.isoformat(),
            "error_message": self.error_message,
            "request_params": self.request_params,
        }


# =============================================================
# FEED PAYLOADS
# =============================================================


@dataclass(frozen=True)
class VoteAccount:
    """One vote account as reported by getVoteAccounts."""
    vote_address: str
    identity_address: str
    commission: int
    active_stake: Decimal       # SOL
    epoch_credits: int          # credits earned in the requested epoch
    last_vote: int
    delinquent: bool


@dataclass(frozen=True)
class StakeViewEntry:
    """
    Off-chain enrichment of one validator.

    Every field is optional; missing values leave the
    telemetry defaults in place.
    """
    vote_address: str
    name: str = ""
    keybase_id: str = ""
    url: str = ""
    apy: Optional[Decimal] = None
    skip_rate: Optional[Decimal] = None
    max_commission: Optional[int] = None
    data_center_asn: int = 0
    data_center_location: str = ""


@dataclass(frozen=True)
class PoolStake:
    """Stake the delegation pool currently holds."""
    total: Decimal
    by_validator: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class ChainSnapshot:
    """
    Everything the engine needs from the chain for one epoch.

    pool_stake is None when no pool document was available;
    the engine then sums the per-validator held stake.
    """
    epoch: int
    validators: list[ValidatorTelemetry]
    pool_stake: Optional[Decimal]
    total_active_stake: Decimal = Decimal("0")
    source_name: str = ""
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "epoch": self.epoch,
            "validator_count": len(self.validators),
            "pool_stake": str(self.pool_stake) if self.pool_stake is not None else None,
            "total_active_stake": str(self.total_active_stake),
            "source_name": self.source_name,
            "fetched_at": self.fetched_at.isoformat(),
        }
