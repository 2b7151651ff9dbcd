"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Defines data models for the epoch runner.

- Run stages with strict ordering
- Stage and run results
- Exit codes for the command surface
- Runner configuration dataclass

============================================================
"""

from enum import Enum, IntEnum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import os

from dotenv import load_dotenv

from data_sources.models import Cluster
from stake_scoring.types import EpochScoringResult


load_dotenv()


# ============================================================
# RUN STAGES
# ============================================================

class RunStage(Enum):
    """
    Epoch run stages in strict order.

    Failure short-circuits downstream. Nothing is persisted
    unless every earlier stage succeeded.
    """

    CHECK_FEEDS = (1, "check_feeds", "Check feed health before fetching")
    FETCH_CHAIN = (2, "fetch_chain", "Fetch chain telemetry and pool stake")
    FETCH_SCORES = (3, "fetch_scores", "Fetch base scores, gauge votes and collateral")
    LOAD_HISTORY = (4, "load_history", "Load rolling history averages")
    SCORE = (5, "score", "Run the scoring and allocation pass")
    PERSIST = (6, "persist", "Replace the epoch's persisted records")

    def __init__(self, order: int, stage_id: str, description: str):
        self._order = order
        self._stage_id = stage_id
        self._description = description

    @property
    def order(self) -> int:
        """Get execution order."""
        return self._order

    @property
    def stage_id(self) -> str:
        """Get stage identifier."""
        return self._stage_id

    @property
    def description(self) -> str:
        """Get stage description."""
        return self._description

    @classmethod
    def get_ordered_stages(cls, dry_run: bool = False, check_feeds: bool = True) -> List["RunStage"]:
        """Get the stages that run, in execution order."""
        stages = sorted(cls, key=lambda s: s.order)
        if dry_run:
            stages.remove(cls.PERSIST)
        if not check_feeds:
            stages.remove(cls.CHECK_FEEDS)
        return stages


# ============================================================
# EXIT CODES
# ============================================================

class ExitCode(IntEnum):
    """Process exit codes of the score-epoch command."""

    OK = 0
    USAGE = 1
    DATA_SOURCE = 2
    SCORING = 3
    PERSISTENCE = 4


# ============================================================
# STAGE RESULT
# ============================================================

@dataclass
class StageResult:
    """Result of executing a stage."""

    stage: RunStage
    success: bool
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    error: Optional[str] = None
    error_type: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> timedelta:
        """Get duration as timedelta."""
        return timedelta(seconds=self.duration_seconds)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "stage": self.stage.stage_id,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "error_type": self.error_type,
            "context": self.context,
        }


@dataclass
class EpochRunResult:
    """Result of one complete epoch run."""

    run_id: str
    cluster: Cluster
    dry_run: bool
    started_at: datetime
    epoch: Optional[int] = None
    completed_at: Optional[datetime] = None
    success: bool = False
    exit_code: ExitCode = ExitCode.OK
    stage_results: List[StageResult] = field(default_factory=list)
    failed_stage: Optional[RunStage] = None
    error: Optional[str] = None
    scoring: Optional[EpochScoringResult] = None
    rows_persisted: int = 0

    @property
    def duration_seconds(self) -> float:
        """Get total duration in seconds."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def stages_completed(self) -> int:
        """Get number of completed stages."""
        return len([r for r in self.stage_results if r.success])

    def add_stage_result(self, result: StageResult) -> None:
        """Add a stage result."""
        self.stage_results.append(result)
        if not result.success:
            self.failed_stage = result.stage
            self.error = result.error

    def finish(self, exit_code: ExitCode) -> "EpochRunResult":
        """Mark the run complete."""
        self.exit_code = exit_code
        self.success = exit_code == ExitCode.OK
        self.completed_at = datetime.now(timezone.utc)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "run_id": self.run_id,
            "cluster": self.cluster.value,
            "epoch": self.epoch,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "success": self.success,
            "exit_code": int(self.exit_code),
            "duration_seconds": self.duration_seconds,
            "stages_completed": self.stages_completed,
            "failed_stage": self.failed_stage.stage_id if self.failed_stage else None,
            "error": self.error,
            "rows_persisted": self.rows_persisted,
            "stage_results": [r.to_dict() for r in self.stage_results],
        }


# ============================================================
# RUNNER CONFIGURATION
# ============================================================

@dataclass
class RunnerConfig:
    """Configuration for the epoch runner."""

    # Feeds
    cluster: Cluster = Cluster.MAINNET
    """Cluster to score."""

    rpc_url: Optional[str] = None
    """JSON-RPC URL, defaults to the cluster's public endpoint."""

    scoring_feed_url: Optional[str] = None
    """External base score feed."""

    stake_view_url: Optional[str] = None
    """Off-chain validator enrichment document."""

    pool_stake_url: Optional[str] = None
    """Document with the stake the pool currently holds."""

    votes_url: Optional[str] = None
    """Gauge votes document, skipped when unset."""

    collateral_url: Optional[str] = None
    """Collateral-backed deposits document, skipped when unset."""

    check_feeds: bool = True
    """Check feed health before fetching."""

    request_timeout_seconds: float = 180.0
    """Per-request timeout."""

    max_retries: int = 3
    """Attempts per remote call."""

    # Persistence
    database_url: Optional[str] = None
    """Overrides DATABASE_URL_SYNC/DATABASE_URL."""

    # Logging
    log_level: str = "INFO"
    """Logging level."""

    log_format: str = "json"
    """Logging format (json or text)."""

    # Safety
    dry_run: bool = False
    """Score without writing records."""

    @property
    def effective_rpc_url(self) -> str:
        return self.rpc_url or self.cluster.default_rpc_url

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Load configuration from environment variables."""
        return cls(
            cluster=Cluster(os.getenv("CLUSTER", "mainnet")),
            rpc_url=os.getenv("RPC_URL") or None,
            scoring_feed_url=os.getenv("SCORING_FEED_URL") or None,
            stake_view_url=os.getenv("STAKE_VIEW_URL") or None,
            pool_stake_url=os.getenv("POOL_STAKE_URL") or None,
            votes_url=os.getenv("VOTES_URL") or None,
            collateral_url=os.getenv("COLLATERAL_URL") or None,
            check_feeds=os.getenv("CHECK_FEEDS", "true").lower() == "true",
            request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "180")),
            max_retries=int(os.getenv("MAX_RETRIES", "3")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            dry_run=os.getenv("DRY_RUN", "false").lower() == "true",
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.scoring_feed_url:
            errors.append("scoring_feed_url is required (--scoring-url or SCORING_FEED_URL)")

        if self.request_timeout_seconds <= 0:
            errors.append("request_timeout_seconds must be positive")

        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")

        if self.log_format not in ("json", "text"):
            errors.append("log_format must be json or text")

        return errors
