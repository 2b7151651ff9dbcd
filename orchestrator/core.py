"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Epoch runner - wires the feeds, the engine and the store.

- Checks feed health before fetching
- Fetches chain telemetry and scoring inputs concurrently
- Loads rolling history from the store
- Runs the scoring pass and store access off the event loop
- Replaces the epoch's records in one transaction

============================================================
ARCHITECTURAL POSITION
============================================================
- This runner has NO scoring logic
- It does NOT modify engine output
- It ONLY coordinates execution and maps failures to
  exit codes

============================================================
FAILURE SEMANTICS
============================================================
Any failure before PERSIST leaves the store untouched.
- DataSourceError          -> ExitCode.DATA_SOURCE
- StakeScoringError        -> ExitCode.SCORING
- DatabasePersistenceError -> ExitCode.PERSISTENCE

============================================================
"""

import asyncio
import json
import logging
import sys
import time
import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import Session

from data_sources import (
    ChainSnapshot,
    DataSourceError,
    DataSourceUnavailableError,
    ScoringFeedSource,
    SolanaChainDataSource,
    SourceStatus,
    StakeViewSource,
)
from database.engine import (
    DatabasePersistenceError,
    configure_database,
    initialize_database,
    transaction_scope,
)
from stake_scoring.config import StakeScoringConfig
from stake_scoring.engine import StakeScoringEngine
from stake_scoring.history import HistoryAggregator
from stake_scoring.repository import ValidatorScoreRepository
from stake_scoring.types import CollateralShare, EpochScoringResult, HistoryAverages, StakeScoringError

from .models import EpochRunResult, ExitCode, RunStage, RunnerConfig, StageResult


T = TypeVar("T")

# base scores, gauge votes, collateral
ScoringInputs = Tuple[Dict[str, int], Optional[Dict[str, int]], Optional[List[CollateralShare]]]


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# EPOCH RUNNER
# ============================================================

class EpochRunner:
    """
    Runs one epoch end to end: fetch -> score -> persist.

    Feeds and the session scope can be injected; otherwise
    they are built from RunnerConfig and closed after the run.
    """

    def __init__(
        self,
        config: RunnerConfig,
        scoring_config: Optional[StakeScoringConfig] = None,
        chain_source: Optional[SolanaChainDataSource] = None,
        scoring_feed: Optional[ScoringFeedSource] = None,
        session_scope: Callable[[], AbstractContextManager[Session]] = transaction_scope,
        prepare_database: bool = True,
    ) -> None:
        self._config = config
        self._scoring_config = scoring_config or StakeScoringConfig()
        self._engine = StakeScoringEngine(self._scoring_config)
        self._history = HistoryAggregator(self._scoring_config.history)
        self._session_scope = session_scope

        self._chain = chain_source or self._build_chain_source()
        self._feed = scoring_feed or self._build_scoring_feed()
        self._owned_sources = [
            source for source, injected in ((self._chain, chain_source), (self._feed, scoring_feed))
            if injected is None
        ]

        self._logger = logging.getLogger("orchestrator.runner")
        self._database_ready = not prepare_database

    @property
    def config(self) -> RunnerConfig:
        return self._config

    # --------------------------------------------------------
    # Construction
    # --------------------------------------------------------

    def _build_chain_source(self) -> SolanaChainDataSource:
        stake_view = None
        if self._config.stake_view_url or self._config.pool_stake_url:
            stake_view = StakeViewSource(
                validators_url=self._config.stake_view_url,
                pool_url=self._config.pool_stake_url,
                timeout=self._config.request_timeout_seconds,
                max_retries=self._config.max_retries,
            )
        return SolanaChainDataSource(
            cluster=self._config.cluster,
            rpc_url=self._config.rpc_url,
            stake_view=stake_view,
            timeout=self._config.request_timeout_seconds,
            max_retries=self._config.max_retries,
        )

    def _build_scoring_feed(self) -> ScoringFeedSource:
        return ScoringFeedSource(
            url=self._config.scoring_feed_url or "",
            timeout=self._config.request_timeout_seconds,
            max_retries=self._config.max_retries,
            votes_url=self._config.votes_url,
            collateral_url=self._config.collateral_url,
        )

    # --------------------------------------------------------
    # Run
    # --------------------------------------------------------

    async def run(self, epoch: Optional[int] = None) -> EpochRunResult:
        """
        Run one epoch.

        Args:
            epoch: Epoch to score, None for the current epoch

        Returns:
            EpochRunResult with exit code and scoring result
        """
        run = EpochRunResult(
            run_id=f"epoch-{uuid.uuid4().hex[:12]}",
            cluster=self._config.cluster,
            dry_run=self._config.dry_run,
            started_at=datetime.now(timezone.utc),
            epoch=epoch,
        )
        self._logger.info(
            f"Run {run.run_id} started: cluster={run.cluster.value} "
            f"epoch={epoch if epoch is not None else 'current'} dry_run={run.dry_run}"
        )

        try:
            await self._execute(run, epoch)
            run.finish(ExitCode.OK)
        except DataSourceError as e:
            self._logger.error(f"Data source failure, nothing persisted: {e}")
            run.finish(ExitCode.DATA_SOURCE)
        except StakeScoringError as e:
            self._logger.error(f"Scoring failure, nothing persisted: {e}")
            run.finish(ExitCode.SCORING)
        except DatabasePersistenceError as e:
            self._logger.error(f"Persistence failure: {e}")
            run.finish(ExitCode.PERSISTENCE)
        finally:
            await self.close()

        self._logger.info(
            f"Run {run.run_id} finished: success={run.success} exit_code={int(run.exit_code)} "
            f"epoch={run.epoch} rows={run.rows_persisted} duration={run.duration_seconds:.1f}s"
        )
        return run

    async def _execute(self, run: EpochRunResult, epoch: Optional[int]) -> None:
        if self._config.check_feeds:
            await self._run_stage(run, RunStage.CHECK_FEEDS, self._check_feeds)

        if epoch is None:
            epoch = await self._chain.get_current_epoch()
        run.epoch = epoch

        snapshot, (base_scores, votes, collateral) = await self._fetch_inputs(run, epoch)

        history = await self._run_stage(
            run,
            RunStage.LOAD_HISTORY,
            lambda: asyncio.to_thread(self._load_history, snapshot),
        )

        result = await self._run_stage(
            run,
            RunStage.SCORE,
            lambda: asyncio.to_thread(
                self._engine.score_epoch,
                epoch,
                snapshot.validators,
                base_scores,
                history,
                snapshot.pool_stake,
                votes,
                collateral,
            ),
        )
        run.scoring = result

        if self._config.dry_run:
            self._logger.info(f"Dry run: {len(result.records)} records for epoch {epoch} not persisted")
            return

        run.rows_persisted = await self._run_stage(
            run,
            RunStage.PERSIST,
            lambda: asyncio.to_thread(self._persist, result),
        )

    async def _check_feeds(self) -> None:
        """Check both feeds; an unavailable feed aborts the run."""
        sources = (self._chain, self._feed)
        healths = await asyncio.gather(*(source.health_check() for source in sources))
        for source, health in zip(sources, healths):
            if health.status == SourceStatus.UNAVAILABLE:
                raise DataSourceUnavailableError(
                    message=f"Health check failed: {health.last_error}",
                    source_name=source.name,
                    consecutive_failures=health.consecutive_failures,
                )
            self._logger.info(f"Feed {source.name} is {health.status.value}")

    async def _fetch_inputs(
        self,
        run: EpochRunResult,
        epoch: int,
    ) -> tuple[ChainSnapshot, ScoringInputs]:
        """Fetch both feeds concurrently; the first failure wins."""
        outcomes = await asyncio.gather(
            self._run_stage(run, RunStage.FETCH_CHAIN, lambda: self._chain.fetch_epoch(epoch)),
            self._run_stage(run, RunStage.FETCH_SCORES, lambda: self._fetch_scoring_inputs(epoch)),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        snapshot, inputs = outcomes
        return snapshot, inputs

    async def _fetch_scoring_inputs(self, epoch: int) -> ScoringInputs:
        """Base scores, plus gauge votes and collateral when configured."""
        base_scores = await self._feed.fetch_base_scores(epoch)
        votes = await self._feed.fetch_votes(epoch) if self._config.votes_url else None
        collateral = await self._feed.fetch_collateral(epoch) if self._config.collateral_url else None
        return base_scores, votes, collateral

    def _load_history(self, snapshot: ChainSnapshot) -> Dict[str, HistoryAverages]:
        self._prepare_database()
        with self._session_scope() as session:
            repository = ValidatorScoreRepository(session)
            return self._history.load(
                (v.vote_address for v in snapshot.validators),
                repository,
                current_epoch=snapshot.epoch,
            )

    def _persist(self, result: EpochScoringResult) -> int:
        self._prepare_database()
        with self._session_scope() as session:
            return ValidatorScoreRepository(session).upsert_epoch(result.epoch, result.records)

    def _prepare_database(self) -> None:
        if self._database_ready:
            return
        if self._config.database_url:
            configure_database(self._config.database_url)
        initialize_database()
        self._database_ready = True

    async def _run_stage(
        self,
        run: EpochRunResult,
        stage: RunStage,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute one stage and record its StageResult."""
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        self._logger.debug(f"Stage {stage.stage_id} started")

        try:
            value = await operation()
        except Exception as e:
            run.add_stage_result(StageResult(
                stage=stage,
                success=False,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                duration_seconds=time.monotonic() - start,
                error=str(e),
                error_type=e.__class__.__name__,
                context=self._error_context(e),
            ))
            self._logger.error(f"Stage {stage.stage_id} failed: {e}")
            raise

        run.add_stage_result(StageResult(
            stage=stage,
            success=True,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            duration_seconds=time.monotonic() - start,
        ))
        self._logger.info(f"Stage {stage.stage_id} completed in {time.monotonic() - start:.2f}s")
        return value

    @staticmethod
    def _error_context(error: Exception) -> Dict[str, Any]:
        if isinstance(error, (DataSourceError, StakeScoringError)):
            return error.to_dict()
        return {}

    async def close(self) -> None:
        """Close the feeds this runner created."""
        for source in self._owned_sources:
            await source.close()


async def run_epoch(
    config: RunnerConfig,
    epoch: Optional[int] = None,
    scoring_config: Optional[StakeScoringConfig] = None,
) -> EpochRunResult:
    """
    Convenience function to run one epoch.

    Creates a temporary runner with its own feeds.
    """
    runner = EpochRunner(config, scoring_config=scoring_config)
    return await runner.run(epoch)
