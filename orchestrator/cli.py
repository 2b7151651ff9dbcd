"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the stake scoring engine.

- Provides argparse-based CLI
- Loads configuration from CLI and environment
- Maps run failures to exit codes
- Entry point for the application

============================================================
USAGE
============================================================
python -m orchestrator.cli score-epoch --cluster mainnet --epoch current
python -m orchestrator.cli score-epoch --epoch 512 --dry-run
python -m orchestrator.cli show-epoch --epoch latest --top 20

============================================================
EXIT CODES
============================================================
0 success, 1 usage, 2 data source, 3 scoring, 4 persistence

============================================================
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from data_sources.models import Cluster
from database.engine import (
    DatabasePersistenceError,
    configure_database,
    initialize_database,
    transaction_scope,
)
from stake_scoring.config import StakeScoringConfig, get_conservative_config
from stake_scoring.engine import format_epoch_summary, removal_summary
from stake_scoring.repository import ValidatorScoreRepository
from stake_scoring.types import EpochScoringResult, RemoveLevel

from .core import EpochRunner, setup_logging
from .models import ExitCode, RunStage, RunnerConfig


logger = logging.getLogger(__name__)


# ============================================================
# ARGUMENT TYPES
# ============================================================

def epoch_arg(value: str) -> Optional[int]:
    """Parse --epoch: a non-negative integer or 'current'."""
    if value.lower() == "current":
        return None
    try:
        epoch = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"epoch must be an integer or 'current', got {value!r}")
    if epoch < 0:
        raise argparse.ArgumentTypeError("epoch must be non-negative")
    return epoch


def decimal_arg(value: str) -> Decimal:
    """Parse a decimal option."""
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="stake-scoring",
        description="Validator stake scoring and allocation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  score-epoch  - Fetch, score and persist one epoch
  show-epoch   - Print a persisted epoch

Examples:
  %(prog)s score-epoch --cluster mainnet                  # Score the current epoch
  %(prog)s score-epoch --epoch 512 --dry-run              # Score without persisting
  %(prog)s score-epoch --pct-cap 1.0 --score-max-commission 7
  %(prog)s show-epoch --epoch latest --top 20
        """
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    score = subparsers.add_parser(
        "score-epoch",
        help="Fetch, score and persist one epoch",
    )
    _add_feed_options(score)
    _add_threshold_options(score)
    _add_persistence_options(score)
    _add_logging_options(score)

    score.add_argument(
        "--dry-run",
        action="store_true",
        help="Score and print the summary without writing records",
    )

    score.add_argument(
        "--top",
        type=int,
        default=10,
        metavar="N",
        help="Validators listed in the summary (default: 10)",
    )

    score.add_argument(
        "--show-stages",
        action="store_true",
        help="Show run stages and exit",
    )

    show = subparsers.add_parser(
        "show-epoch",
        help="Print a persisted epoch",
    )
    show.add_argument(
        "--epoch",
        type=str,
        default="latest",
        help="Epoch number or 'latest' (default: latest)",
    )
    show.add_argument(
        "--top",
        type=int,
        default=20,
        metavar="N",
        help="Validators listed (default: 20)",
    )
    _add_persistence_options(show)
    _add_logging_options(show)

    return parser


def _add_feed_options(parser: argparse.ArgumentParser) -> None:
    feed_group = parser.add_argument_group("Feed Options")

    feed_group.add_argument(
        "--cluster",
        type=str,
        choices=[c.value for c in Cluster],
        default=os.getenv("CLUSTER", "mainnet"),
        help="Cluster to score (default: mainnet)",
    )

    feed_group.add_argument(
        "--url",
        type=str,
        default=os.getenv("RPC_URL"),
        metavar="URL",
        help="JSON-RPC URL for the cluster (default: public endpoint)",
    )

    feed_group.add_argument(
        "--epoch",
        type=epoch_arg,
        default=None,
        metavar="EPOCH",
        help="Epoch number or 'current' (default: current)",
    )

    feed_group.add_argument(
        "--scoring-url",
        type=str,
        default=os.getenv("SCORING_FEED_URL"),
        metavar="URL",
        help="External base score feed",
    )

    feed_group.add_argument(
        "--stake-view-url",
        type=str,
        default=os.getenv("STAKE_VIEW_URL"),
        metavar="URL",
        help="Validator enrichment document (APY, data center)",
    )

    feed_group.add_argument(
        "--pool-stake-url",
        type=str,
        default=os.getenv("POOL_STAKE_URL"),
        metavar="URL",
        help="Document with the stake the pool holds",
    )

    feed_group.add_argument(
        "--votes-url",
        type=str,
        default=os.getenv("VOTES_URL"),
        metavar="URL",
        help="Gauge votes document (default: no vote gauges)",
    )

    feed_group.add_argument(
        "--collateral-url",
        type=str,
        default=os.getenv("COLLATERAL_URL"),
        metavar="URL",
        help="Collateral-backed deposits document (default: none)",
    )

    feed_group.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Fetch without probing feed health first",
    )

    feed_group.add_argument(
        "--timeout",
        type=float,
        default=180.0,
        metavar="SECONDS",
        help="Per-request timeout (default: 180)",
    )

    feed_group.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Attempts per remote call (default: 3)",
    )


def _add_threshold_options(parser: argparse.ArgumentParser) -> None:
    threshold_group = parser.add_argument_group(
        "Threshold Options",
        "Unset options keep the environment or profile value",
    )

    threshold_group.add_argument(
        "--profile",
        type=str,
        choices=["default", "conservative"],
        default="default",
        help="Base threshold profile (default: default)",
    )

    threshold_group.add_argument(
        "--min-release-version",
        type=str,
        metavar="SEMVER",
        help="Validators below this release are unstaked",
    )

    threshold_group.add_argument(
        "--max-old-release-version-percentage",
        type=int,
        metavar="PERCENT",
        help="Skip the release rule when more validators run an old release (default: 10)",
    )

    threshold_group.add_argument(
        "--max-poor-voter-percentage",
        type=int,
        metavar="PERCENT",
        help="Note the population when more validators are poor voters (default: 20)",
    )

    threshold_group.add_argument(
        "--max-poor-block-producer-percentage",
        type=int,
        metavar="PERCENT",
        help="Note the population when more validators skip too many blocks (default: 20)",
    )

    threshold_group.add_argument(
        "--max-largest-dc-stake-percent",
        type=decimal_arg,
        metavar="PERCENT",
        help="Abort when the largest data center holds more stake (default: 35)",
    )

    threshold_group.add_argument(
        "--score-max-commission",
        type=int,
        metavar="PERCENT",
        help="Commission above this scores 0 (default: 8)",
    )

    threshold_group.add_argument(
        "--score-min-stake",
        type=decimal_arg,
        metavar="SOL",
        help="Active stake below this scores 0 (default: 100)",
    )

    threshold_group.add_argument(
        "--min-avg-position",
        type=decimal_arg,
        metavar="POSITION",
        help="History average position below this scores 0 (default: 40)",
    )

    threshold_group.add_argument(
        "--concentration-point-discount",
        type=int,
        metavar="POINTS",
        help="Base points removed per unit of data center concentration (default: 0)",
    )

    threshold_group.add_argument(
        "--commission-bonus",
        action="store_true",
        default=None,
        help="Enable the low-commission score bonus",
    )

    threshold_group.add_argument(
        "--pct-cap",
        type=decimal_arg,
        metavar="PERCENT",
        help="Maximum share of the pool per validator (default: 1.5)",
    )

    threshold_group.add_argument(
        "--stake-headroom",
        type=decimal_arg,
        metavar="SOL",
        help="Stake added to the pool total before allocating (default: 100000)",
    )

    threshold_group.add_argument(
        "--history-epochs",
        type=int,
        metavar="N",
        help="Epochs in the rolling history window (default: 10)",
    )

    threshold_group.add_argument(
        "--vote-gauges-stake-pct",
        type=int,
        metavar="PERCENT",
        help="Share of the total score directed by gauge votes (default: 0)",
    )

    threshold_group.add_argument(
        "--stake-from-collateral-max-pct",
        type=decimal_arg,
        metavar="PERCENT",
        help="Pool share reserved for collateral-backed stake (default: 30)",
    )

    threshold_group.add_argument(
        "--min-positive-scores",
        type=int,
        metavar="N",
        help="Abort when fewer validators keep a positive score (default: 0)",
    )


def _add_persistence_options(parser: argparse.ArgumentParser) -> None:
    persistence_group = parser.add_argument_group("Persistence Options")

    persistence_group.add_argument(
        "--db-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy URL (default: DATABASE_URL_SYNC or DATABASE_URL)",
    )


def _add_logging_options(parser: argparse.ArgumentParser) -> None:
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=os.getenv("LOG_FORMAT", "text"),
        help="Logging format (default: text)",
    )


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Args:
        args: Parsed arguments

    Returns:
        List of validation errors
    """
    errors = []

    if args.top < 0:
        errors.append("--top must be non-negative")

    if args.command != "score-epoch":
        if args.epoch != "latest":
            try:
                if int(args.epoch) < 0:
                    errors.append("--epoch must be non-negative")
            except ValueError:
                errors.append("--epoch must be an integer or 'latest'")
        return errors

    if not args.scoring_url and not args.show_stages:
        errors.append("--scoring-url (or SCORING_FEED_URL) is required")

    for name in (
        "max_old_release_version_percentage",
        "max_poor_voter_percentage",
        "max_poor_block_producer_percentage",
        "max_largest_dc_stake_percent",
        "score_max_commission",
        "vote_gauges_stake_pct",
        "stake_from_collateral_max_pct",
    ):
        value = getattr(args, name)
        if value is not None and not 0 <= value <= 100:
            errors.append(f"--{name.replace('_', '-')} must be between 0 and 100")

    if args.pct_cap is not None and not 0 < args.pct_cap <= 100:
        errors.append("--pct-cap must be in (0, 100]")

    if args.score_min_stake is not None and args.score_min_stake < 0:
        errors.append("--score-min-stake must be non-negative")

    if args.stake_headroom is not None and args.stake_headroom < 0:
        errors.append("--stake-headroom must be non-negative")

    if args.history_epochs is not None and args.history_epochs < 1:
        errors.append("--history-epochs must be at least 1")

    if args.min_positive_scores is not None and args.min_positive_scores < 0:
        errors.append("--min-positive-scores must be non-negative")

    if args.timeout <= 0:
        errors.append("--timeout must be positive")

    if args.max_retries < 1:
        errors.append("--max-retries must be at least 1")

    return errors


# ============================================================
# CLI CONFIGURATION BUILDERS
# ============================================================

def build_config(args: argparse.Namespace) -> RunnerConfig:
    """
    Build runner configuration from CLI arguments.

    Args:
        args: Parsed arguments

    Returns:
        RunnerConfig instance
    """
    return RunnerConfig(
        cluster=Cluster(args.cluster),
        rpc_url=args.url,
        scoring_feed_url=args.scoring_url,
        stake_view_url=args.stake_view_url,
        pool_stake_url=args.pool_stake_url,
        votes_url=args.votes_url,
        collateral_url=args.collateral_url,
        check_feeds=not args.skip_health_check,
        request_timeout_seconds=args.timeout,
        max_retries=args.max_retries,
        database_url=args.db_url,
        log_level=args.log_level,
        log_format=args.log_format,
        dry_run=args.dry_run,
    )


def build_scoring_config(args: argparse.Namespace) -> StakeScoringConfig:
    """
    Build the engine configuration.

    Starts from the selected profile (the default profile
    reads the environment) and applies explicit CLI options.
    """
    base = get_conservative_config() if args.profile == "conservative" else StakeScoringConfig.from_env()

    population = base.population
    if args.min_release_version is not None:
        population = replace(population, min_release_version=args.min_release_version)
    if args.max_old_release_version_percentage is not None:
        population = replace(
            population,
            max_old_release_version_percentage=args.max_old_release_version_percentage,
        )
    if args.max_poor_voter_percentage is not None:
        population = replace(population, max_poor_voter_percentage=args.max_poor_voter_percentage)
    if args.max_poor_block_producer_percentage is not None:
        population = replace(
            population,
            max_poor_block_producer_percentage=args.max_poor_block_producer_percentage,
        )
    if args.max_largest_dc_stake_percent is not None:
        population = replace(population, max_largest_dc_stake_percent=args.max_largest_dc_stake_percent)
    if args.stake_headroom is not None:
        population = replace(population, stake_headroom=args.stake_headroom)

    composite = base.composite
    if args.score_max_commission is not None:
        composite = replace(composite, score_max_commission=args.score_max_commission)
    if args.score_min_stake is not None:
        composite = replace(composite, score_min_stake=args.score_min_stake)
    if args.min_avg_position is not None:
        composite = replace(composite, min_avg_position=args.min_avg_position)
    if args.concentration_point_discount is not None:
        composite = replace(composite, concentration_point_discount=args.concentration_point_discount)
    if args.commission_bonus:
        composite = replace(composite, commission_bonus_enabled=True)

    capping = base.capping
    if args.pct_cap is not None:
        capping = replace(capping, pct_cap=args.pct_cap)

    history = base.history
    if args.history_epochs is not None:
        history = replace(history, history_epochs=args.history_epochs)

    directed = base.directed
    if args.vote_gauges_stake_pct is not None:
        directed = replace(directed, vote_gauges_stake_pct=args.vote_gauges_stake_pct)
    if args.stake_from_collateral_max_pct is not None:
        directed = replace(directed, stake_from_collateral_max_pct=args.stake_from_collateral_max_pct)

    min_positive_scores = base.min_positive_scores
    if args.min_positive_scores is not None:
        min_positive_scores = args.min_positive_scores

    return replace(
        base,
        population=population,
        composite=composite,
        capping=capping,
        history=history,
        directed=directed,
        min_positive_scores=min_positive_scores,
    )


# ============================================================
# SHOW STAGES
# ============================================================

def show_stages(dry_run: bool, check_feeds: bool = True) -> None:
    """Print run stages."""
    print(f"\nRun stages{' (dry run)' if dry_run else ''}")
    print("=" * 60)

    for i, stage in enumerate(RunStage.get_ordered_stages(dry_run, check_feeds), 1):
        print(f"  {i:2d}. [{stage.order:02d}] {stage.stage_id:20s} - {stage.description}")

    print()


# ============================================================
# COMMANDS
# ============================================================

def format_removals(result: EpochScoringResult, limit: int = 10) -> str:
    """Unstake decisions grouped by remove level, healthy validators counted only."""
    lines = ["Remove levels:"]
    for label, addresses in removal_summary(result).items():
        line = f"  {label:<17} {len(addresses):>5}"
        if label != RemoveLevel.NONE.label and addresses:
            line += "  " + ", ".join(addresses[:limit])
            if len(addresses) > limit:
                line += f" (+{len(addresses) - limit} more)"
        lines.append(line)
    return "\n".join(lines)


async def async_main(args: argparse.Namespace) -> int:
    """
    Run the score-epoch command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    config = build_config(args)
    runner = EpochRunner(config, scoring_config=build_scoring_config(args))

    result = await runner.run(args.epoch)

    if result.scoring is not None:
        print(format_epoch_summary(result.scoring, top=args.top))
        print(format_removals(result.scoring))

    if result.success:
        action = "scored (dry run, not persisted)" if config.dry_run else f"persisted ({result.rows_persisted} rows)"
        print(f"Epoch {result.epoch} {action}")
    else:
        stage = result.failed_stage.stage_id if result.failed_stage else "startup"
        print(f"Error: run failed at {stage}: {result.error}", file=sys.stderr)

    return int(result.exit_code)


def show_epoch(args: argparse.Namespace) -> int:
    """
    Run the show-epoch command.

    Returns:
        Exit code
    """
    try:
        if args.db_url:
            configure_database(args.db_url)
        initialize_database()

        with transaction_scope() as session:
            repository = ValidatorScoreRepository(session)
            epoch = repository.latest_epoch() if args.epoch == "latest" else int(args.epoch)
            records = repository.get_epoch(epoch) if epoch is not None else []
    except DatabasePersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return int(ExitCode.PERSISTENCE)

    if not records:
        print(f"No records for epoch {args.epoch}", file=sys.stderr)
        return int(ExitCode.USAGE)

    print("=" * 60)
    print(f"  EPOCH {epoch} - {len(records)} validators")
    print("=" * 60)
    for record in records[: args.top]:
        print(
            f"  #{record.rank:<4} {record.vote_address:<44} score={record.score:<8} "
            f"pct={record.pct} {record.remove_level.label}"
        )
    print("=" * 60)
    return int(ExitCode.OK)


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "score-epoch" and args.show_stages:
        show_stages(args.dry_run, not args.skip_health_check)
        return int(ExitCode.OK)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return int(ExitCode.USAGE)

    setup_logging(args.log_level, args.log_format)

    if args.command == "show-epoch":
        return show_epoch(args)

    print_banner(args)

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return int(ExitCode.USAGE)


def print_banner(args: argparse.Namespace) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print("  STAKE SCORING ENGINE")
    print("  Validator Stake Allocation")
    print("=" * 60)
    print(f"  Cluster:    {args.cluster}")
    print(f"  Epoch:      {args.epoch if args.epoch is not None else 'current'}")
    print(f"  RPC URL:    {args.url or Cluster(args.cluster).default_rpc_url}")
    print(f"  Dry Run:    {args.dry_run}")
    print(f"  Profile:    {args.profile}")
    print(f"  Log Level:  {args.log_level}")
    print("=" * 60)
    print()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
