"""
Orchestrator Package - Epoch Coordination Layer.

============================================================
PACKAGE OVERVIEW
============================================================
This package runs the stake scoring engine once per epoch.
It is the SINGLE ENTRYPOINT that wires feeds, engine and
store, and turns failures into exit codes.

============================================================
CORE PRINCIPLES
============================================================
1. The orchestrator has NO scoring logic
2. It does NOT modify engine output
3. Nothing is persisted after a failed stage
4. It ONLY coordinates execution

============================================================
RUN STAGES (in strict order)
============================================================
 1. FETCH_CHAIN   - Chain telemetry and pool stake
 2. FETCH_SCORES  - External base scores (concurrent with 1)
 3. LOAD_HISTORY  - Rolling history averages
 4. SCORE         - Scoring and allocation pass
 5. PERSIST       - Replace the epoch's records (skipped on --dry-run)

============================================================
USAGE
============================================================
    from orchestrator import EpochRunner, RunnerConfig

    config = RunnerConfig.from_env()
    result = await EpochRunner(config).run(epoch=None)
    sys.exit(int(result.exit_code))

============================================================
"""

from .models import (
    EpochRunResult,
    ExitCode,
    RunStage,
    RunnerConfig,
    StageResult,
)

from .core import (
    EpochRunner,
    run_epoch,
    setup_logging,
)

from .cli import (
    create_parser,
    validate_args,
    build_config,
    build_scoring_config,
    main,
)


__all__ = [
    # Models
    "EpochRunResult",
    "ExitCode",
    "RunStage",
    "RunnerConfig",
    "StageResult",
    # Core
    "EpochRunner",
    "run_epoch",
    "setup_logging",
    # CLI
    "create_parser",
    "validate_args",
    "build_config",
    "build_scoring_config",
    "main",
]
