#!/usr/bin/env python3
"""
Stake Scoring Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the engine.

- Runs one epoch per invocation and exits
- Exit code tells the scheduler what failed
- Safe to re-run: an epoch's records are replaced as a whole

============================================================
USAGE
============================================================
Direct execution:
    python app.py score-epoch --cluster mainnet

Scheduled once per epoch (cron, systemd timer, PM2 cron_restart):
    pm2 start app.py --interpreter python --name stake-scoring \\
        --cron-restart "0 */6 * * *" --no-autorestart -- score-epoch

Environment-based configuration:
    SCORING_FEED_URL=https://... DATABASE_URL=postgresql://... python app.py score-epoch

============================================================
EXIT CODES
============================================================
0 success, 1 usage, 2 data source, 3 scoring, 4 persistence

============================================================
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
