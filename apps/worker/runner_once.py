"""
Worker runner (one-shot mode for cron jobs).
Drains the render queue and exits.
"""
import logging
import sys
import os
import time

# Add project root to path
sys.path.append(os.getcwd())

from apps.worker.runner import drain
from packages.db.database import init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Process every available render job and exit."""
    logger.info("Render worker (one-shot) started. Looking for queued documents...")
    init_db()

    start = time.monotonic()
    outcomes = drain(max_jobs=int(os.getenv("WORKER_MAX_JOBS", "100")))
    elapsed = time.monotonic() - start

    if not outcomes:
        logger.info("No render jobs available. Exiting.")
        sys.exit(0)

    summary = {outcome: outcomes.count(outcome) for outcome in sorted(set(outcomes))}
    logger.info(f"Processed {len(outcomes)} render job(s) in {elapsed:.1f}s: {summary}")


if __name__ == "__main__":
    main()
