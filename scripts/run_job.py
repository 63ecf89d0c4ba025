#!/usr/bin/env python3
"""
CarePath - Batch Job Runner
Runs one scheduling worker from cron; the exit code reports success
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carepath.config import settings
from carepath.database import session_scope, wait_for_database
from carepath.services.capacity_rebalancer import run_rebalance
from carepath.services.expiry import run_hold_expiry, run_intent_expiry
from carepath.services.outbox import drain_scheduling_events
from carepath.services.pathway_analytics import calibrate_pathway_analytics

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("carepath.run_job")


def _hold_expiry(session, args):
    result = run_hold_expiry(session)
    return result.model_dump(), result.errors


def _intent_expiry(session, args):
    return {"expired": run_intent_expiry(session)}, []


def _rebalance(session, args):
    result = run_rebalance(session, job_run_id=args.run_id)
    return result.model_dump(), result.errors


def _outbox_drain(session, args):
    result = drain_scheduling_events(session, batch_size=args.batch_size)
    return result.model_dump(), result.errors


def _analytics_calibration(session, args):
    result = calibrate_pathway_analytics(session)
    return result.model_dump(), result.errors


JOBS = {
    "hold-expiry": _hold_expiry,
    "intent-expiry": _intent_expiry,
    "rebalance": _rebalance,
    "outbox-drain": _outbox_drain,
    "analytics-calibration": _analytics_calibration,
}


def run(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one CarePath scheduling worker")
    parser.add_argument("job", choices=sorted(JOBS))
    parser.add_argument("--run-id", default=None, help="job run id recorded in audit rows")
    parser.add_argument("--batch-size", type=int, default=None, help="outbox batch size")
    args = parser.parse_args(argv)

    try:
        wait_for_database()
        with session_scope() as session:
            summary, errors = JOBS[args.job](session, args)
    except Exception as e:
        logger.error(f"✗ Job {args.job} failed: {e}", exc_info=True)
        return 1

    logger.info(f"Job {args.job} finished: {summary}")
    if errors:
        logger.error(f"✗ Job {args.job} reported {len(errors)} errors")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
