"""
One-shot sweep of every open event.

Expires events whose deadline has passed and re-checks the rest, exactly as
the background sweeper does on each cycle. Meant for cron or an external
scheduler when the in-process sweeper is disabled (ENABLE_SWEEPER=0).

Example cron entry:
    */5 * * * * cd /app && python -m rendezvous.batch.sweep

Usage:
    python -m rendezvous.batch.sweep [--dry-run]

Arguments:
    --dry-run   Evaluate open events and log the decisions without committing
"""

import argparse
import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from rendezvous.engine import AvailabilitySnapshot
from rendezvous.lifespan import LifespanResources, cleanup_resources, setup_resources
from rendezvous.models import EventStatus, MatchDecision

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


async def preview_open_events(resources: LifespanResources) -> list[MatchDecision]:
    """Evaluate every open event against current availability without writing."""
    controller = resources.controller
    now = controller.clock()
    decisions = []
    for event in await resources.events.list_by_status(EventStatus.OPEN):
        records = await resources.availability.get_by_users_in_range(
            event.participants, event.period_start, event.period_end
        )
        decision = controller.engine.evaluate(event, AvailabilitySnapshot.from_records(records), now)
        logger.info(
            "[DRY RUN] %s: would %s (%s)",
            event.id,
            decision.transition.value if decision.transition else "stay open",
            decision.reason,
        )
        decisions.append(decision)
    return decisions


async def run_batch_job(dry_run: bool = False) -> dict[str, Any]:
    """
    Run one sweep and return a summary.

    Args:
        dry_run: If True, evaluate but don't commit transitions
    """
    started = datetime.now(UTC)
    logger.info("Starting sweep batch job (dry_run=%s)", dry_run)

    resources = await setup_resources(start_background=False)
    try:
        if dry_run:
            decisions = await preview_open_events(resources)
        else:
            decisions = await resources.controller.sweep()
        stats = await resources.controller.get_stats()
    finally:
        await cleanup_resources(resources)

    summary = {
        "job_started_at": started.isoformat(),
        "job_completed_at": datetime.now(UTC).isoformat(),
        "dry_run": dry_run,
        "events_checked": len(decisions),
        "matched": sum(1 for d in decisions if d.transition is EventStatus.MATCHED),
        "expired": sum(1 for d in decisions if d.transition is EventStatus.EXPIRED),
        "stats": stats,
    }
    logger.info("Sweep batch job completed: %s", summary)
    return summary


def main() -> None:
    """CLI entry point for the batch job."""
    parser = argparse.ArgumentParser(
        description="Expire overdue events and re-check open events.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate open events without committing transitions",
    )
    args = parser.parse_args()

    asyncio.run(run_batch_job(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
