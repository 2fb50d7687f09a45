"""Background sweep loop.

Calls ``LifecycleController.sweep()`` every ``SWEEP_INTERVAL_SEC`` seconds
(plus up to ``SWEEP_JITTER_SEC`` of random delay) until the stop event is set.
"""

import asyncio
import logging
import random

from rendezvous.config import get_settings
from rendezvous.lifecycle import LifecycleController

logger = logging.getLogger(__name__)


def _next_delay(interval: float, jitter: float) -> float:
    if jitter <= 0:
        return interval
    return interval + random.uniform(0, jitter)


async def run_sweeper(
    controller: LifecycleController,
    stop_event: asyncio.Event,
    interval: float | None = None,
    jitter: float | None = None,
) -> None:
    settings = get_settings()
    interval = settings.sweeper.interval_sec if interval is None else interval
    jitter = settings.sweeper.jitter_sec if jitter is None else jitter
    logger.info("Sweeper started interval=%ss jitter=%ss", interval, jitter)

    while not stop_event.is_set():
        try:
            await controller.sweep()
        except Exception:
            logger.exception("Sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=_next_delay(interval, jitter))
            break
        except asyncio.TimeoutError:
            pass

    logger.info("Sweeper stopped")


async def start_sweeper(controller: LifecycleController, stop_event: asyncio.Event) -> list[asyncio.Task]:
    if not get_settings().features.sweeper:
        logger.info("ENABLE_SWEEPER not set; skipping sweeper")
        return []
    return [asyncio.create_task(run_sweeper(controller, stop_event))]
