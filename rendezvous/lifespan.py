"""Startup and shutdown of the matching service's shared resources.

The external layer (HTTP app, worker, batch job) calls ``setup_resources()``
once and ``cleanup_resources()`` on exit. Everything the lifecycle controller
needs is injected from here; nothing is kept in module globals.
"""

import asyncio
import logging
from dataclasses import dataclass, field

import redis.asyncio as redis
from redis.asyncio import BlockingConnectionPool as RedisConnectionPool

from rendezvous import db
from rendezvous.bus import DecisionBus
from rendezvous.config import get_settings
from rendezvous.engine import MatchingEngine
from rendezvous.lifecycle import LifecycleController
from rendezvous.stores import (
    AvailabilityStore,
    EventStore,
    InMemoryAvailabilityStore,
    InMemoryEventStore,
)
from rendezvous.sweeper import start_sweeper

logger = logging.getLogger(__name__)


@dataclass
class LifespanResources:
    """Container for resources initialized during startup."""

    events: EventStore | None = None
    availability: AvailabilityStore | None = None
    controller: LifecycleController | None = None
    redis_client: redis.Redis | None = None
    decision_bus: DecisionBus | None = None
    stop_event: asyncio.Event | None = None
    background_tasks: list[asyncio.Task] = field(default_factory=list)
    db_enabled: bool = False


async def init_redis() -> redis.Redis:
    """Initialize a Redis client with a blocking connection pool."""
    settings = get_settings()

    redis_pool = RedisConnectionPool(
        host=settings.redis.host,
        port=settings.redis.port,
        password=settings.redis.password if settings.redis.password else None,
        max_connections=settings.redis.max_connections,
        timeout=settings.redis.pool_timeout_sec,
        socket_timeout=settings.redis.socket_timeout,
    )
    return redis.Redis(connection_pool=redis_pool, decode_responses=True)


async def init_stores() -> tuple[EventStore, AvailabilityStore, bool]:
    """Build the configured storage backend.

    Returns:
        (event store, availability store, whether the database pool was opened)
    """
    backend = get_settings().storage.backend
    if backend == "postgres":
        await db.init_pool()
        return db.PostgresEventStore(), db.PostgresAvailabilityStore(), True
    return InMemoryEventStore(), InMemoryAvailabilityStore(), False


async def setup_resources(start_background: bool = True) -> LifespanResources:
    """Set up stores, the decision bus, the controller and the sweeper.

    Args:
        start_background: Whether to start the periodic sweeper task.
    """
    settings = get_settings()
    if settings.debug.matching:
        logging.getLogger("rendezvous.engine").setLevel(logging.DEBUG)
        logging.getLogger("rendezvous.lifecycle").setLevel(logging.DEBUG)

    resources = LifespanResources()
    resources.events, resources.availability, resources.db_enabled = await init_stores()

    if settings.features.decision_bus:
        resources.redis_client = await init_redis()
        resources.decision_bus = DecisionBus(resources.redis_client)

    resources.controller = LifecycleController(
        resources.events,
        resources.availability,
        engine=MatchingEngine(),
        bus=resources.decision_bus,
    )

    if start_background:
        resources.stop_event = asyncio.Event()
        resources.background_tasks = await start_sweeper(resources.controller, resources.stop_event)

    logger.info(
        "Resources ready backend=%s decision_bus=%s background_tasks=%d",
        settings.storage.backend,
        resources.decision_bus is not None,
        len(resources.background_tasks),
    )
    return resources


async def cleanup_resources(resources: LifespanResources) -> None:
    """Stop background tasks and close connections."""
    if resources.background_tasks and resources.stop_event:
        resources.stop_event.set()
        try:
            await asyncio.wait_for(
                asyncio.gather(*resources.background_tasks, return_exceptions=True),
                timeout=5,
            )
        except asyncio.TimeoutError:
            for t in resources.background_tasks:
                t.cancel()

    if resources.db_enabled:
        try:
            await db.close_pool()
        except Exception:
            logger.warning("Failed to close database pool", exc_info=True)

    if resources.redis_client:
        await resources.redis_client.aclose()

    resources.background_tasks = []
    resources.controller = None
    resources.decision_bus = None
    resources.redis_client = None
