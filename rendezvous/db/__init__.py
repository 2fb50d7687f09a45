"""PostgreSQL backend (psycopg 3, async)."""

from rendezvous.db.availability import PostgresAvailabilityStore
from rendezvous.db.core import close_pool, get_pool, get_pool_stats, init_pool
from rendezvous.db.events import PostgresEventStore

__all__ = [
    "PostgresAvailabilityStore",
    "PostgresEventStore",
    "close_pool",
    "get_pool",
    "get_pool_stats",
    "init_pool",
]
