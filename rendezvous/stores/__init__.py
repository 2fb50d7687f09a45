from rendezvous.stores.base import AvailabilityStore, EventStore, EventTransaction
from rendezvous.stores.memory import InMemoryAvailabilityStore, InMemoryEventStore

__all__ = [
    "AvailabilityStore",
    "EventStore",
    "EventTransaction",
    "InMemoryAvailabilityStore",
    "InMemoryEventStore",
]
