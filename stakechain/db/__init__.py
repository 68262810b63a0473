"""
Storage Layer for the StakeChain ledgers

Provides:
- EventStore abstraction (one store per chain)
- InMemoryEventStore for dev/tests, PostgresEventStore for production
- Environment-based configuration
"""

from .store import (
    ChainHead,
    ConcurrencyError,
    EventStore,
    EventStoreError,
    InMemoryEventStore,
    LockTimeoutError,
    PostgresEventStore,
)
from .config import DatabaseConfig, EventStoreDriver, StoreConfig

__all__ = [
    "ChainHead",
    "ConcurrencyError",
    "EventStore",
    "EventStoreError",
    "InMemoryEventStore",
    "LockTimeoutError",
    "PostgresEventStore",
    "DatabaseConfig",
    "EventStoreDriver",
    "StoreConfig",
]
