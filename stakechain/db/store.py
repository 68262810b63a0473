"""
Event Store Abstraction

This module defines the EventStore interface and provides two implementations:
- InMemoryEventStore: For development and testing
- PostgresEventStore: For production with full durability and concurrency safety

One store holds ONE chain (stake or reward) and accepts only that chain's
event type. It is the event/log sink: indexers read history from it to
assemble claim windows.

The EventStore is responsible for:
- Atomic append with sequence number and previous hash assignment
- Ordering and durability guarantees
- Chain head management (single source of truth for the head)

The ledgers retain responsibility for:
- Amount and balance rules
- Custody calls
- Building the event

TRANSACTION CONTRACT:
All append operations MUST use the begin_append() context manager:

    with store.begin_append() as ctx:
        seq, prev_hash = ctx.head.next_sequence, ctx.head.last_hash
        # ... build and hash the event ...
        ctx.commit(event)

The context holds the chain's lock from entry to exit (a mutex in memory,
a FOR UPDATE row lock in PostgreSQL). That lock is the single sequence
point for the whole chain, across all accounts.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Generator, Optional, Union

import psycopg2

from ..core.errors import ChainError
from ..core.hasher import Hasher
from ..schemas.events import RewardEvent, StakeEvent, ZERO_HASH, normalize_hash

logger = logging.getLogger(__name__)

Event = Union[StakeEvent, RewardEvent]


# ============================================================
# EXCEPTIONS
# ============================================================

class EventStoreError(Exception):
    """Base exception for event store errors."""
    pass


class ConcurrencyError(EventStoreError):
    """Raised when the head moved under a locked append."""
    pass


class LockTimeoutError(EventStoreError):
    """Raised when the chain head lock cannot be acquired in time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current state of the chain head.

    This is what gets locked during atomic append.
    """
    last_sequence: int = -1  # -1 means empty chain
    last_hash: str = ZERO_HASH  # genesis until the first append
    last_timestamp: Optional[int] = None

    @property
    def next_sequence(self) -> int:
        """Get the next sequence number to assign."""
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        """Check if the chain is empty."""
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for atomic append operations.

    It ensures commit/rollback happens on the SAME lock (and, for
    PostgreSQL, the same connection) that produced the head.

    Usage:
        with store.begin_append() as ctx:
            event = build_event(ctx.head.next_sequence, ctx.head.last_hash, ...)
            ctx.commit(event)
    """
    head: ChainHead
    _store: "EventStore"
    _conn: Any = None
    _cursor: Any = None
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    @property
    def committed(self) -> bool:
        return self._committed

    def commit(self, event: Event) -> Event:
        """
        Commit the event within this transaction context.

        Raises:
            ChainError: If the event does not extend the locked head
        """
        if self._committed:
            raise EventStoreError("Transaction already committed")
        if self._rolled_back:
            raise EventStoreError("Transaction already rolled back")

        self._store._validate_append(self.head, event)
        result = self._store._do_commit(self, event)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly abandon this append."""
        if not self._committed:
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EventStore(ABC):
    """
    Abstract base class for chain event storage.

    Implementations must ensure:
    1. Atomic append: begin_append holds one lock until exit
    2. No gaps in sequence numbers
    3. No duplicate sequence numbers
    4. Chain linkage is always correct
    5. Only events of the store's own type are accepted
    """

    def __init__(self, event_type: type):
        if event_type not in (StakeEvent, RewardEvent):
            raise ValueError(f"Unsupported event type: {event_type!r}")
        self._event_type = event_type

    @property
    def event_type(self) -> type:
        """The event class this store's chain is made of."""
        return self._event_type

    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Begin an atomic append; yields an AppendContext holding the lock."""
        pass

    def _validate_append(self, head: ChainHead, event: Event) -> None:
        """
        Validate an event can be appended at the locked head.

        Prevents out-of-order injection even when called directly.
        """
        if type(event) is not self._event_type:
            raise ChainError(
                f"Wrong event type for this chain. "
                f"Expected {self._event_type.__name__}, got {type(event).__name__}."
            )

        if event.sequence_number != head.next_sequence:
            raise ChainError(
                f"Event sequence number mismatch. "
                f"Expected {head.next_sequence}, got {event.sequence_number}. "
                f"Events cannot be injected out of order."
            )

        if event.previous_hash != head.last_hash:
            raise ChainError(
                f"Chain linkage broken. Event claims previous hash "
                f"'{event.previous_hash[:18]}...' but chain head is "
                f"'{head.last_hash[:18]}...'."
            )

        computed = Hasher.hash_event(event)
        if computed != event.current_hash:
            raise ChainError(
                f"Event hash verification failed. "
                f"Computed: {computed[:18]}..., "
                f"Claimed: {event.current_hash[:18]}..."
            )

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, event: Event) -> Event:
        """Internal: persist a validated event. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Get current chain head without locking."""
        pass

    @abstractmethod
    def list_all(self) -> list[Event]:
        """Return all events ordered by sequence."""
        pass

    @abstractmethod
    def find(self, current_hash: str) -> Optional[Event]:
        """Look up an event by its node hash."""
        pass

    @abstractmethod
    def list_range(
        self,
        from_hash: Optional[str] = None,
        to_hash: Optional[str] = None,
    ) -> list[Event]:
        """
        Return the contiguous slice between two node hashes, both inclusive.

        Missing bounds default to the chain's first and last event.

        Raises:
            EventStoreError: If a bound is unknown or the bounds are reversed
        """
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        """Get total number of events in the store."""
        pass

    def contains(self, current_hash: str) -> bool:
        return self.find(current_hash) is not None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEventStore(EventStore):
    """
    In-memory implementation of EventStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    """

    def __init__(self, event_type: type):
        super().__init__(event_type)
        self._events: list[Event] = []
        self._by_hash: dict[str, int] = {}
        self._head = ChainHead()
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append operation.

        This context manager:
        1. Acquires the chain lock
        2. Returns an AppendContext with a copy of the current head
        3. Releases the lock on exit, committed or not
        """
        with self._lock:
            ctx = AppendContext(head=self.get_head(), _store=self)
            try:
                yield ctx
            except Exception:
                ctx.rollback()
                raise

    def _do_commit(self, ctx: AppendContext, event: Event) -> Event:
        self._by_hash[event.current_hash] = len(self._events)
        self._events.append(event)
        self._head = ChainHead(
            last_sequence=event.sequence_number,
            last_hash=event.current_hash,
            last_timestamp=event.timestamp,
        )
        return event

    def get_head(self) -> ChainHead:
        head = self._head
        return ChainHead(
            last_sequence=head.last_sequence,
            last_hash=head.last_hash,
            last_timestamp=head.last_timestamp,
        )

    def list_all(self) -> list[Event]:
        return list(self._events)

    def find(self, current_hash: str) -> Optional[Event]:
        index = self._by_hash.get(normalize_hash(current_hash))
        return self._events[index] if index is not None else None

    def list_range(
        self,
        from_hash: Optional[str] = None,
        to_hash: Optional[str] = None,
    ) -> list[Event]:
        start = 0
        end = len(self._events) - 1
        if from_hash is not None:
            index = self._by_hash.get(normalize_hash(from_hash))
            if index is None:
                raise EventStoreError(f"Unknown event hash {from_hash}")
            start = index
        if to_hash is not None:
            index = self._by_hash.get(normalize_hash(to_hash))
            if index is None:
                raise EventStoreError(f"Unknown event hash {to_hash}")
            end = index
        if end < start:
            raise EventStoreError("Range end precedes range start")
        return self._events[start:end + 1]

    def get_event_count(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        """Clear all events (for testing only)."""
        with self._lock:
            self._events.clear()
            self._by_hash.clear()
            self._head = ChainHead()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

# Chain name per event type; also the table prefix and the head row key
CHAIN_NAMES = {StakeEvent: "stake", RewardEvent: "reward"}

_SQL_TYPES = {
    "address": "CHAR(42)",
    "bool": "BOOLEAN",
    "uint256": "NUMERIC(78, 0)",
}

HEADS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS chain_heads (
    chain TEXT PRIMARY KEY,
    last_sequence BIGINT NOT NULL,
    last_hash CHAR(66) NOT NULL,
    last_timestamp NUMERIC(78, 0)
)
"""


def event_table(event_type: type) -> str:
    """Name of the table holding one chain's events."""
    return f"{CHAIN_NAMES[event_type]}_chain_events"


def event_columns(event_type: type) -> tuple[str, ...]:
    """Column order used for both INSERT and SELECT."""
    fields = tuple(name for name, _ in event_type.PACKED_LAYOUT)
    return ("sequence_number",) + fields + ("previous_hash", "current_hash")


def create_table_sql(event_type: type) -> str:
    """DDL for one chain's event table, derived from its packed layout."""
    lines = ["    sequence_number BIGINT PRIMARY KEY"]
    for name, packed_type in event_type.PACKED_LAYOUT:
        lines.append(f"    {name} {_SQL_TYPES[packed_type]} NOT NULL")
    lines.append("    previous_hash CHAR(66) NOT NULL")
    lines.append("    current_hash CHAR(66) NOT NULL UNIQUE")
    body = ",\n".join(lines)
    return f"CREATE TABLE IF NOT EXISTS {event_table(event_type)} (\n{body}\n)"


class PostgresEventStore(EventStore):
    """
    PostgreSQL implementation of EventStore.

    Provides:
    - Full ACID guarantees
    - Concurrency safety via FOR UPDATE row locking on the chain's head row
    - Durability (events survive restarts)
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    Layout: one events table per chain (stake_chain_events,
    reward_chain_events) and one shared chain_heads table keyed by chain.

    THREAD SAFETY:
    All transaction state (conn, cursor) is stored in AppendContext, NOT on
    the store. The same store instance can be shared across threads.

    Usage:
        store = PostgresEventStore(lambda: psycopg2.connect(dsn), StakeEvent)
        store.ensure_schema()

        with store.begin_append() as ctx:
            ctx.commit(event)
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # PostgreSQL error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        event_type: type,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL event store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection
            event_type: StakeEvent or RewardEvent
            lock_timeout_ms: How long to wait for the head row lock (ms)
            statement_timeout_ms: Max statement execution time (ms)
        """
        super().__init__(event_type)
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms
        self._chain = CHAIN_NAMES[event_type]
        self._table = event_table(event_type)
        self._columns = event_columns(event_type)
        self._uint_columns = frozenset(
            name for name, packed in event_type.PACKED_LAYOUT if packed == "uint256"
        )

    @property
    def chain(self) -> str:
        return self._chain

    @contextmanager
    def _read(self) -> Generator[Any, None, None]:
        """Short-lived connection and cursor for a read."""
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def ensure_schema(self) -> None:
        """Create the heads table and this chain's events table if missing."""
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(HEADS_TABLE_SQL)
            cursor.execute(create_table_sql(self._event_type))
            conn.commit()
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def _select_head(self, cursor: Any, lock: bool) -> Optional[tuple]:
        cursor.execute(
            "SELECT last_sequence, last_hash, last_timestamp "
            "FROM chain_heads WHERE chain = %s" + (" FOR UPDATE" if lock else ""),
            (self._chain,),
        )
        return cursor.fetchone()

    @staticmethod
    def _row_to_head(row: Optional[tuple]) -> ChainHead:
        if row is None:
            return ChainHead()
        return ChainHead(
            last_sequence=row[0],
            last_hash=row[1],
            last_timestamp=int(row[2]) if row[2] is not None else None,
        )

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin atomic append with FOR UPDATE lock on the chain's head row.

        The connection and transaction are scoped to this context manager,
        so the head read and the commit are ALWAYS on the same connection.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute("BEGIN")

            # SET LOCAL keeps timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            try:
                row = self._select_head(cursor, lock=True)
            except psycopg2.Error as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        f"{self._chain} chain busy - could not acquire lock. Try again."
                    ) from e
                if kind == "statement":
                    raise EventStoreError("Query timed out - statement took too long.") from e
                raise

            if row is None:
                # First append on this chain: create its head row
                cursor.execute(
                    "INSERT INTO chain_heads (chain, last_sequence, last_hash, last_timestamp) "
                    "VALUES (%s, -1, %s, NULL) ON CONFLICT (chain) DO NOTHING",
                    (self._chain, ZERO_HASH),
                )
                row = self._select_head(cursor, lock=True)

            ctx = AppendContext(
                head=self._row_to_head(row), _store=self, _conn=conn, _cursor=cursor
            )
            yield ctx

        finally:
            if ctx is None or not ctx.committed:
                try:
                    conn.rollback()
                except psycopg2.Error as e:
                    logger.warning(
                        "Rollback failed",
                        extra={"chain": self._chain, "error": str(e)},
                    )
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL error as a lock or statement timeout.

        PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout; the message tells them apart. 55P03 means the
        row lock was not available.
        """
        pgcode = getattr(e, "pgcode", None)
        message = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in message or "lock_timeout" in message:
                return "lock"
            if "statement timeout" in message or "statement_timeout" in message:
                return "statement"
            return "timeout"
        return None

    def _do_commit(self, ctx: AppendContext, event: Event) -> Event:
        """Insert the event and move the head within the locked transaction."""
        if ctx._cursor is None or ctx._conn is None:
            raise EventStoreError("_do_commit called outside begin_append context")

        cursor = ctx._cursor

        # Re-read the locked head
        head = self._row_to_head(self._select_head(cursor, lock=False))
        if event.sequence_number != head.next_sequence or event.previous_hash != head.last_hash:
            raise ConcurrencyError(
                f"{self._chain} chain head moved: expected sequence {head.next_sequence} "
                f"on '{head.last_hash[:18]}...'. State changed unexpectedly."
            )

        placeholders = ", ".join(["%s"] * len(self._columns))
        cursor.execute(
            f"INSERT INTO {self._table} ({', '.join(self._columns)}) VALUES ({placeholders})",
            tuple(getattr(event, name) for name in self._columns),
        )
        cursor.execute(
            "UPDATE chain_heads SET last_sequence = %s, last_hash = %s, last_timestamp = %s "
            "WHERE chain = %s",
            (event.sequence_number, event.current_hash, event.timestamp, self._chain),
        )

        ctx._conn.commit()
        return event

    def _row_to_event(self, row: tuple) -> Event:
        """Convert a database row to an event. NUMERIC columns come back as Decimal."""
        values = {}
        for name, value in zip(self._columns, row):
            if name in self._uint_columns and isinstance(value, Decimal):
                value = int(value)
            values[name] = value
        return self._event_type(**values)

    def _select_sql(self, where: str = "") -> str:
        return (
            f"SELECT {', '.join(self._columns)} FROM {self._table}"
            f"{' WHERE ' + where if where else ''} ORDER BY sequence_number"
        )

    def get_head(self) -> ChainHead:
        with self._read() as cursor:
            return self._row_to_head(self._select_head(cursor, lock=False))

    def list_all(self) -> list[Event]:
        with self._read() as cursor:
            cursor.execute(self._select_sql())
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def find(self, current_hash: str) -> Optional[Event]:
        with self._read() as cursor:
            cursor.execute(self._select_sql("current_hash = %s"), (normalize_hash(current_hash),))
            row = cursor.fetchone()
        return self._row_to_event(row) if row is not None else None

    def _sequence_of(self, cursor: Any, current_hash: str) -> int:
        cursor.execute(
            f"SELECT sequence_number FROM {self._table} WHERE current_hash = %s",
            (normalize_hash(current_hash),),
        )
        row = cursor.fetchone()
        if row is None:
            raise EventStoreError(f"Unknown event hash {current_hash}")
        return row[0]

    def list_range(
        self,
        from_hash: Optional[str] = None,
        to_hash: Optional[str] = None,
    ) -> list[Event]:
        with self._read() as cursor:
            start = self._sequence_of(cursor, from_hash) if from_hash is not None else 0
            if to_hash is not None:
                end = self._sequence_of(cursor, to_hash)
                if end < start:
                    raise EventStoreError("Range end precedes range start")
                cursor.execute(
                    self._select_sql("sequence_number BETWEEN %s AND %s"), (start, end)
                )
            else:
                cursor.execute(self._select_sql("sequence_number >= %s"), (start,))
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_event_count(self) -> int:
        with self._read() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM {self._table}")
            return cursor.fetchone()[0]
