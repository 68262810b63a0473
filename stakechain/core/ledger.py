"""
Ledger Services - The Heart of the System

Two append-only ledgers, each a hash chain:
- StakeLedger: stake/unstake actions of ALL accounts on ONE shared chain
- RewardLedger: pooled reward additions, no per-account fan-out

Nothing is "edited". Things happen.

Rules (enforced in code):
- Amounts are positive 256-bit integers
- Unstake never exceeds the account's staked balance
- Custody moves tokens in the same atomic unit as the chain append
- Timestamps never go backwards (unless explicitly disabled)

ARCHITECTURE NOTE:
Storage is delegated to an EventStore (one per chain).
- Ledgers: amount rules, custody, per-account projections
- EventStore: atomic append, ordering, head, durability

Each append runs inside store.begin_append(). The store's lock is the
single sequence point for the chain: any account's append depends on the
GLOBAL previous head, so there are no per-account locks.
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple, Optional

from ..schemas.events import (
    UINT256_MAX,
    ZERO_HASH,
    RewardEvent,
    StakeEvent,
    normalize_address,
)
from .clock import Clock, SystemClock
from .config import LedgerConfig
from .custody import Custody, InMemoryCustody
from .errors import (
    ChainIntegrityError,
    InsufficientStake,
    InvalidAccount,
    InvalidAmount,
    InvalidTimestamp,
    NonMonotonicTimestamp,
)
from .hasher import Hasher
from .verifier import verify_links, verify_reward_totals, verify_stake_totals

if TYPE_CHECKING:
    from ..db.store import ChainHead, EventStore

logger = logging.getLogger(__name__)


@dataclass
class AccountStake:
    """
    Cached per-account state.

    chain_snapshot points into the SHARED chain: it is the hash of the node
    produced by this account's most recent action. Created on first stake
    and kept forever, even when the balance returns to zero.
    """
    total_user_stake: int = 0
    chain_snapshot: str = ZERO_HASH


class StakeSnapshot(NamedTuple):
    """Account stake alongside the ledger's current head and the account's position."""
    total_user_stake: int
    stake_chain: str
    stake_chain_snapshot: str


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    if amount > UINT256_MAX:
        raise InvalidAmount("Amount exceeds uint256 range")


class _ChainLedger:
    """Shared plumbing: store, clock, timestamps, integrity checks."""

    _label = "chain"
    _event_type: type

    def __init__(
        self,
        event_store: Optional["EventStore"] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ):
        # Import here to avoid circular imports
        if event_store is None:
            from ..db.store import InMemoryEventStore
            event_store = InMemoryEventStore(self._event_type)
        elif event_store.event_type is not self._event_type:
            raise ValueError(
                f"{type(self).__name__} needs a store of {self._event_type.__name__}, "
                f"got one of {event_store.event_type.__name__}"
            )

        self._event_store = event_store
        self._clock = clock or SystemClock()
        self._config = config or LedgerConfig()

    @property
    def event_store(self) -> "EventStore":
        """Get the underlying event store."""
        return self._event_store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def chain_head(self) -> str:
        """Hash of the last appended node (genesis when empty)."""
        return self._event_store.get_head().last_hash

    @property
    def event_count(self) -> int:
        return self._event_store.get_event_count()

    def get_events(self) -> list:
        """Get all events, oldest first (for indexers and read models)."""
        return self._event_store.list_all()

    def _resolve_timestamp(self, head: "ChainHead", timestamp: Optional[int]) -> int:
        if timestamp is None:
            timestamp = self._clock.now()
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise InvalidTimestamp(f"Timestamp must be an integer, got {timestamp!r}")
        if timestamp < 0 or timestamp > UINT256_MAX:
            raise InvalidTimestamp(f"Timestamp out of range: {timestamp}")

        if (
            self._config.enforce_monotonic_timestamps
            and head.last_timestamp is not None
            and timestamp < head.last_timestamp
        ):
            raise NonMonotonicTimestamp(
                f"Timestamp {timestamp} precedes {self._label} chain head "
                f"timestamp {head.last_timestamp}"
            )
        return timestamp

    @classmethod
    def _verify_event_chain(cls, events: list) -> None:
        """Verify a complete chain from genesis. Implemented per ledger."""
        raise NotImplementedError

    def verify_chain_integrity(self) -> bool:
        """
        Verify the entire chain is intact.

        This should be run periodically as a health check.
        """
        try:
            self._verify_event_chain(self._event_store.list_all())
        except ChainIntegrityError as e:
            logger.error(
                "Chain integrity check failed",
                extra={"chain": self._label, "error": str(e)},
            )
            return False
        return True

    @staticmethod
    def _verify_sequence(events: list) -> None:
        if events and events[0].previous_hash != ZERO_HASH:
            raise ChainIntegrityError("First node is not chained onto the genesis hash")
        for expected, event in enumerate(events):
            if event.sequence_number != expected:
                raise ChainIntegrityError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected}, got {event.sequence_number}"
                )

    def _import_events(self, events: list) -> None:
        """Copy verified events into an empty store."""
        for event in events:
            with self._event_store.begin_append() as ctx:
                ctx.commit(event)


class StakeLedger(_ChainLedger):
    """
    The stake ledger.

    CHAIN INTEGRITY GUARANTEES:
    - One chain shared by every account, one global order
    - Every node's previous_hash is the head immediately before it
    - chain_head is always the last node's hash
    - An account's chain_snapshot is always the hash of its latest node
    - total_staked always equals the sum of all accounts' stake
    """

    _label = "stake"
    _event_type = StakeEvent

    def __init__(
        self,
        custody: Optional[Custody] = None,
        event_store: Optional["EventStore"] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ):
        super().__init__(event_store=event_store, clock=clock, config=config)
        self._custody = custody or InMemoryCustody()

        # Projections derived from the event store, NOT the source of truth
        self._total_staked = 0
        self._accounts: dict[str, AccountStake] = {}

    @property
    def custody(self) -> Custody:
        return self._custody

    @property
    def total_staked(self) -> int:
        return self._total_staked

    @staticmethod
    def _normalize(account: str) -> str:
        try:
            return normalize_address(account)
        except ValueError as e:
            raise InvalidAccount(str(e))

    def get_account(self, account: str) -> Optional[AccountStake]:
        """Get an account's cached state, or None if it never staked."""
        record = self._accounts.get(self._normalize(account))
        if record is None:
            return None
        return AccountStake(record.total_user_stake, record.chain_snapshot)

    def list_accounts(self) -> dict[str, AccountStake]:
        """All accounts that ever staked."""
        return {
            account: AccountStake(record.total_user_stake, record.chain_snapshot)
            for account, record in self._accounts.items()
        }

    def snapshot(self, account: str) -> StakeSnapshot:
        """
        Read-only view for verifiers.

        Returns the account's stake, the chain's CURRENT head, and the
        account's own last position. The two hashes differ whenever other
        accounts acted after this one.
        """
        record = self._accounts.get(self._normalize(account))
        if record is None:
            return StakeSnapshot(0, self.chain_head, ZERO_HASH)
        return StakeSnapshot(record.total_user_stake, self.chain_head, record.chain_snapshot)

    def _build_event(
        self,
        head: "ChainHead",
        account: str,
        is_stake: bool,
        amount: int,
        total_staked: int,
        total_user_stake: int,
        timestamp: int,
    ) -> StakeEvent:
        values = (account, is_stake, amount, total_staked, total_user_stake, timestamp)
        current_hash = Hasher.hash_fields(StakeEvent, values, head.last_hash)
        return StakeEvent(
            sequence_number=head.next_sequence,
            account=account,
            is_stake=is_stake,
            amount=amount,
            total_staked=total_staked,
            total_user_stake=total_user_stake,
            timestamp=timestamp,
            previous_hash=head.last_hash,
            current_hash=current_hash,
        )

    def _apply(self, event: StakeEvent) -> None:
        self._total_staked = event.total_staked
        record = self._accounts.setdefault(event.account, AccountStake())
        record.total_user_stake = event.total_user_stake
        record.chain_snapshot = event.current_hash

    def stake(self, account: str, amount: int, timestamp: Optional[int] = None) -> StakeEvent:
        """
        Stake tokens.

        Atomic unit: custody debit + chain append + projection update.
        If the append fails after the debit, the debit is credited back.

        Returns:
            The emitted StakeEvent (new head and timestamp used)

        Raises:
            InvalidAmount, InsufficientBalance, InvalidTimestamp, NonMonotonicTimestamp
        """
        account = self._normalize(account)
        _check_amount(amount)
        start = time.perf_counter()

        with self._event_store.begin_append() as ctx:
            timestamp = self._resolve_timestamp(ctx.head, timestamp)

            record = self._accounts.get(account)
            total_user_stake = (record.total_user_stake if record else 0) + amount
            total_staked = self._total_staked + amount
            if total_staked > UINT256_MAX:
                raise InvalidAmount("Total stake would exceed uint256 range")

            event = self._build_event(
                ctx.head, account, True, amount, total_staked, total_user_stake, timestamp
            )

            self._custody.debit(account, amount)
            try:
                ctx.commit(event)
            except Exception:
                self._custody.credit(account, amount)
                raise
            self._apply(event)

        self._log_append(event, start)
        return event

    def unstake(self, account: str, amount: int, timestamp: Optional[int] = None) -> StakeEvent:
        """
        Withdraw staked tokens.

        Raises:
            InvalidAmount, InsufficientStake, InvalidTimestamp, NonMonotonicTimestamp
        """
        account = self._normalize(account)
        _check_amount(amount)
        start = time.perf_counter()

        with self._event_store.begin_append() as ctx:
            timestamp = self._resolve_timestamp(ctx.head, timestamp)

            record = self._accounts.get(account)
            staked = record.total_user_stake if record else 0
            if amount > staked:
                raise InsufficientStake(
                    f"Account {account} has {staked} staked, cannot unstake {amount}"
                )

            event = self._build_event(
                ctx.head,
                account,
                False,
                amount,
                self._total_staked - amount,
                staked - amount,
                timestamp,
            )

            self._custody.credit(account, amount)
            try:
                ctx.commit(event)
            except Exception:
                self._custody.debit(account, amount)
                raise
            self._apply(event)

        self._log_append(event, start)
        return event

    def _log_append(self, event: StakeEvent, start: float) -> None:
        logger.info(
            "Stake chain extended",
            extra={
                "account": event.account,
                "is_stake": event.is_stake,
                "amount": str(event.amount),
                "total_staked": str(event.total_staked),
                "total_user_stake": str(event.total_user_stake),
                "event_timestamp": event.timestamp,
                "sequence_number": event.sequence_number,
                "previous_hash": event.previous_hash,
                "current_hash": event.current_hash,
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
            },
        )

    @classmethod
    def _verify_event_chain(cls, events: list) -> None:
        """
        Verify a complete stake chain from genesis.

        Raises ChainIntegrityError if any validation fails.
        """
        cls._verify_sequence(events)
        verify_links(events, "stake")
        verify_stake_totals(events, from_genesis=True)

    @classmethod
    def load_from_events(
        cls,
        events: list[StakeEvent],
        verify: bool = True,
        event_store: Optional["EventStore"] = None,
        custody: Optional[Custody] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ) -> "StakeLedger":
        """
        Rebuild a stake ledger by replaying its chain.

        CRITICAL: the whole chain is verified before it is accepted.

        If the store is empty the events are copied into it; otherwise the
        store must already hold exactly these events.

        Raises:
            ChainIntegrityError: If chain integrity is violated
        """
        ledger = cls(custody=custody, event_store=event_store, clock=clock, config=config)
        events = sorted(events, key=lambda e: e.sequence_number)

        if verify:
            cls._verify_event_chain(events)

        if ledger.event_store.get_event_count() == 0:
            ledger._import_events(events)
        elif ledger.event_store.get_head().last_hash != (
            events[-1].current_hash if events else ZERO_HASH
        ):
            raise ChainIntegrityError("Event store head does not match the replayed chain")

        for event in events:
            ledger._apply(event)

        return ledger

    @classmethod
    def load_from_store(
        cls,
        event_store: "EventStore",
        verify: bool = True,
        custody: Optional[Custody] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ) -> "StakeLedger":
        """Rebuild a stake ledger from an EventStore."""
        return cls.load_from_events(
            event_store.list_all(),
            verify=verify,
            event_store=event_store,
            custody=custody,
            clock=clock,
            config=config,
        )


class RewardLedger(_ChainLedger):
    """
    The reward ledger.

    Rewards are pooled. Attribution to accounts happens only in the
    ClaimVerifier, proportional to stake held at each reward.
    """

    _label = "reward"
    _event_type = RewardEvent

    def __init__(
        self,
        event_store: Optional["EventStore"] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ):
        super().__init__(event_store=event_store, clock=clock, config=config)
        self._total_rewards = 0

    @property
    def total_rewards(self) -> int:
        return self._total_rewards

    @property
    def beginning_of_stake_chain(self) -> str:
        """Stake-chain hash this reward chain was created against."""
        return self._config.beginning_of_stake_chain

    def add_rewards(self, amount: int, timestamp: Optional[int] = None) -> RewardEvent:
        """
        Add rewards to the pool.

        Returns:
            The emitted RewardEvent

        Raises:
            InvalidAmount, InvalidTimestamp, NonMonotonicTimestamp
        """
        _check_amount(amount)
        start = time.perf_counter()

        with self._event_store.begin_append() as ctx:
            timestamp = self._resolve_timestamp(ctx.head, timestamp)

            total_rewards = self._total_rewards + amount
            if total_rewards > UINT256_MAX:
                raise InvalidAmount("Total rewards would exceed uint256 range")

            values = (amount, total_rewards, timestamp)
            event = RewardEvent(
                sequence_number=ctx.head.next_sequence,
                amount=amount,
                total_rewards=total_rewards,
                timestamp=timestamp,
                previous_hash=ctx.head.last_hash,
                current_hash=Hasher.hash_fields(RewardEvent, values, ctx.head.last_hash),
            )
            ctx.commit(event)
            self._total_rewards = total_rewards

        logger.info(
            "Rewards added",
            extra={
                "amount": str(event.amount),
                "total_rewards": str(event.total_rewards),
                "event_timestamp": event.timestamp,
                "sequence_number": event.sequence_number,
                "previous_hash": event.previous_hash,
                "current_hash": event.current_hash,
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
            },
        )
        return event

    @classmethod
    def _verify_event_chain(cls, events: list) -> None:
        """Verify a complete reward chain from genesis."""
        cls._verify_sequence(events)
        verify_links(events, "reward")
        verify_reward_totals(events, from_genesis=True)

    @classmethod
    def load_from_events(
        cls,
        events: list[RewardEvent],
        verify: bool = True,
        event_store: Optional["EventStore"] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ) -> "RewardLedger":
        """
        Rebuild a reward ledger by replaying its chain.

        Raises:
            ChainIntegrityError: If chain integrity is violated
        """
        ledger = cls(event_store=event_store, clock=clock, config=config)
        events = sorted(events, key=lambda e: e.sequence_number)

        if verify:
            cls._verify_event_chain(events)

        if ledger.event_store.get_event_count() == 0:
            ledger._import_events(events)
        elif ledger.event_store.get_head().last_hash != (
            events[-1].current_hash if events else ZERO_HASH
        ):
            raise ChainIntegrityError("Event store head does not match the replayed chain")

        if events:
            ledger._total_rewards = events[-1].total_rewards

        return ledger

    @classmethod
    def load_from_store(
        cls,
        event_store: "EventStore",
        verify: bool = True,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None,
    ) -> "RewardLedger":
        """Rebuild a reward ledger from an EventStore."""
        return cls.load_from_events(
            event_store.list_all(),
            verify=verify,
            event_store=event_store,
            clock=clock,
            config=config,
        )
