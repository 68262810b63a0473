# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .errors import (
    LedgerError,
    InvalidAmount,
    InsufficientBalance,
    InsufficientStake,
    NonMonotonicTimestamp,
    ChainError,
    ChainIntegrityError,
    SettlementError,
    InvalidAccount,
    InvalidTimestamp,
)
from .clock import Clock, SystemClock, ManualClock
from .config import LedgerConfig
from .custody import Custody, InMemoryCustody
from .ledger import StakeLedger, RewardLedger, AccountStake, StakeSnapshot
from .verifier import ClaimVerifier
from .settlement import ClaimRegistry, SettledClaim

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "LedgerError",
    "InvalidAmount",
    "InsufficientBalance",
    "InsufficientStake",
    "NonMonotonicTimestamp",
    "ChainError",
    "ChainIntegrityError",
    "SettlementError",
    "InvalidAccount",
    "InvalidTimestamp",
    "Clock",
    "SystemClock",
    "ManualClock",
    "LedgerConfig",
    "Custody",
    "InMemoryCustody",
    "StakeLedger",
    "RewardLedger",
    "AccountStake",
    "StakeSnapshot",
    "ClaimVerifier",
    "ClaimRegistry",
    "SettledClaim",
]
