"""
Ledger Error Taxonomy

Every error surfaces to the immediate caller. Nothing retries internally.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class InvalidAmount(LedgerError):
    """Raised when a zero, negative or out-of-range amount is supplied."""
    pass


class InsufficientBalance(LedgerError):
    """Raised by custody when a debit cannot be satisfied."""
    pass


class InsufficientStake(LedgerError):
    """Raised when an unstake exceeds the account's staked balance."""
    pass


class NonMonotonicTimestamp(LedgerError):
    """Raised when the clock goes backwards relative to the chain head."""
    pass


class ChainError(LedgerError):
    """Raised when an append would break the ledger's own chain."""
    pass


class ChainIntegrityError(LedgerError):
    """
    Raised when a supplied event sequence fails verification.

    Signals forged, omitted or reordered events. A claim that raises this
    must be rejected outright.
    """
    pass


class SettlementError(LedgerError):
    """Raised when a claim does not continue from the last settled window."""
    pass


class InvalidAccount(LedgerError):
    """Raised when an account identifier is not a 20-byte hex address."""
    pass


class InvalidTimestamp(LedgerError):
    """Raised when a supplied timestamp is not a non-negative integer."""
    pass
