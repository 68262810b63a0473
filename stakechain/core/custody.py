"""
Token Custody

The stake ledger never holds balances itself. It asks a custody
collaborator to move tokens in the same atomic unit as the chain append:
- stake   → debit(account, amount)
- unstake → credit(account, amount)

InMemoryCustody is the development/test implementation.
"""

from abc import ABC, abstractmethod
from threading import Lock

from ..schemas.events import normalize_address
from .errors import InsufficientBalance, InvalidAmount


class Custody(ABC):
    """Atomic debit/credit capability over account token balances."""

    @abstractmethod
    def debit(self, account: str, amount: int) -> None:
        """
        Take amount from account into custody.

        Raises:
            InsufficientBalance: If the account cannot cover the debit
        """
        pass

    @abstractmethod
    def credit(self, account: str, amount: int) -> None:
        """Return amount from custody to account."""
        pass


class InMemoryCustody(Custody):
    """
    In-memory token balances.

    Suitable for:
    - Development
    - Testing and simulation

    NOT suitable for:
    - Anything that needs real token movement
    """

    def __init__(self, balances: dict[str, int] | None = None):
        self._balances: dict[str, int] = {}
        self._held = 0
        self._lock = Lock()
        for account, amount in (balances or {}).items():
            self.mint(account, amount)

    @property
    def held(self) -> int:
        """Tokens currently held in custody (i.e. staked)."""
        return self._held

    def balance_of(self, account: str) -> int:
        return self._balances.get(normalize_address(account), 0)

    def mint(self, account: str, amount: int) -> None:
        """Create tokens out of thin air (test funding only)."""
        if amount <= 0:
            raise InvalidAmount(f"Mint amount must be positive, got {amount}")
        account = normalize_address(account)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def debit(self, account: str, amount: int) -> None:
        account = normalize_address(account)
        with self._lock:
            balance = self._balances.get(account, 0)
            if amount > balance:
                raise InsufficientBalance(
                    f"Account {account} has balance {balance}, cannot debit {amount}"
                )
            self._balances[account] = balance - amount
            self._held += amount

    def credit(self, account: str, amount: int) -> None:
        account = normalize_address(account)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount
            self._held -= amount
