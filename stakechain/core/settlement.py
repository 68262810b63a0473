"""
Claim Settlement

Chains verified claims per account. A settled claim consumes its window:
the next claim by the same account must start exactly where the previous
one ended, on both chains. Since counted rewards are [fromReward, toReward),
consecutive claims never count a reward twice.
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from ..schemas.claim import ClaimResult
from ..schemas.events import normalize_address
from .errors import SettlementError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettledClaim:
    """Position of an account's last settled window."""
    account: str
    stake_to_hash: str
    reward_to_hash: str
    total_claimed: int
    claims_settled: int


class ClaimRegistry:
    """
    Tracks the last settled window for each account.

    Usage:
        registry = ClaimRegistry()
        registry.settle(verifier.verify(window, anchors))
    """

    def __init__(self):
        self._settled: dict[str, SettledClaim] = {}
        self._lock = Lock()

    def get(self, account: str) -> Optional[SettledClaim]:
        """Last settlement for an account, or None if it never claimed."""
        return self._settled.get(normalize_address(account))

    def settle(self, result: ClaimResult) -> SettledClaim:
        """
        Record a verified claim.

        The first claim for an account may start anywhere. Every later
        claim must start at the previous claim's end hashes.

        Raises:
            SettlementError: If the claim does not continue the last settlement
        """
        account = normalize_address(result.account)

        with self._lock:
            previous = self._settled.get(account)

            if previous is not None:
                if result.reward_from_hash != previous.reward_to_hash:
                    raise SettlementError(
                        f"Reward window must start at {previous.reward_to_hash[:18]}..., "
                        f"got {result.reward_from_hash[:18]}..."
                    )
                if result.stake_from_hash != previous.stake_to_hash:
                    raise SettlementError(
                        f"Stake window must start at {previous.stake_to_hash[:18]}..., "
                        f"got {result.stake_from_hash[:18]}..."
                    )

            settled = SettledClaim(
                account=account,
                stake_to_hash=result.stake_to_hash,
                reward_to_hash=result.reward_to_hash,
                total_claimed=(previous.total_claimed if previous else 0) + result.entitlement,
                claims_settled=(previous.claims_settled if previous else 0) + 1,
            )
            self._settled[account] = settled

        logger.info(
            "Claim settled",
            extra={
                "account": account,
                "entitlement": str(result.entitlement),
                "total_claimed": str(settled.total_claimed),
                "reward_to_hash": settled.reward_to_hash,
            },
        )
        return settled
