"""
Claim Verifier

Recomputes an account's reward entitlement from a claimant-supplied
window of both chains, after proving the window is authentic.

The verifier is pure:
- No reference to live ledger storage
- Reads only the window and the anchors handed to it
- Safe to run concurrently, safe to abandon mid-way

VERIFICATION STEPS:
1. Chain continuity (each chain):
   - window is non-empty
   - first node is the trusted `from` anchor
   - every node re-hashes to its claimed hash
   - every node links to the node before it
   - last node is the trusted `to` anchor
   - running totals move by exactly each node's amount
2. Completeness: no stake node past the window may be in effect at a
   counted reward (see TrustedAnchors for the accepted proofs)
3. Attribution (each counted reward):
   - stake events are ordered against rewards by timestamp
     (stake.timestamp <= reward.timestamp means "in effect"). A stake node
     with the same timestamp as a reward is in effect at that reward even
     when it was appended after it.
   - the account's stake before the window comes from its account anchor
   - account stake = the account's latest total_user_stake in effect
   - total stake  = the latest total_staked in effect (any account)
   - share = amount * account_stake // total_staked, 0 if nobody staked
4. Sum over counted rewards: the half-open interval [fromReward, toReward).
   The next claim starts at this claim's toReward, so no reward is
   counted twice.
"""

import logging
from typing import Iterator, Optional, Sequence, Union

from ..schemas.claim import ClaimResult, ClaimWindow, RewardAttribution, TrustedAnchors
from ..schemas.events import RewardEvent, StakeEvent
from .errors import ChainIntegrityError
from .hasher import Hasher

logger = logging.getLogger(__name__)


# ============================================================
# CHAIN CHECKS (shared with ledger replay)
# ============================================================

def verify_links(events: Sequence[Union[StakeEvent, RewardEvent]], label: str) -> None:
    """
    Re-hash every node and check each links to its predecessor.

    Raises:
        ChainIntegrityError: On the first mismatch
    """
    previous = None
    for position, event in enumerate(events):
        if previous is not None and event.previous_hash != previous.current_hash:
            raise ChainIntegrityError(
                f"{label} chain linkage broken at position {position}. "
                f"Expected previous hash '{previous.current_hash[:18]}...', "
                f"got '{event.previous_hash[:18]}...'"
            )
        computed = Hasher.hash_event(event)
        if computed != event.current_hash:
            raise ChainIntegrityError(
                f"{label} hash verification failed at position {position}. "
                f"Computed: {computed[:18]}..., "
                f"Claimed: {event.current_hash[:18]}..."
            )
        previous = event


def verify_stake_totals(
    events: Sequence[StakeEvent],
    from_genesis: bool,
    seed: Optional[dict[str, int]] = None,
) -> None:
    """
    Check the stake totals carried by consecutive nodes are consistent.

    Args:
        events: Contiguous stake nodes
        from_genesis: True if events[0] is the first node ever; totals then
            start from zero. Otherwise the first sighting of each total is
            taken as given.
        seed: Known account stakes just before events[0]
    """
    total: Optional[int] = 0 if from_genesis else None
    accounts: dict[str, int] = dict(seed or {})

    for position, event in enumerate(events):
        if event.amount == 0:
            raise ChainIntegrityError(f"stake node at position {position} has zero amount")

        if total is not None and total + event.signed_amount != event.total_staked:
            raise ChainIntegrityError(
                f"stake total inconsistent at position {position}: "
                f"{total} {'+' if event.is_stake else '-'} {event.amount} "
                f"!= {event.total_staked}"
            )

        prior = accounts.get(event.account, 0 if from_genesis else None)
        if prior is not None and prior + event.signed_amount != event.total_user_stake:
            raise ChainIntegrityError(
                f"account stake inconsistent at position {position} for {event.account}: "
                f"{prior} {'+' if event.is_stake else '-'} {event.amount} "
                f"!= {event.total_user_stake}"
            )

        if event.total_user_stake > event.total_staked:
            raise ChainIntegrityError(
                f"account stake exceeds total stake at position {position}"
            )

        total = event.total_staked
        accounts[event.account] = event.total_user_stake


def verify_reward_totals(events: Sequence[RewardEvent], from_genesis: bool) -> None:
    """Check total_rewards grows by exactly each node's amount."""
    total: Optional[int] = 0 if from_genesis else None

    for position, event in enumerate(events):
        if event.amount == 0:
            raise ChainIntegrityError(f"reward node at position {position} has zero amount")
        if total is not None and total + event.amount != event.total_rewards:
            raise ChainIntegrityError(
                f"reward total inconsistent at position {position}: "
                f"{total} + {event.amount} != {event.total_rewards}"
            )
        total = event.total_rewards


# ============================================================
# VERIFIER
# ============================================================

class ClaimVerifier:
    """
    Verifies claim windows and computes entitlement.

    Usage:
        result = ClaimVerifier().verify(window, anchors)
        result.entitlement
    """

    @staticmethod
    def _check_window(
        label: str,
        events: Sequence[Union[StakeEvent, RewardEvent]],
        anchor_from: str,
        anchor_to: str,
    ) -> None:
        if not events:
            raise ChainIntegrityError(
                f"{label} window is empty; it must contain at least its bounding node"
            )

        if events[0].current_hash != anchor_from:
            raise ChainIntegrityError(
                f"{label} window does not start at the trusted anchor. "
                f"Expected '{anchor_from[:18]}...', got '{events[0].current_hash[:18]}...'"
            )

        verify_links(events, label)

        if events[-1].current_hash != anchor_to:
            raise ChainIntegrityError(
                f"{label} window does not terminate at the trusted anchor. "
                f"Expected '{anchor_to[:18]}...', got '{events[-1].current_hash[:18]}...'"
            )

    @staticmethod
    def _attribute(
        account: str,
        stake_events: Sequence[StakeEvent],
        counted_rewards: Sequence[RewardEvent],
        account_stake: int,
        total_staked: int,
    ) -> Iterator[RewardAttribution]:
        stake_index = 0

        for reward in counted_rewards:
            # Advance through every stake node in effect at this reward
            while (
                stake_index < len(stake_events)
                and stake_events[stake_index].timestamp <= reward.timestamp
            ):
                event = stake_events[stake_index]
                total_staked = event.total_staked
                if event.account == account:
                    account_stake = event.total_user_stake
                stake_index += 1

            share = reward.amount * account_stake // total_staked if total_staked else 0

            yield RewardAttribution(
                reward_hash=reward.current_hash,
                amount=reward.amount,
                timestamp=reward.timestamp,
                account_stake=account_stake,
                total_staked=total_staked,
                share=share,
            )

    @staticmethod
    def _check_account_anchor(window: ClaimWindow, anchors: TrustedAnchors) -> int:
        """
        Tie the window's account anchor to the trusted one.

        Returns:
            The account's stake just before the first stake node
        """
        first = window.stake_events[0]
        anchor = window.account_anchor

        if anchor is None:
            if anchors.account_anchor is not None:
                raise ChainIntegrityError(
                    "account anchor missing: the account staked before the window"
                )
        else:
            if anchors.account_anchor is None:
                raise ChainIntegrityError("account anchor supplied but none is trusted")
            if Hasher.hash_event(anchor) != anchor.current_hash:
                raise ChainIntegrityError("account anchor hash verification failed")
            if anchor.current_hash != anchors.account_anchor:
                raise ChainIntegrityError(
                    f"account anchor is not the trusted one. "
                    f"Expected '{anchors.account_anchor[:18]}...', "
                    f"got '{anchor.current_hash[:18]}...'"
                )
            if anchor.account != window.account:
                raise ChainIntegrityError("account anchor belongs to another account")
            if anchor.timestamp > first.timestamp or (
                anchor.sequence_number is not None
                and first.sequence_number is not None
                and anchor.sequence_number > first.sequence_number
            ):
                raise ChainIntegrityError("account anchor comes after the stake window start")

        if first.account == window.account:
            return first.total_user_stake - first.signed_amount
        return anchor.total_user_stake if anchor is not None else 0

    @staticmethod
    def _check_complete(
        stake_events: Sequence[StakeEvent],
        last_counted: int,
        anchors: TrustedAnchors,
    ) -> None:
        """Reject a stake window that may stop short of a node in effect at a counted reward."""
        if anchors.next_stake_timestamp is not None:
            if anchors.next_stake_timestamp <= last_counted:
                raise ChainIntegrityError(
                    "stake window ends before the rewards it is used for: "
                    "a later stake node was in effect at a counted reward"
                )
            return
        if anchors.stake_to_is_head:
            return
        if stake_events[-1].timestamp <= last_counted:
            raise ChainIntegrityError(
                "stake window completeness is unproven: no trusted next stake "
                "timestamp or head marker, and the last stake node is not later "
                "than the last counted reward"
            )

    def verify(self, window: ClaimWindow, anchors: TrustedAnchors) -> ClaimResult:
        """
        Verify a claim window and compute the account's entitlement.

        Args:
            window: Untrusted claimant-supplied events
            anchors: Hashes the caller already trusts

        Returns:
            ClaimResult with the entitlement and the validated bounds

        Raises:
            ChainIntegrityError: If the window is forged, reordered,
                incomplete or not tied to the anchors. Never partially honored.
        """
        stake_events = window.stake_events
        reward_events = window.reward_events

        try:
            self._check_window("stake", stake_events, anchors.stake_from, anchors.stake_to)
            self._check_window("reward", reward_events, anchors.reward_from, anchors.reward_to)
            account_stake = self._check_account_anchor(window, anchors)

            first = stake_events[0]
            seed = {window.account: account_stake} if first.account != window.account else None
            verify_stake_totals(stake_events, from_genesis=False, seed=seed)
            verify_reward_totals(reward_events, from_genesis=False)

            counted = reward_events[:-1]
            if counted:
                self._check_complete(stake_events, counted[-1].timestamp, anchors)
        except ChainIntegrityError as e:
            logger.warning(
                "Claim window rejected",
                extra={"account": window.account, "error": str(e)},
            )
            raise

        # State just before the first stake node
        attributions = list(self._attribute(
            window.account,
            stake_events,
            counted,
            account_stake=account_stake,
            total_staked=first.total_staked - first.signed_amount,
        ))
        entitlement = sum(a.share for a in attributions)

        logger.info(
            "Claim window verified",
            extra={
                "account": window.account,
                "entitlement": str(entitlement),
                "reward_events_counted": len(attributions),
                "stake_events": len(stake_events),
            },
        )

        return ClaimResult(
            account=window.account,
            entitlement=entitlement,
            stake_from_hash=stake_events[0].current_hash,
            stake_to_hash=stake_events[-1].current_hash,
            reward_from_hash=reward_events[0].current_hash,
            reward_to_hash=reward_events[-1].current_hash,
            attributions=attributions,
        )
