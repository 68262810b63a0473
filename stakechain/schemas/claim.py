"""
Claim Schemas

A claim is UNTRUSTED input. The claimant assembles it from an indexer;
nothing in it is believed until the verifier has re-hashed every node
and tied both ends to anchors the verifier already trusts.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from .events import Address, ChainHash, RewardEvent, StakeEvent


class ClaimWindow(BaseModel):
    """
    A claimant-supplied slice of both chains.

    stake_events:  [fromStake, ..., toStake], contiguous, oldest first
    reward_events: [fromReward, ..., toReward], contiguous, oldest first
    """
    account: Address = Field(..., description="Account claiming the rewards")
    stake_events: list[StakeEvent] = Field(default_factory=list)
    reward_events: list[RewardEvent] = Field(default_factory=list)

    # The account's latest stake node at or before stake_events[0]. Carries
    # the account's stake into windows where it does not act itself.
    account_anchor: Optional[StakeEvent] = None


class TrustedAnchors(BaseModel):
    """
    Chain hashes the verifier already trusts.

    Both ends of both windows are required: a window must start and end
    at hashes the verifier has seen.

    The stake window must also be shown complete for the rewards it is
    used for. One of these must hold:
    - next_stake_timestamp is later than the last counted reward
    - stake_to_is_head is set (no stake node follows stake_to)
    - the window's last stake node is itself later than the last counted reward
    """
    stake_from: ChainHash
    reward_from: ChainHash
    stake_to: ChainHash
    reward_to: ChainHash

    # Timestamp of the trusted stake node right after stake_to
    next_stake_timestamp: Optional[int] = Field(default=None, ge=0)
    stake_to_is_head: bool = False

    # Hash of the account's latest stake node at or before stake_from,
    # None if the account had no stake node by then
    account_anchor: Optional[ChainHash] = None

    @model_validator(mode="after")
    def _one_completeness_proof(self) -> "TrustedAnchors":
        if self.stake_to_is_head and self.next_stake_timestamp is not None:
            raise ValueError("next_stake_timestamp and stake_to_is_head are mutually exclusive")
        return self


class RewardAttribution(BaseModel):
    """One reward event's contribution to a claim."""
    reward_hash: ChainHash
    amount: int
    timestamp: int
    account_stake: int = Field(..., description="Account stake in effect at the reward")
    total_staked: int = Field(..., description="Global stake in effect at the reward")
    share: int = Field(..., description="floor(amount * account_stake / total_staked)")


class ClaimResult(BaseModel):
    """
    Outcome of a verified claim.

    The four hashes are the validated window bounds. Settlement chains
    claims by requiring the next claim to start where this one ended.
    """
    account: Address
    entitlement: int
    stake_from_hash: ChainHash
    stake_to_hash: ChainHash
    reward_from_hash: ChainHash
    reward_to_hash: ChainHash
    attributions: list[RewardAttribution] = Field(default_factory=list)
