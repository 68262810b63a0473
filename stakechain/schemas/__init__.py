# Canonical Schemas for the StakeChain ledgers
# Hash input layouts live on the event models. Never reorder them.

from .events import (
    UINT256_MAX,
    ZERO_HASH,
    Address,
    ChainEvent,
    ChainHash,
    RewardEvent,
    StakeEvent,
    normalize_address,
    normalize_hash,
)
from .claim import ClaimResult, ClaimWindow, RewardAttribution, TrustedAnchors

__all__ = [
    # Events
    "UINT256_MAX",
    "ZERO_HASH",
    "Address",
    "ChainEvent",
    "ChainHash",
    "RewardEvent",
    "StakeEvent",
    "normalize_address",
    "normalize_hash",
    # Claims
    "ClaimResult",
    "ClaimWindow",
    "RewardAttribution",
    "TrustedAnchors",
]
