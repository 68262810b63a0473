"""
Chain Event Schema

Two append-only chains, one event variant each:
- StakeEvent: one node of the shared stake chain (all accounts, one sequence)
- RewardEvent: one node of the reward chain (pooled, no accounts)

Each event:
- Carries every field that went into its hash
- Carries the hash it was chained onto
- Carries its own hash

Hash input order is fixed by PACKED_LAYOUT. Never reorder it.
"""

from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

UINT256_MAX = 2**256 - 1

# Genesis head of every chain
ZERO_HASH = "0x" + "00" * 32


def _strip_hex(value: str, byte_length: int, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a hex string")
    body = value[2:] if value[:2] in ("0x", "0X") else value
    if len(body) != byte_length * 2:
        raise ValueError(
            f"{label} must be {byte_length} bytes ({byte_length * 2} hex chars), "
            f"got {len(body)} chars"
        )
    try:
        bytes.fromhex(body)
    except ValueError:
        raise ValueError(f"{label} is not valid hex: {value}")
    return "0x" + body.lower()


def normalize_hash(value: str) -> str:
    """Normalize a 32-byte hash to lowercase 0x-prefixed hex."""
    return _strip_hex(value, 32, "hash")


def normalize_address(value: str) -> str:
    """Normalize a 20-byte account identifier to lowercase 0x-prefixed hex."""
    return _strip_hex(value, 20, "account")


ChainHash = Annotated[str, AfterValidator(normalize_hash)]
Address = Annotated[str, AfterValidator(normalize_address)]
Uint256 = Annotated[int, Field(ge=0, le=UINT256_MAX)]


class StakeEvent(BaseModel):
    """
    A stake or unstake action on the shared stake chain.

    Totals are the values AFTER the action was applied.
    """
    model_config = ConfigDict(frozen=True)

    PACKED_LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("account", "address"),
        ("is_stake", "bool"),
        ("amount", "uint256"),
        ("total_staked", "uint256"),
        ("total_user_stake", "uint256"),
        ("timestamp", "uint256"),
    )

    event_type: Literal["STAKE_CHAIN_EXTENDED"] = "STAKE_CHAIN_EXTENDED"

    # Position in the chain (0 for the first node). Not part of the hash.
    sequence_number: Optional[int] = Field(default=None, ge=0)

    account: Address
    is_stake: bool
    amount: Uint256
    total_staked: Uint256 = Field(..., description="Global stake after this action")
    total_user_stake: Uint256 = Field(..., description="Account stake after this action")
    timestamp: Uint256

    previous_hash: ChainHash = Field(..., description="Chain head this node was appended to")
    current_hash: ChainHash = Field(..., description="Hash of this node")

    def packed_values(self) -> tuple:
        """Field values in PACKED_LAYOUT order."""
        return tuple(getattr(self, name) for name, _ in self.PACKED_LAYOUT)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.is_stake else -self.amount


class RewardEvent(BaseModel):
    """A reward addition on the reward chain."""
    model_config = ConfigDict(frozen=True)

    PACKED_LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("amount", "uint256"),
        ("total_rewards", "uint256"),
        ("timestamp", "uint256"),
    )

    event_type: Literal["REWARDS_ADDED"] = "REWARDS_ADDED"

    sequence_number: Optional[int] = Field(default=None, ge=0)

    amount: Uint256
    total_rewards: Uint256 = Field(..., description="Total rewards after this addition")
    timestamp: Uint256

    previous_hash: ChainHash
    current_hash: ChainHash

    def packed_values(self) -> tuple:
        """Field values in PACKED_LAYOUT order."""
        return tuple(getattr(self, name) for name, _ in self.PACKED_LAYOUT)


ChainEvent = Annotated[Union[StakeEvent, RewardEvent], Field(discriminator="event_type")]
