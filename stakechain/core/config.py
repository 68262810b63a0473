"""
Ledger Configuration

CONFIGURATION:
- STAKECHAIN_ENFORCE_MONOTONIC_TIMESTAMPS: Reject appends whose timestamp is
  older than the chain head (default: true)
- STAKECHAIN_BEGINNING_OF_STAKE_CHAIN: Stake-chain hash the reward chain is
  created against (default: the zero hash)
"""

import os
from dataclasses import dataclass

from ..schemas.events import ZERO_HASH, normalize_hash


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class LedgerConfig:
    """Configuration shared by the stake and reward ledgers."""
    enforce_monotonic_timestamps: bool = True
    beginning_of_stake_chain: str = ZERO_HASH

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            enforce_monotonic_timestamps=_env_flag(
                "STAKECHAIN_ENFORCE_MONOTONIC_TIMESTAMPS", True
            ),
            beginning_of_stake_chain=normalize_hash(
                os.environ.get("STAKECHAIN_BEGINNING_OF_STAKE_CHAIN", ZERO_HASH)
            ),
        )
