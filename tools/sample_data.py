#!/usr/bin/env python3
"""
StakeChain Sample Data Generator

Drives both ledgers with random stakes, unstakes and rewards, then exports
a claim bundle for one account together with the entitlement computed
independently while the simulation ran. Feed the bundle to verify.py.

Usage:
    python sample_data.py --out bundle.json
    python sample_data.py --iterations 500 --accounts 20 --seed 7 --out bundle.json

Timestamps advance by at least one second per action, so stake and reward
events never share a timestamp and the export is unambiguous.
"""

import argparse
import json
import random
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from stakechain.core import (
    InMemoryCustody,
    ManualClock,
    RewardLedger,
    StakeLedger,
)
from stakechain.schemas import ClaimWindow, TrustedAnchors

BUNDLE_VERSION = 1
ETHER = 10**18
START_TIMESTAMP = 1_700_000_000


def _account(index: int) -> str:
    return "0x" + f"{index + 1:040x}"


def _token_amount(rng: random.Random, max_tokens: int) -> int:
    """Random amount with two decimals, at least 0.01 tokens."""
    return rng.randint(1, max_tokens * 100) * ETHER // 100


def simulate(
    iterations: int = 100,
    accounts: int = 10,
    seed: Optional[int] = None,
) -> dict[str, Any]:
    """
    Run a random simulation and export a claim bundle.

    Returns:
        Bundle dict with _meta, window, anchors and expected_entitlement
    """
    if iterations < 1 or accounts < 1:
        raise ValueError("iterations and accounts must be positive")

    rng = random.Random(seed)
    clock = ManualClock(start=START_TIMESTAMP)
    custody = InMemoryCustody()
    stake_ledger = StakeLedger(custody=custody, clock=clock)
    reward_ledger = RewardLedger(clock=clock)

    addresses = [_account(i) for i in range(accounts)]
    for address in addresses:
        custody.mint(address, 1000 * ETHER)
    claimant = rng.choice(addresses)

    # (reward event, claimant stake, total stake) observed at append time
    observed: list[tuple[Any, int, int]] = []

    for _ in range(iterations):
        clock.advance(rng.randint(1, 86400))

        if rng.random() > 0.33 or stake_ledger.total_staked == 0:
            address = rng.choice(addresses)
            amount = _token_amount(rng, 10)
            staked = stake_ledger.snapshot(address).total_user_stake

            is_stake = rng.random() > 0.5
            if not is_stake and staked < amount:
                is_stake = True
            if is_stake and custody.balance_of(address) < amount:
                is_stake = False
            if not is_stake and staked < amount:
                continue

            if is_stake:
                stake_ledger.stake(address, amount)
            else:
                stake_ledger.unstake(address, amount)
        else:
            event = reward_ledger.add_rewards(_token_amount(rng, 100))
            observed.append((
                event,
                stake_ledger.snapshot(claimant).total_user_stake,
                stake_ledger.total_staked,
            ))

    stake_events = stake_ledger.get_events()
    reward_events = reward_ledger.get_events()
    if not reward_events:
        # Guarantee a non-empty reward window
        clock.advance(1)
        event = reward_ledger.add_rewards(_token_amount(rng, 100))
        observed.append((
            event,
            stake_ledger.snapshot(claimant).total_user_stake,
            stake_ledger.total_staked,
        ))
        reward_events = reward_ledger.get_events()

    # Reward window [from, to]; rewards [from, to) are counted
    start = rng.randrange(len(reward_events))
    end = rng.randrange(start, len(reward_events))
    reward_window = reward_events[start:end + 1]
    counted = observed[start:end]

    expected = sum(
        event.amount * stake // total if total else 0
        for event, stake, total in counted
    )

    # Stake window: from the last node in effect at the first reward of the
    # window (genesis if none) to the last node in effect at a counted reward
    first_ts = reward_window[0].timestamp
    start_index = max(
        (i for i, e in enumerate(stake_events) if e.timestamp <= first_ts), default=0
    )
    cutoff = counted[-1][0].timestamp if counted else first_ts
    end_index = max(
        (i for i, e in enumerate(stake_events) if e.timestamp <= cutoff), default=0
    )
    stake_window = stake_events[start_index:max(start_index, end_index) + 1]
    following = stake_events[start_index + len(stake_window):]

    account_anchor = next(
        (e for e in reversed(stake_events[:start_index + 1]) if e.account == claimant),
        None,
    )

    window = ClaimWindow(
        account=claimant,
        stake_events=stake_window,
        reward_events=reward_window,
        account_anchor=account_anchor,
    )
    anchors = TrustedAnchors(
        stake_from=stake_window[0].current_hash,
        stake_to=stake_window[-1].current_hash,
        reward_from=reward_window[0].current_hash,
        reward_to=reward_window[-1].current_hash,
        next_stake_timestamp=following[0].timestamp if following else None,
        stake_to_is_head=not following,
        account_anchor=account_anchor.current_hash if account_anchor is not None else None,
    )

    return {
        "_meta": {
            "bundle_version": BUNDLE_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "iterations": iterations,
            "accounts": accounts,
            "seed": seed,
            "stake_chain_head": stake_ledger.chain_head,
            "reward_chain_head": reward_ledger.chain_head,
        },
        "window": window.model_dump(mode="json"),
        "anchors": anchors.model_dump(mode="json"),
        "expected_entitlement": str(expected),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Generate a random StakeChain claim bundle",
    )
    parser.add_argument("--iterations", type=int, default=100, help="Number of simulated actions")
    parser.add_argument("--accounts", type=int, default=10, help="Number of staking accounts")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--out", type=str, default=None, help="Output file (default: stdout)")

    args = parser.parse_args()

    try:
        bundle = simulate(args.iterations, args.accounts, args.seed)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    output = json.dumps(bundle, indent=2)
    if args.out:
        Path(args.out).write_text(output + "\n", encoding="utf-8")
        print(
            f"Wrote {args.out}: {len(bundle['window']['stake_events'])} stake events, "
            f"{len(bundle['window']['reward_events'])} reward events, "
            f"expected entitlement {bundle['expected_entitlement']}"
        )
    else:
        print(output)


if __name__ == "__main__":
    main()
