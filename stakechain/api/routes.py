"""
API Routes for the StakeChain ledgers

Command-style endpoints (append-only, no PATCH, no PUT):
- POST /ledger/stake            - Stake tokens
- POST /ledger/unstake          - Withdraw staked tokens
- POST /ledger/rewards          - Add rewards to the pool
- POST /custody/mint            - Fund an account (in-memory custody only)

Query endpoints (read model):
- GET /ledger/state             - Totals and chain heads
- GET /ledger/accounts/{addr}   - Account stake snapshot
- GET /ledger/stake-events      - Stake chain history (for indexers)
- GET /ledger/reward-events     - Reward chain history (for indexers)

Claims:
- POST /claims/verify           - Verify a claim window, compute entitlement
- POST /claims/settle           - Verify, then consume the window
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..core import (
    ChainIntegrityError,
    ClaimRegistry,
    ClaimVerifier,
    InMemoryCustody,
    InsufficientBalance,
    InsufficientStake,
    InvalidAccount,
    InvalidAmount,
    InvalidTimestamp,
    LedgerError,
    NonMonotonicTimestamp,
    RewardLedger,
    SettlementError,
    StakeLedger,
)
from ..db import EventStore, EventStoreError
from ..observability import get_logger, get_metrics
from ..schemas import (
    Address,
    ChainHash,
    ClaimResult,
    ClaimWindow,
    RewardEvent,
    StakeEvent,
    TrustedAnchors,
)

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Dependency Injection
# ============================================================
# Services are built once in the application lifespan and live on app.state.

def get_stake_ledger(request: Request) -> StakeLedger:
    return request.app.state.stake_ledger


def get_reward_ledger(request: Request) -> RewardLedger:
    return request.app.state.reward_ledger


def get_registry(request: Request) -> ClaimRegistry:
    return request.app.state.claim_registry


def get_verifier(request: Request) -> ClaimVerifier:
    return request.app.state.verifier


# ============================================================
# Request/Response Models
# ============================================================

class StakeRequest(BaseModel):
    """Request to stake or unstake tokens."""
    account: Address
    amount: int = Field(..., description="Positive token amount")
    timestamp: Optional[int] = Field(
        default=None, description="Block timestamp; the ledger clock is used if omitted"
    )


class RewardRequest(BaseModel):
    """Request to add rewards to the pool."""
    amount: int
    timestamp: Optional[int] = None


class MintRequest(BaseModel):
    """Request to fund an account in the in-memory custody."""
    account: Address
    amount: int


class BalanceResponse(BaseModel):
    account: Address
    balance: int


class LedgerStateResponse(BaseModel):
    """The queryable state surface of both ledgers."""
    total_staked: int
    stake_chain_head: ChainHash
    stake_event_count: int
    total_rewards: int
    reward_chain_head: ChainHash
    reward_event_count: int
    beginning_of_stake_chain: ChainHash


class AccountResponse(BaseModel):
    """Account stake alongside the stake chain's current head."""
    account: Address
    total_user_stake: int
    stake_chain: ChainHash
    stake_chain_snapshot: ChainHash


class SettlementResponse(BaseModel):
    """A verified and settled claim."""
    claim: ClaimResult
    total_claimed: int
    claims_settled: int


# ============================================================
# Error translation
# ============================================================

_STATUS_BY_ERROR = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InvalidAccount: status.HTTP_400_BAD_REQUEST,
    InvalidTimestamp: status.HTTP_400_BAD_REQUEST,
    InsufficientStake: status.HTTP_400_BAD_REQUEST,
    InsufficientBalance: status.HTTP_400_BAD_REQUEST,
    NonMonotonicTimestamp: status.HTTP_409_CONFLICT,
    SettlementError: status.HTTP_409_CONFLICT,
    ChainIntegrityError: 422,
}


def _http_error(e: LedgerError) -> HTTPException:
    code = _STATUS_BY_ERROR.get(type(e), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=str(e))


# ============================================================
# Command Endpoints (Append-Only Operations)
# ============================================================

@router.post(
    "/ledger/stake",
    response_model=StakeEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Stake tokens",
)
async def stake(
    request: StakeRequest,
    ledger: StakeLedger = Depends(get_stake_ledger),
):
    """
    Move tokens from the account into custody and extend the stake chain.

    The returned event carries the new chain head.
    """
    start = time.perf_counter()
    try:
        event = ledger.stake(request.account, request.amount, request.timestamp)
    except LedgerError as e:
        raise _http_error(e)

    get_metrics().record_append("stake", (time.perf_counter() - start) * 1000)
    return event


@router.post(
    "/ledger/unstake",
    response_model=StakeEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Withdraw staked tokens",
)
async def unstake(
    request: StakeRequest,
    ledger: StakeLedger = Depends(get_stake_ledger),
):
    """Return tokens from custody and extend the stake chain."""
    start = time.perf_counter()
    try:
        event = ledger.unstake(request.account, request.amount, request.timestamp)
    except LedgerError as e:
        raise _http_error(e)

    get_metrics().record_append("unstake", (time.perf_counter() - start) * 1000)
    return event


@router.post(
    "/ledger/rewards",
    response_model=RewardEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Add rewards to the pool",
)
async def add_rewards(
    request: RewardRequest,
    ledger: RewardLedger = Depends(get_reward_ledger),
):
    """
    Extend the reward chain.

    Rewards are pooled; accounts claim their share through /claims/verify.
    """
    start = time.perf_counter()
    try:
        event = ledger.add_rewards(request.amount, request.timestamp)
    except LedgerError as e:
        raise _http_error(e)

    get_metrics().record_append("reward", (time.perf_counter() - start) * 1000)
    return event


@router.post(
    "/custody/mint",
    response_model=BalanceResponse,
    tags=["Custody"],
    summary="Fund an account (development only)",
)
async def mint(
    request: MintRequest,
    ledger: StakeLedger = Depends(get_stake_ledger),
):
    custody = ledger.custody
    if not isinstance(custody, InMemoryCustody):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Minting is only available with in-memory custody",
        )
    try:
        custody.mint(request.account, request.amount)
    except LedgerError as e:
        raise _http_error(e)

    return BalanceResponse(account=request.account, balance=custody.balance_of(request.account))


# ============================================================
# Query Endpoints (Read Model)
# ============================================================

@router.get(
    "/ledger/state",
    response_model=LedgerStateResponse,
    tags=["Queries"],
    summary="Get totals and chain heads",
)
async def get_state(
    stake_ledger: StakeLedger = Depends(get_stake_ledger),
    reward_ledger: RewardLedger = Depends(get_reward_ledger),
):
    return LedgerStateResponse(
        total_staked=stake_ledger.total_staked,
        stake_chain_head=stake_ledger.chain_head,
        stake_event_count=stake_ledger.event_count,
        total_rewards=reward_ledger.total_rewards,
        reward_chain_head=reward_ledger.chain_head,
        reward_event_count=reward_ledger.event_count,
        beginning_of_stake_chain=reward_ledger.beginning_of_stake_chain,
    )


@router.get(
    "/ledger/accounts/{account}",
    response_model=AccountResponse,
    tags=["Queries"],
    summary="Get an account's stake snapshot",
)
async def get_account(
    account: str,
    ledger: StakeLedger = Depends(get_stake_ledger),
):
    """
    Unknown accounts report zero stake and the genesis hash as their
    snapshot.
    """
    try:
        snapshot = ledger.snapshot(account)
    except LedgerError as e:
        raise _http_error(e)

    return AccountResponse(
        account=account,
        total_user_stake=snapshot.total_user_stake,
        stake_chain=snapshot.stake_chain,
        stake_chain_snapshot=snapshot.stake_chain_snapshot,
    )


def _list_range(store: EventStore, from_hash: Optional[str], to_hash: Optional[str]) -> list:
    try:
        return store.list_range(from_hash, to_hash)
    except (EventStoreError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get(
    "/ledger/stake-events",
    response_model=list[StakeEvent],
    tags=["Queries"],
    summary="List stake chain events",
)
async def list_stake_events(
    from_hash: Optional[str] = None,
    to_hash: Optional[str] = None,
    ledger: StakeLedger = Depends(get_stake_ledger),
):
    """
    Contiguous stake chain slice, both bounds inclusive.

    Claimants use this to assemble claim windows.
    """
    return _list_range(ledger.event_store, from_hash, to_hash)


@router.get(
    "/ledger/reward-events",
    response_model=list[RewardEvent],
    tags=["Queries"],
    summary="List reward chain events",
)
async def list_reward_events(
    from_hash: Optional[str] = None,
    to_hash: Optional[str] = None,
    ledger: RewardLedger = Depends(get_reward_ledger),
):
    """Contiguous reward chain slice, both bounds inclusive."""
    return _list_range(ledger.event_store, from_hash, to_hash)


# ============================================================
# Claims
# ============================================================

def _trusted(store: EventStore, events: list, label: str):
    """Look up both ends of a window in our own store."""
    if not events:
        raise ChainIntegrityError(f"{label} window is empty")
    first = store.find(events[0].current_hash)
    last = store.find(events[-1].current_hash)
    if first is None or last is None:
        raise ChainIntegrityError(f"{label} window is not bounded by known chain nodes")
    return first, last


def resolve_anchors(
    window: ClaimWindow,
    stake_ledger: StakeLedger,
    reward_ledger: RewardLedger,
) -> TrustedAnchors:
    """
    Derive trusted anchors for a window from the ledgers' own stores.

    A window bound is trusted only if the node exists in our chain. The
    stake node following the window's end supplies next_stake_timestamp;
    when there is none, stake_to is the head. The account anchor is the
    account's latest stake node at or before the window start.

    Raises:
        ChainIntegrityError: If a bound is not a node of our chains, or the
            window carries an account anchor other than ours
    """
    stake_store = stake_ledger.event_store
    stake_from, stake_to = _trusted(stake_store, window.stake_events, "stake")
    reward_from, reward_to = _trusted(reward_ledger.event_store, window.reward_events, "reward")

    following = stake_store.list_range(from_hash=stake_to.current_hash)
    next_stake_timestamp = following[1].timestamp if len(following) > 1 else None

    account_anchor = find_account_anchor(stake_store, window.account, stake_from.current_hash)
    if window.account_anchor is not None and (
        account_anchor is None or window.account_anchor.current_hash != account_anchor.current_hash
    ):
        raise ChainIntegrityError("account anchor is not the account's latest node before the window")

    return TrustedAnchors(
        stake_from=stake_from.current_hash,
        stake_to=stake_to.current_hash,
        reward_from=reward_from.current_hash,
        reward_to=reward_to.current_hash,
        next_stake_timestamp=next_stake_timestamp,
        stake_to_is_head=next_stake_timestamp is None,
        account_anchor=account_anchor.current_hash if account_anchor is not None else None,
    )


def find_account_anchor(
    store: EventStore, account: str, stake_from: str
) -> Optional[StakeEvent]:
    """The account's latest stake node at or before stake_from, if any."""
    for event in reversed(store.list_range(to_hash=stake_from)):
        if event.account == account:
            return event
    return None


def _verify(
    window: ClaimWindow,
    stake_ledger: StakeLedger,
    reward_ledger: RewardLedger,
    verifier: ClaimVerifier,
) -> ClaimResult:
    try:
        anchors = resolve_anchors(window, stake_ledger, reward_ledger)
        if window.account_anchor is None and anchors.account_anchor is not None:
            window = window.model_copy(update={
                "account_anchor": stake_ledger.event_store.find(anchors.account_anchor),
            })
        result = verifier.verify(window, anchors)
    except ChainIntegrityError as e:
        get_metrics().record_claim(verified=False)
        logger.warning("Claim rejected", account=window.account, error=str(e))
        raise _http_error(e)

    get_metrics().record_claim(verified=True)
    return result


@router.post(
    "/claims/verify",
    response_model=ClaimResult,
    tags=["Claims"],
    summary="Verify a claim window",
)
async def verify_claim(
    window: ClaimWindow,
    stake_ledger: StakeLedger = Depends(get_stake_ledger),
    reward_ledger: RewardLedger = Depends(get_reward_ledger),
    verifier: ClaimVerifier = Depends(get_verifier),
):
    """
    Verify a claimant-supplied window and compute the entitlement.

    Forged, reordered, truncated or unanchored windows are rejected with
    422. A rejected claim is never partially honored.
    """
    return _verify(window, stake_ledger, reward_ledger, verifier)


@router.post(
    "/claims/settle",
    response_model=SettlementResponse,
    tags=["Claims"],
    summary="Verify and settle a claim window",
)
async def settle_claim(
    window: ClaimWindow,
    stake_ledger: StakeLedger = Depends(get_stake_ledger),
    reward_ledger: RewardLedger = Depends(get_reward_ledger),
    verifier: ClaimVerifier = Depends(get_verifier),
    registry: ClaimRegistry = Depends(get_registry),
):
    """
    Verify, then consume the window.

    The account's next claim must start where this one ended.
    """
    result = _verify(window, stake_ledger, reward_ledger, verifier)
    try:
        settled = registry.settle(result)
    except SettlementError as e:
        raise _http_error(e)

    get_metrics().record_settlement()
    return SettlementResponse(
        claim=result,
        total_claimed=settled.total_claimed,
        claims_settled=settled.claims_settled,
    )
