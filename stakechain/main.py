"""
StakeChain - Stake/Reward Hash-Chain Ledger

Main application entry point.

Nothing is edited. Things happen, and each one is chained onto the last.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stakechain.api.routes import router
from stakechain.core import (
    ClaimRegistry,
    ClaimVerifier,
    InMemoryCustody,
    LedgerConfig,
    RewardLedger,
    StakeLedger,
)
from stakechain.db import StoreConfig
from stakechain.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    store_config = StoreConfig.from_env()
    ledger_config = LedgerConfig.from_env()
    stake_store, reward_store = store_config.create_stores()

    # Replaying verifies both chains; a tampered store refuses to start
    app.state.stake_ledger = StakeLedger.load_from_store(
        stake_store, custody=InMemoryCustody(), config=ledger_config
    )
    app.state.reward_ledger = RewardLedger.load_from_store(reward_store, config=ledger_config)
    app.state.verifier = ClaimVerifier()
    app.state.claim_registry = ClaimRegistry()

    logger.info(
        "Application startup complete",
        store_driver=store_config.driver.value,
        database=store_config.database.to_url(include_password=False) if store_config.database else None,
        stake_events=app.state.stake_ledger.event_count,
        reward_events=app.state.reward_ledger.event_count,
        stake_chain_head=app.state.stake_ledger.chain_head,
        reward_chain_head=app.state.reward_ledger.chain_head,
    )

    yield

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application. Services are created in the lifespan."""
    app = FastAPI(
        title="StakeChain",
        description="""
## Stake/Reward Hash-Chain Ledger

Two append-only ledgers, each a keccak-256 hash chain:

- **Stake chain**: every stake and unstake, all accounts, one order
- **Reward chain**: pooled reward additions

Claimants prove their share of rewards by submitting a window of both
chains. The window is re-hashed end to end and tied to nodes this
service already holds before any entitlement is computed.

### API Design

- All writes are append-only events
- No PATCH, no PUT, no DELETE
- Every response event carries its chain hash

### Storage Backends

- **memory**: Development/testing (default)
- **psycopg2**: PostgreSQL, one table per chain

Set `DATABASE_URL` (or `DATABASE_HOST`) to use PostgreSQL.
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For ledger health, use /health/ledger
        """
        return {"status": "healthy", "service": "stakechain"}

    @app.get("/health/ledger", tags=["System"])
    async def health_ledger(request: Request):
        """
        Ledger health check.

        Verifies:
        - Chain integrity of both ledgers
        - Store head consistency
        - Event counts

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            stake_ledger=request.app.state.stake_ledger,
            reward_ledger=request.app.state.reward_ledger,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()
