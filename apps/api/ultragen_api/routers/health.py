"""Health check endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from fastapi.concurrency import run_in_threadpool

from ultragen_api import __version__
from ultragen_api.billing.profile_store import ProfileStore, ProfileStoreError, get_profile_store
from ultragen_api.db.session import LedgerDatabase, get_ledger
from ultragen_api.schemas import HealthResponse

router = APIRouter()
logger = logging.getLogger(__name__)

LEDGER_DISABLED = "disabled"


async def check_profile_store(store: ProfileStore) -> str:
    """Check profiles table reachability.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        await run_in_threadpool(store.ping)
        return "up"
    except ProfileStoreError as e:
        logger.error(f"Profile store health check failed: {e}")
        return f"down: {str(e)[:50]}"


async def check_ledger(ledger: Optional[LedgerDatabase]) -> str:
    """Check delivery ledger connectivity ("disabled" when not configured)."""
    if ledger is None:
        return LEDGER_DISABLED
    try:
        await run_in_threadpool(ledger.ping)
        return "up"
    except Exception as e:
        logger.error(f"Ledger health check failed: {e}")
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: ProfileStore = Depends(get_profile_store),
    ledger: Optional[LedgerDatabase] = Depends(get_ledger),
) -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and dependency health.
    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        services={
            "api": "up",
            "profile_store": await check_profile_store(store),
            "ledger": await check_ledger(ledger),
        },
    )


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(
    response: Response,
    store: ProfileStore = Depends(get_profile_store),
    ledger: Optional[LedgerDatabase] = Depends(get_ledger),
) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if the profile store, or a configured ledger, is down.
    """
    services = {
        "api": "up",
        "profile_store": await check_profile_store(store),
        "ledger": await check_ledger(ledger),
    }

    any_down = any(svc_status.startswith("down") for svc_status in services.values())
    if any_down:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)
