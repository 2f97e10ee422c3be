"""Admin endpoints for entitlement oversight.

WARNING: These endpoints are for authorized operators only.
- Protected by X-Admin-Token header (constant-time compare with ADMIN_TOKEN)
- Read-only; every access is logged
"""

import logging
import secrets
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool

from ultragen_api.billing.models import AccountEntitlement
from ultragen_api.billing.overview import (
    PLAN_FILTER_ALL,
    UnknownPlanFilter,
    filter_entitlements,
    summarize_entitlements,
    valid_plan_filters,
)
from ultragen_api.billing.profile_store import ProfileStore, ProfileStoreError, get_profile_store
from ultragen_api.config.settings import ReconcilerSettings, get_settings
from ultragen_api.context import request_id_var
from ultragen_api.schemas import EntitlementListResponse, EntitlementStatsResponse

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _verify_admin_token(provided_token: Optional[str], settings: ReconcilerSettings) -> None:
    """Verify admin token using constant-time comparison.

    Raises:
        HTTPException 500: If ADMIN_TOKEN not configured
        HTTPException 401: If token is missing or invalid
    """
    expected_token = settings.admin_token
    if not expected_token:
        logger.error("Admin token not configured", extra={"event": "admin.misconfigured"})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not provided_token or not secrets.compare_digest(provided_token, expected_token):
        logger.warning(
            "Invalid admin token attempt",
            extra={
                "event": "admin.auth_failed",
                "request_id": request_id_var.get(),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )


async def _load_profiles(store: ProfileStore) -> list[AccountEntitlement]:
    try:
        return await run_in_threadpool(store.list_profiles)
    except ProfileStoreError as e:
        logger.error(
            "Profile listing failed",
            extra={"event": "admin.store_failed", "error_type": type(e).__name__},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Profile store unavailable",
        ) from e


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/entitlements", response_model=EntitlementListResponse)
async def list_entitlements(
    search: Optional[str] = Query(default=None, max_length=200),
    plan: str = Query(default=PLAN_FILTER_ALL),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: ReconcilerSettings = Depends(get_settings),
    store: ProfileStore = Depends(get_profile_store),
) -> EntitlementListResponse:
    """List account entitlements, newest first.

    ADMIN ONLY. ``plan`` is one of all, free, lifetime or a tier id.

    Raises:
        HTTPException 400: Unknown plan filter
        HTTPException 401: Invalid admin token
        HTTPException 502: Profile store failure
    """
    _verify_admin_token(x_admin_token, settings)

    profiles = await _load_profiles(store)
    try:
        selected = filter_entitlements(profiles, settings.catalog, search=search, plan=plan)
    except UnknownPlanFilter:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown plan filter {plan!r}; expected one of {valid_plan_filters(settings.catalog)}",
        )

    logger.info(
        "Entitlements listed",
        extra={
            "event": "admin.entitlements.list",
            "plan_filter": plan,
            "has_search": bool(search),
            "result_count": len(selected),
        },
    )
    return EntitlementListResponse(
        total=len(selected),
        items=[account.to_public() for account in selected],
    )


@router.get("/entitlements/stats", response_model=EntitlementStatsResponse)
async def entitlement_stats(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: ReconcilerSettings = Depends(get_settings),
    store: ProfileStore = Depends(get_profile_store),
) -> EntitlementStatsResponse:
    """Subscriber counts and revenue computed from catalog prices.

    ADMIN ONLY.
    """
    _verify_admin_token(x_admin_token, settings)

    profiles = await _load_profiles(store)
    stats = summarize_entitlements(profiles, settings.catalog)

    logger.info(
        "Entitlement stats computed",
        extra={"event": "admin.entitlements.stats", "total_users": stats.total_users},
    )
    return EntitlementStatsResponse(**asdict(stats))
