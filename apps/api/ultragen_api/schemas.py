"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details body (application/problem+json)."""

    type: str
    title: str
    status: int
    detail: Optional[Any] = None
    instance: Optional[str] = None


# ============================================================================
# POST /webhooks/kiwify
# ============================================================================


class WebhookAck(BaseModel):
    """2xx acknowledgement returned to the payment vendor.

    status:
      processed          – entitlement written; profile holds the post-update row
      ignored            – order status is not a completed payment
      no_action          – neither the lifetime nor a tier rule matched
      account_not_found  – no profile for the customer email (purchase before sign-up)
      already_processed  – delivery ledger has already applied this order
    """

    status: str
    profile: Optional[dict[str, Any]] = None
    rules: list[str] = Field(default_factory=list)


# ============================================================================
# GET /admin/entitlements
# ============================================================================


class EntitlementListResponse(BaseModel):
    """Filtered account entitlements."""

    total: int
    items: list[dict[str, Any]]


class EntitlementStatsResponse(BaseModel):
    """Admin dashboard summary."""

    total_users: int
    active_subscribers: int
    lifetime_holders: int
    monthly_recurring_revenue: float
    lifetime_revenue: float
    currency: str
    plan_distribution: dict[str, int]


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]
