"""Entitlement event and account models.

EntitlementEvent is the inbound (untrusted) Kiwify order notification;
AccountEntitlement is a row of the profiles table; EntitlementPatch is the
partial update the reconciler derives from an event.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class CustomerInfo(BaseModel):
    """Customer block of a Kiwify order (only email is used)."""

    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None


class PlanInfo(BaseModel):
    """Subscription plan block of a Kiwify order."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


class EntitlementEvent(BaseModel):
    """Inbound billing event.

    Kiwify sends the subscription plan either as ``plan`` or ``Plan``; both are
    accepted and the lower-case key wins when both are present. Other casings
    (``PLAN``, ``Subscription.plan``) are not recognised.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[Union[str, int]] = None
    order_status: Optional[str] = None
    product_id: Optional[Union[str, int]] = None
    customer: Optional[CustomerInfo] = None
    plan: Optional[PlanInfo] = None
    plan_capitalized: Optional[PlanInfo] = Field(default=None, alias="Plan")

    @property
    def customer_email(self) -> Optional[str]:
        if self.customer is None or not self.customer.email:
            return None
        email = self.customer.email.strip()
        return email or None

    @property
    def plan_name(self) -> Optional[str]:
        for block in (self.plan, self.plan_capitalized):
            if block is not None and block.name and block.name.strip():
                return block.name
        return None


class AccountEntitlement(BaseModel):
    """Entitlement columns of a profiles row."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    email: Optional[str] = None
    subscription_tier: Optional[str] = None
    credits: int = 0
    has_lifetime_entitlement: bool = Field(default=False, alias="has_lifetime_prompt")
    created_at: Optional[datetime] = None

    def to_public(self) -> dict[str, Any]:
        """Serialize for API responses (column names, no None ids)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def entitlement_state(self) -> dict[str, Any]:
        """The three fields a webhook may write, keyed by column name."""
        return {
            "subscription_tier": self.subscription_tier,
            "credits": self.credits,
            "has_lifetime_prompt": self.has_lifetime_entitlement,
        }


class EntitlementPatch(BaseModel):
    """Partial update of an AccountEntitlement.

    Only fields that are set are written. The lifetime flag is monotonic: a
    patch can set it, never clear it.
    """

    model_config = ConfigDict(populate_by_name=True)

    has_lifetime_entitlement: Optional[bool] = Field(default=None, alias="has_lifetime_prompt")
    subscription_tier: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=0)

    def is_empty(self) -> bool:
        return not self.to_row()

    def to_row(self) -> dict[str, Any]:
        """Column -> value mapping for the store (only present fields)."""
        row: dict[str, Any] = {}
        if self.has_lifetime_entitlement:
            row["has_lifetime_prompt"] = True
        if self.subscription_tier is not None:
            row["subscription_tier"] = self.subscription_tier
        if self.credits is not None:
            row["credits"] = self.credits
        return row
