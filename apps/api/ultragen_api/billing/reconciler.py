"""Entitlement reconciliation core (pure, no I/O).

Maps one billing event to at most one partial update of an account:

- status filter: only completed-payment statuses are actionable
- lifetime rule: product_id == configured lifetime SKU → lifetime flag on
- tier rule: recognised plan name → tier set, credits reset to the allotment

Both rules are evaluated on every event; a single order can satisfy both.
Credits are overwritten, not incremented: a renewal replaces the remaining
balance with a fresh allotment (monthly-refill model).
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ultragen_api.billing.models import AccountEntitlement, EntitlementEvent, EntitlementPatch
from ultragen_api.config.catalog import TierCatalog, TierDescriptor
from ultragen_api.config.settings import ACCEPTED_ORDER_STATUSES


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of evaluating the mutation rules for one event."""

    patch: EntitlementPatch
    lifetime_matched: bool = False
    tier: Optional[TierDescriptor] = None
    unknown_plan_name: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.patch.is_empty()

    def rules_matched(self) -> list[str]:
        matched = []
        if self.lifetime_matched:
            matched.append("lifetime")
        if self.tier is not None:
            matched.append("tier")
        return matched


def is_actionable_status(
    order_status: Optional[str],
    accepted: Iterable[str] = ACCEPTED_ORDER_STATUSES,
) -> bool:
    """True for completed-payment statuses ("paid", "approved").

    Every other lifecycle status (waiting_payment, refused, refunded,
    chargedback, ...) is acknowledged without mutation.
    """
    if not isinstance(order_status, str):
        return False
    return order_status.strip().lower() in accepted


def derive_entitlement_patch(
    event: EntitlementEvent,
    catalog: TierCatalog,
    lifetime_product_id: Optional[str],
) -> EntitlementDecision:
    """Evaluate the lifetime and tier rules and merge them into one patch."""
    lifetime_matched = (
        lifetime_product_id is not None
        and event.product_id is not None
        and str(event.product_id).strip() == lifetime_product_id
    )

    plan_name = event.plan_name
    tier = catalog.resolve(plan_name)
    unknown_plan_name = plan_name if plan_name is not None and tier is None else None

    patch = EntitlementPatch(
        has_lifetime_entitlement=True if lifetime_matched else None,
        subscription_tier=tier.tier_id if tier else None,
        credits=tier.credit_allotment if tier else None,
    )
    return EntitlementDecision(
        patch=patch,
        lifetime_matched=lifetime_matched,
        tier=tier,
        unknown_plan_name=unknown_plan_name,
    )


def apply_patch(account: AccountEntitlement, patch: EntitlementPatch) -> AccountEntitlement:
    """Return the post-update account; fields absent from the patch are kept."""
    update: dict = {}
    if patch.has_lifetime_entitlement:
        update["has_lifetime_entitlement"] = True
    if patch.subscription_tier is not None:
        update["subscription_tier"] = patch.subscription_tier
    if patch.credits is not None:
        update["credits"] = patch.credits
    return account.model_copy(update=update)
