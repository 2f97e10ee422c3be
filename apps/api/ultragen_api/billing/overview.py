"""Admin overview of account entitlements: filtering and revenue summary."""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from ultragen_api.billing.models import AccountEntitlement
from ultragen_api.config.catalog import TierCatalog

PLAN_FILTER_ALL = "all"
PLAN_FILTER_FREE = "free"
PLAN_FILTER_LIFETIME = "lifetime"


class UnknownPlanFilter(ValueError):
    """Plan filter is neither a fixed keyword nor a catalog tier id."""


@dataclass
class EntitlementStats:
    total_users: int = 0
    active_subscribers: int = 0
    lifetime_holders: int = 0
    monthly_recurring_revenue: float = 0.0
    lifetime_revenue: float = 0.0
    currency: str = "BRL"
    plan_distribution: dict[str, int] = field(default_factory=dict)


def valid_plan_filters(catalog: TierCatalog) -> list[str]:
    return [PLAN_FILTER_ALL, PLAN_FILTER_FREE, PLAN_FILTER_LIFETIME, *catalog.tier_ids]


def _is_free(account: AccountEntitlement, catalog: TierCatalog) -> bool:
    # Legacy rows carry "free" or an empty tier for unpaid accounts
    return catalog.get_tier(account.subscription_tier or "") is None


def filter_entitlements(
    accounts: Iterable[AccountEntitlement],
    catalog: TierCatalog,
    search: Optional[str] = None,
    plan: str = PLAN_FILTER_ALL,
) -> list[AccountEntitlement]:
    """Case-insensitive email substring search combined with a plan filter.

    Raises:
        UnknownPlanFilter: plan is not all/free/lifetime or a tier id
    """
    if plan not in valid_plan_filters(catalog):
        raise UnknownPlanFilter(plan)

    needle = (search or "").strip().lower()
    result = []
    for account in accounts:
        if needle and needle not in (account.email or "").lower():
            continue
        if plan == PLAN_FILTER_FREE and not _is_free(account, catalog):
            continue
        if plan == PLAN_FILTER_LIFETIME and not account.has_lifetime_entitlement:
            continue
        if plan not in (PLAN_FILTER_ALL, PLAN_FILTER_FREE, PLAN_FILTER_LIFETIME) \
                and account.subscription_tier != plan:
            continue
        result.append(account)
    return result


def summarize_entitlements(
    accounts: Iterable[AccountEntitlement],
    catalog: TierCatalog,
) -> EntitlementStats:
    """Subscriber counts, MRR and lifetime revenue from catalog prices."""
    stats = EntitlementStats(
        currency=catalog.currency,
        plan_distribution={tier_id: 0 for tier_id in catalog.tier_ids} | {PLAN_FILTER_FREE: 0},
    )
    lifetime_price = catalog.lifetime_product.price if catalog.lifetime_product else 0.0

    for account in accounts:
        stats.total_users += 1
        if account.has_lifetime_entitlement:
            stats.lifetime_holders += 1
            stats.lifetime_revenue += lifetime_price

        tier = catalog.get_tier(account.subscription_tier or "")
        if tier is None:
            stats.plan_distribution[PLAN_FILTER_FREE] += 1
            continue
        stats.active_subscribers += 1
        stats.monthly_recurring_revenue += tier.monthly_price
        stats.plan_distribution[tier.tier_id] += 1

    stats.monthly_recurring_revenue = round(stats.monthly_recurring_revenue, 2)
    stats.lifetime_revenue = round(stats.lifetime_revenue, 2)
    return stats
