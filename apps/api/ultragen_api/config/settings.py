"""Reconciler settings, built once at process start.

Handlers never read the environment directly: ``load_settings()`` assembles a
``ReconcilerSettings`` from ``config.env`` helpers and the tier catalog, the
application stores it on ``app.state`` at startup, and routes receive it via
``Depends(get_settings)``. Tests override that dependency instead of mutating
``os.environ``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ultragen_api.config import env
from ultragen_api.config.catalog import CatalogError, TierCatalog, load_tier_catalog

logger = logging.getLogger(__name__)

ACCEPTED_ORDER_STATUSES: frozenset[str] = frozenset({"paid", "approved"})


class SettingsError(RuntimeError):
    """Required configuration is missing or invalid."""


@dataclass(frozen=True)
class ReconcilerSettings:
    """Immutable configuration for the entitlement reconciler."""

    webhook_secret: str
    catalog: TierCatalog
    lifetime_product_id: Optional[str] = None
    store_timeout_seconds: float = 5.0
    profiles_table: str = "profiles"
    ledger_database_url: Optional[str] = None
    admin_token: Optional[str] = None
    environment: str = "local"
    accepted_statuses: frozenset[str] = ACCEPTED_ORDER_STATUSES


def load_settings() -> ReconcilerSettings:
    """Assemble settings from the environment and the tier catalog.

    Raises:
        SettingsError: missing webhook secret, invalid numeric option, or a
            tier catalog that fails validation
    """
    try:
        secret = env.get_webhook_secret()
        timeout = env.get_store_timeout_seconds()
        catalog = load_tier_catalog(env.get_tier_catalog_path())
    except (ValueError, CatalogError) as e:
        raise SettingsError(str(e)) from e

    lifetime_product_id = env.get_lifetime_product_id()
    if lifetime_product_id is None and catalog.lifetime_product is not None:
        lifetime_product_id = catalog.lifetime_product.product_id

    settings = ReconcilerSettings(
        webhook_secret=secret,
        catalog=catalog,
        lifetime_product_id=lifetime_product_id,
        store_timeout_seconds=timeout,
        profiles_table=env.get_profiles_table(),
        ledger_database_url=env.get_ledger_database_url(),
        admin_token=env.get_admin_token(),
        environment=env.get_ultragen_env(),
    )

    logger.info(
        "Reconciler settings loaded",
        extra={
            "catalog_version": catalog.catalog_version,
            "tiers": catalog.tier_ids,
            "lifetime_product_configured": lifetime_product_id is not None,
            "ledger_enabled": settings.ledger_database_url is not None,
            "environment": settings.environment,
        },
    )
    return settings


def get_settings(request: Request) -> ReconcilerSettings:
    """FastAPI dependency: settings stored on app.state at startup.

    Falls back to loading (and caching) on first use when the startup hook
    did not run. Raises SettingsError if configuration is incomplete.
    """
    settings: Optional[ReconcilerSettings] = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = load_settings()
        request.app.state.settings = settings
    return settings
