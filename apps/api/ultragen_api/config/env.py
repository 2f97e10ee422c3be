"""Environment variable resolution utilities.

Canonical env names + fail-fast validation. Every read of the process
environment goes through here (Supabase credentials aside, see
supabase_client) so that settings are assembled in one place.
"""

import os
from typing import Optional


def get_ultragen_env() -> str:
    """Get deployment environment name.

    Priority:
    1. ULTRAGEN_ENV (canonical)
    2. DP_ENV (legacy)
    3. Default: "local"

    Returns:
        Environment name (lowercase)
    """
    return (
        os.getenv("ULTRAGEN_ENV")
        or os.getenv("DP_ENV")
        or "local"
    ).lower()


def is_production_env() -> bool:
    """True if ULTRAGEN_ENV (or DP_ENV) is prod/production."""
    return get_ultragen_env() in {"prod", "production"}


def get_webhook_secret() -> str:
    """Get the Kiwify webhook shared secret.

    Required: KIWIFY_WEBHOOK_SECRET (no built-in fallback value).

    Raises:
        ValueError: If KIWIFY_WEBHOOK_SECRET is unset or blank
    """
    secret = (os.getenv("KIWIFY_WEBHOOK_SECRET") or "").strip()
    if not secret:
        raise ValueError(
            "KIWIFY_WEBHOOK_SECRET is required. "
            "Set it to the token configured on the Kiwify webhook URL (?signature=...)."
        )
    return secret


def get_lifetime_product_id() -> Optional[str]:
    """Lifetime SKU override (ULTRAGEN_LIFETIME_PRODUCT_ID); None → use catalog."""
    value = (os.getenv("ULTRAGEN_LIFETIME_PRODUCT_ID") or "").strip()
    return value or None


def get_tier_catalog_path() -> Optional[str]:
    """Tier catalog override path (ULTRAGEN_TIER_CATALOG_PATH); None → bundled file."""
    value = (os.getenv("ULTRAGEN_TIER_CATALOG_PATH") or "").strip()
    return value or None


def get_store_timeout_seconds(default: float = 5.0) -> float:
    """Per-call profile store timeout in seconds.

    Raises:
        ValueError: If ULTRAGEN_STORE_TIMEOUT_SECONDS is not a positive number
    """
    raw = os.getenv("ULTRAGEN_STORE_TIMEOUT_SECONDS")
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(
            f"ULTRAGEN_STORE_TIMEOUT_SECONDS must be a number, got {raw!r}"
        ) from e
    if value <= 0:
        raise ValueError(
            f"ULTRAGEN_STORE_TIMEOUT_SECONDS must be > 0, got {raw!r}"
        )
    return value


def get_profiles_table() -> str:
    """Supabase table holding account entitlements."""
    return (os.getenv("ULTRAGEN_PROFILES_TABLE") or "profiles").strip()


def get_ledger_database_url() -> Optional[str]:
    """Delivery ledger database URL (DATABASE_URL); None disables the ledger."""
    value = (os.getenv("DATABASE_URL") or "").strip()
    return value or None


def get_admin_token() -> Optional[str]:
    """Admin API token (ADMIN_TOKEN); None leaves admin routes unconfigured."""
    value = (os.getenv("ADMIN_TOKEN") or "").strip()
    return value or None


def is_json_logging_enabled() -> bool:
    """Structured JSON logs unless ULTRAGEN_JSON_LOGS=false."""
    return (os.getenv("ULTRAGEN_JSON_LOGS") or "true").strip().lower() != "false"


def get_log_level() -> str:
    """Root log level (LOG_LEVEL, default INFO)."""
    return (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
