"""Supabase client configuration for the profiles store.

SECURITY NOTICE:
- The reconciler writes entitlements for arbitrary users, so it uses the
  SECRET (service role) key, which bypasses RLS. NEVER expose it to clients.

KEY NAMING TRANSITION:
- New Supabase UI (2024+): SB_SECRET_KEY
- Legacy (pre-2024): SUPABASE_SERVICE_ROLE_KEY
- Falls back to the legacy name if the new name is not set
"""

import logging
import os

from supabase import Client, ClientOptions, create_client

logger = logging.getLogger(__name__)


def get_supabase_url() -> str:
    """Get Supabase project URL from environment.

    Returns:
        str: Supabase URL (https://[project_ref].supabase.co)

    Raises:
        RuntimeError: If SUPABASE_URL not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise RuntimeError(
            "SUPABASE_URL environment variable not set. "
            "Required for the profiles store."
        )
    return url


def get_supabase_secret_key() -> str:
    """Get Supabase secret (service role) key from environment.

    Priority:
    1. SB_SECRET_KEY (new standard, Supabase UI 2024+)
    2. SUPABASE_SERVICE_ROLE_KEY (legacy, backward compatibility)

    Raises:
        RuntimeError: If neither key is set
    """
    key = os.getenv("SB_SECRET_KEY")
    if key:
        return key

    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if key:
        logger.info(
            "Using legacy SUPABASE_SERVICE_ROLE_KEY (consider migrating to SB_SECRET_KEY)"
        )
        return key

    raise RuntimeError(
        "Neither SB_SECRET_KEY nor SUPABASE_SERVICE_ROLE_KEY environment variable is set. "
        "Required for server-side entitlement updates. "
        "Set SB_SECRET_KEY (recommended) or SUPABASE_SERVICE_ROLE_KEY (legacy)."
    )


def create_supabase_admin_client(timeout_seconds: float) -> Client:
    """Create a Supabase admin client for server-side operations.

    Uses SECRET_KEY which bypasses RLS. The PostgREST timeout bounds every
    profiles read/write issued through this client.

    Raises:
        RuntimeError: If environment variables not set
    """
    url = get_supabase_url()
    secret_key = get_supabase_secret_key()

    # Log initialization (without exposing keys)
    logger.info(
        "Initializing Supabase admin client",
        extra={
            "supabase_url": url,
            "key_type": "secret",
            "postgrest_timeout_seconds": timeout_seconds,
        },
    )

    options = ClientOptions(postgrest_client_timeout=timeout_seconds)
    return create_client(url, secret_key, options=options)
