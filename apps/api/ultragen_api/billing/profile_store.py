"""Profiles store: account entitlements keyed by email.

The webhook has no stable internal user id at delivery time, so every
lookup and update filters on the ``email`` column. The live implementation
talks to Supabase (PostgREST); tests substitute any object that satisfies
``ProfileStore``.
"""

import logging
import threading
from typing import Callable, Optional, Protocol

import httpx
from fastapi import Depends, Request
from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import Client

from ultragen_api.billing.models import AccountEntitlement, EntitlementPatch
from ultragen_api.config.settings import ReconcilerSettings, get_settings
from ultragen_api.supabase_client import create_supabase_admin_client

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "id, email, subscription_tier, credits, has_lifetime_prompt, created_at"


class ProfileStoreError(RuntimeError):
    """Profiles store unreachable, misconfigured, or rejected the query."""


class ProfileStore(Protocol):
    """Operations the reconciler and admin routes need from the store."""

    def find_by_email(self, email: str) -> Optional[AccountEntitlement]: ...

    def update_by_email(self, email: str, patch: EntitlementPatch) -> list[AccountEntitlement]: ...

    def list_profiles(self) -> list[AccountEntitlement]: ...

    def ping(self) -> None: ...


class SupabaseProfileStore:
    """ProfileStore backed by a Supabase table.

    The client is created on first use so that a missing SUPABASE_URL or key
    surfaces as a ProfileStoreError on the request that needs the store.
    """

    def __init__(
        self,
        table: str = "profiles",
        timeout_seconds: float = 5.0,
        client_factory: Optional[Callable[[float], Client]] = None,
    ) -> None:
        self.table = table
        self.timeout_seconds = timeout_seconds
        self._client_factory = client_factory or create_supabase_admin_client
        self._client: Optional[Client] = None
        self._lock = threading.Lock()

    def _get_client(self) -> Client:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    try:
                        self._client = self._client_factory(self.timeout_seconds)
                    except RuntimeError as e:
                        raise ProfileStoreError(str(e)) from e
        return self._client

    def _execute(self, operation: str, build_query: Callable[[], object]) -> list[dict]:
        """Run a PostgREST query, mapping client/transport errors to ProfileStoreError."""
        try:
            response = build_query().execute()
        except APIError as e:
            logger.error(
                "PROFILE_STORE_API_ERROR",
                extra={"operation": operation, "table": self.table, "error_code": e.code},
            )
            raise ProfileStoreError(f"{operation} rejected by store: {e.message}") from e
        except httpx.TimeoutException as e:
            logger.error(
                "PROFILE_STORE_TIMEOUT",
                extra={"operation": operation, "table": self.table, "timeout_seconds": self.timeout_seconds},
            )
            raise ProfileStoreError(f"{operation} timed out after {self.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            logger.error(
                "PROFILE_STORE_TRANSPORT_ERROR",
                extra={"operation": operation, "table": self.table, "error_type": type(e).__name__},
            )
            raise ProfileStoreError(f"{operation} failed: {type(e).__name__}") from e
        return list(response.data or [])

    @staticmethod
    def _to_accounts(rows: list[dict]) -> list[AccountEntitlement]:
        try:
            return [AccountEntitlement.model_validate(row) for row in rows]
        except ValidationError as e:
            raise ProfileStoreError(f"Unexpected profiles row shape: {e.error_count()} errors") from e

    def find_by_email(self, email: str) -> Optional[AccountEntitlement]:
        client = self._get_client()
        rows = self._execute(
            "find_by_email",
            lambda: client.table(self.table).select(PROFILE_COLUMNS).eq("email", email).limit(1),
        )
        accounts = self._to_accounts(rows)
        return accounts[0] if accounts else None

    def update_by_email(self, email: str, patch: EntitlementPatch) -> list[AccountEntitlement]:
        row = patch.to_row()
        if not row:
            return []
        client = self._get_client()
        rows = self._execute(
            "update_by_email",
            lambda: client.table(self.table).update(row).eq("email", email),
        )
        return self._to_accounts(rows)

    def list_profiles(self) -> list[AccountEntitlement]:
        client = self._get_client()
        rows = self._execute(
            "list_profiles",
            lambda: client.table(self.table).select(PROFILE_COLUMNS).order("created_at", desc=True),
        )
        return self._to_accounts(rows)

    def ping(self) -> None:
        client = self._get_client()
        self._execute(
            "ping",
            lambda: client.table(self.table).select("id").limit(1),
        )


def get_profile_store(
    request: Request,
    settings: ReconcilerSettings = Depends(get_settings),
) -> ProfileStore:
    """FastAPI dependency: the store built at startup (or lazily on first use)."""
    store: Optional[ProfileStore] = getattr(request.app.state, "profile_store", None)
    if store is None:
        store = SupabaseProfileStore(
            table=settings.profiles_table,
            timeout_seconds=settings.store_timeout_seconds,
        )
        request.app.state.profile_store = store
    return store
