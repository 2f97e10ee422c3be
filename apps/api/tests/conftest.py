"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import json
import logging
import threading
import time
from io import StringIO
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from ultragen_api.billing.models import AccountEntitlement, EntitlementPatch
from ultragen_api.billing.profile_store import get_profile_store
from ultragen_api.billing.reconciler import apply_patch
from ultragen_api.config.catalog import load_tier_catalog
from ultragen_api.config.settings import ReconcilerSettings, get_settings
from ultragen_api.db.session import LedgerDatabase, get_ledger
from ultragen_api.main import app
from ultragen_api.utils.logging import JSONFormatter

TEST_WEBHOOK_SECRET = "test-secret"
TEST_ADMIN_TOKEN = "admin-test-token"
LIFETIME_PRODUCT_ID = "3IrPND2"


# ============================================================================
# Fake profile store
# ============================================================================


class FakeProfileStore:
    """In-memory ProfileStore keyed by exact email.

    Records every call so tests can assert "no lookup" / "no write".
    ``fail_with`` makes every call raise; ``delay_seconds`` makes every call
    block (to exercise the handler timeout).
    """

    def __init__(self, accounts: Optional[list[AccountEntitlement]] = None) -> None:
        self.accounts: dict[str, AccountEntitlement] = {}
        for account in accounts or []:
            self.add(account)
        self.find_calls: list[str] = []
        self.update_calls: list[tuple[str, EntitlementPatch]] = []
        self.fail_with: Optional[Exception] = None
        self.delay_seconds: float = 0.0
        self._lock = threading.Lock()

    def add(self, account: AccountEntitlement) -> None:
        self.accounts[account.email] = account

    def get(self, email: str) -> Optional[AccountEntitlement]:
        return self.accounts.get(email)

    @property
    def call_count(self) -> int:
        return len(self.find_calls) + len(self.update_calls)

    def _simulate_backend(self) -> None:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with

    def find_by_email(self, email: str) -> Optional[AccountEntitlement]:
        self.find_calls.append(email)
        self._simulate_backend()
        return self.accounts.get(email)

    def update_by_email(self, email: str, patch: EntitlementPatch) -> list[AccountEntitlement]:
        self.update_calls.append((email, patch))
        self._simulate_backend()
        with self._lock:
            account = self.accounts.get(email)
            if account is None:
                return []
            updated = apply_patch(account, patch)
            self.accounts[email] = updated
            return [updated]

    def list_profiles(self) -> list[AccountEntitlement]:
        self._simulate_backend()
        return sorted(
            self.accounts.values(),
            key=lambda a: a.created_at.isoformat() if a.created_at else "",
            reverse=True,
        )

    def ping(self) -> None:
        self._simulate_backend()


def make_account(
    email: str,
    *,
    tier: Optional[str] = "free",
    credits: int = 0,
    lifetime: bool = False,
    created_at: str = "2025-01-01T00:00:00+00:00",
) -> AccountEntitlement:
    """Build a profiles row as the store would return it."""
    return AccountEntitlement.model_validate({
        "id": f"user-{email.split('@')[0]}",
        "email": email,
        "subscription_tier": tier,
        "credits": credits,
        "has_lifetime_prompt": lifetime,
        "created_at": created_at,
    })


# ============================================================================
# Settings / ledger / client fixtures
# ============================================================================


@pytest.fixture(scope="session")
def tier_catalog():
    """Bundled tier catalog (Ultra Start / Pro / Max)."""
    return load_tier_catalog()


@pytest.fixture
def settings(tier_catalog) -> ReconcilerSettings:
    return ReconcilerSettings(
        webhook_secret=TEST_WEBHOOK_SECRET,
        catalog=tier_catalog,
        lifetime_product_id=LIFETIME_PRODUCT_ID,
        store_timeout_seconds=1.0,
        admin_token=TEST_ADMIN_TOKEN,
        environment="test",
    )


@pytest.fixture
def account_factory():
    """Factory for profiles rows: account_factory(email, tier=..., credits=..., lifetime=...)."""
    return make_account


@pytest.fixture
def store() -> FakeProfileStore:
    return FakeProfileStore()


@pytest.fixture
def ledger():
    """In-memory SQLite delivery ledger (StaticPool: one shared connection)."""
    db = LedgerDatabase("sqlite:///:memory:")
    db.create_schema()
    yield db
    db.dispose()


def _install_overrides(settings, store, ledger) -> None:
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_profile_store] = lambda: store
    app.dependency_overrides[get_ledger] = lambda: ledger


@pytest.fixture
def client(settings, store):
    """TestClient with settings/store overridden and the ledger disabled."""
    _install_overrides(settings, store, None)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def ledger_client(settings, store, ledger):
    """TestClient with the SQLite delivery ledger enabled."""
    _install_overrides(settings, store, ledger)
    yield TestClient(app)
    app.dependency_overrides.clear()


# SQLite cannot create a file under a directory that does not exist
UNREACHABLE_LEDGER_URL = "sqlite:////nonexistent_dir/ultragen/ledger.db"


@pytest.fixture
def down_ledger_client(settings, store):
    """TestClient whose configured ledger database cannot be opened."""
    down_ledger = LedgerDatabase(UNREACHABLE_LEDGER_URL)
    _install_overrides(settings, store, down_ledger)
    yield TestClient(app)
    app.dependency_overrides.clear()
    down_ledger.dispose()


# ============================================================================
# Log capture
# ============================================================================


def _parse_json_logs(raw: str) -> list[dict]:
    logs = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            logs.append(json.loads(line))
        except json.JSONDecodeError:
            pass
    return logs


class LogCapture:
    """Capture JSON-formatted log output for a test block."""

    def __init__(self) -> None:
        self._root = logging.getLogger()
        self._saved: list[logging.Handler] = []
        self._saved_level = self._root.level
        self._stream: StringIO | None = None
        self._handler: logging.StreamHandler | None = None

    def __enter__(self) -> "LogCapture":
        self._saved = self._root.handlers[:]
        for h in self._saved:
            self._root.removeHandler(h)
        self._stream = StringIO()
        self._handler = logging.StreamHandler(self._stream)
        self._handler.setFormatter(JSONFormatter())
        self._root.addHandler(self._handler)
        self._root.setLevel(logging.INFO)
        return self

    def __exit__(self, *_) -> None:
        if self._handler:
            self._root.removeHandler(self._handler)
        if self._stream:
            self._stream.close()
        for h in self._saved:
            self._root.addHandler(h)
        self._root.setLevel(self._saved_level)

    def raw(self) -> str:
        assert self._stream is not None and not self._stream.closed, \
            "Call raw() inside the `with LogCapture()` block"
        return self._stream.getvalue()

    def logs(self) -> list[dict]:
        return _parse_json_logs(self.raw())

    def messages(self) -> list[str]:
        return [entry.get("message", "") for entry in self.logs()]

    def find(self, message: str) -> list[dict]:
        return [entry for entry in self.logs() if entry.get("message") == message]


@pytest.fixture
def log_capture():
    with LogCapture() as capture:
        yield capture
