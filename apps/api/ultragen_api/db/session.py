"""Delivery ledger database handle.

The ledger is optional: without DATABASE_URL the webhook skips the dedup
gate. When configured, one LedgerDatabase is shared by requests; each request
opens its own short-lived Session.

Building the handle does no I/O. The engine is created on first use and the
schema on the first successful ledger operation, so an unreachable database
surfaces as a SQLAlchemyError inside the caller (webhook, /readyz) instead of
failing dependency resolution.
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Depends, Request
from sqlalchemy import Engine, NullPool, create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ultragen_api.config.settings import ReconcilerSettings, get_settings
from ultragen_api.db.models import Base

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str) -> Engine:
    """Build an engine for the ledger.

    In-memory SQLite shares one connection (StaticPool) so every session sees
    the same tables; everything else uses NullPool (the pooler does pooling).
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, poolclass=NullPool)


class LedgerDatabase:
    """Engine + session factory for the webhook_dedup_events table."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None
        self._schema_ready = False
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            with self._lock:
                if self._engine is None:
                    self._engine = build_engine(self.database_url)
                    self._sessionmaker = sessionmaker(
                        bind=self._engine, autocommit=False, autoflush=False, expire_on_commit=False
                    )
                    logger.info(
                        "Delivery ledger engine created",
                        extra={"database_url": _mask_password(self.database_url)},
                    )
        return self._engine

    def create_schema(self) -> None:
        """Create ledger tables if missing; a no-op once it has succeeded."""
        if self._schema_ready:
            return
        Base.metadata.create_all(self.engine)
        self._schema_ready = True

    @contextmanager
    def session(self) -> Iterator[Session]:
        self.engine  # builds the session factory on first use
        db = self._sessionmaker()
        try:
            yield db
        finally:
            db.close()

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()


def get_ledger(
    request: Request,
    settings: ReconcilerSettings = Depends(get_settings),
) -> Optional[LedgerDatabase]:
    """FastAPI dependency: the delivery ledger, or None when DATABASE_URL is unset.

    Never connects; see the module docstring.
    """
    state = request.app.state
    if not getattr(state, "ledger_initialized", False):
        state.ledger = (
            LedgerDatabase(settings.ledger_database_url) if settings.ledger_database_url else None
        )
        state.ledger_initialized = True
    return state.ledger
