"""Webhook dedup gate: atomic INSERT ON CONFLICT for delivery idempotency.

Without a ledger, a redelivered "paid" event resets credits to the full tier
allotment even after the user has spent some of them. With DATABASE_URL set,
each actionable Kiwify order passes this gate before the profile write:

  1. INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       → row returned  : this request is the FIRST processor → continue
       → no row        : conflict exists → check if it is re-processable
  2. If no row (conflict): UPDATE ... WHERE status IN ('failed', 'unmatched')
     or a 'processing' row older than the lease, RETURNING id
       → row returned  : previous attempt failed, died mid-flight, or the
                         account did not exist yet; re-claim for processing
       → no row        : status is 'done' or live 'processing' (true duplicate) → 200

The UNIQUE constraint guarantees exactly one INSERT wins under concurrent
delivery; the UPDATE in step 2 is atomic per row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import TIMESTAMP, bindparam, text
from sqlalchemy.orm import Session

from ultragen_api.billing.models import EntitlementEvent

logger = logging.getLogger(__name__)

PROVIDER_KIWIFY = "kiwify"

# A 'processing' row older than this belongs to an attempt that died mid-flight
DEFAULT_PROCESSING_LEASE_SECONDS = 60.0


def _now_param():
    """:now bound through the column type (TIMESTAMPTZ on PostgreSQL, ISO text on SQLite)."""
    return bindparam("now", type_=TIMESTAMP(timezone=True))


# ---------------------------------------------------------------------------
# Dedup key extraction
# ---------------------------------------------------------------------------


def get_kiwify_dedup_key(event: EntitlementEvent, payload_hash: str) -> str:
    """Derive a deterministic dedup key for a Kiwify order event.

    Primary  : order_id (one per charge; a renewal is a new order)
    Fallback : sha256 of the raw body (identical redelivery only)
    """
    if event.order_id is not None and str(event.order_id).strip():
        return f"ord_{str(event.order_id).strip()}"
    return f"ph_{payload_hash}"


# ---------------------------------------------------------------------------
# Atomic dedup gate
# ---------------------------------------------------------------------------


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
    lease_seconds: float = DEFAULT_PROCESSING_LEASE_SECONDS,
) -> bool:
    """Attempt to atomically claim processing rights for (provider, dedup_key).

    Returns:
        True: INSERT succeeded OR a 'failed'/'unmatched' record, or a
            'processing' record whose lease expired, was reclaimed.
        False: A 'done' or live 'processing' record already exists.
    """
    now = datetime.now(timezone.utc)

    # Step 1: atomic insert
    insert_sql = text("""
        INSERT INTO webhook_dedup_events
            (provider, dedup_key, first_seen_at, status, request_hash)
        VALUES
            (:provider, :dedup_key, :now, 'processing', :request_hash)
        ON CONFLICT (provider, dedup_key) DO NOTHING
        RETURNING id
    """).bindparams(_now_param())
    row = db.execute(insert_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "request_hash": request_hash,
    }).fetchone()

    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    # Step 2: re-claim a failed, unmatched or abandoned delivery
    retry_sql = text("""
        UPDATE webhook_dedup_events
        SET status = 'processing', last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key
          AND (
            status IN ('failed', 'unmatched')
            OR (status = 'processing'
                AND COALESCE(last_seen_at, first_seen_at) < :stale_before)
          )
        RETURNING id
    """).bindparams(
        _now_param(),
        bindparam("stale_before", type_=TIMESTAMP(timezone=True)),
    )
    retry_row = db.execute(retry_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "stale_before": now - timedelta(seconds=lease_seconds),
    }).fetchone()

    db.commit()
    if retry_row is not None:
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    sql = text("""
        UPDATE webhook_dedup_events
        SET status = :status, last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key
    """).bindparams(_now_param())
    db.execute(sql, {
        "status": status,
        "provider": provider,
        "dedup_key": dedup_key,
        "now": datetime.now(timezone.utc),
    })
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'done' after the entitlement write succeeded."""
    _set_status(db, provider, dedup_key, "done")


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'failed' on store error (vendor retry re-claims it)."""
    _set_status(db, provider, dedup_key, "failed")


def mark_dedup_unmatched(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'unmatched': no account for the email yet."""
    _set_status(db, provider, dedup_key, "unmatched")


def get_dedup_status(db: Session, provider: str, dedup_key: str) -> Optional[str]:
    """Current ledger status for (provider, dedup_key), or None if unseen."""
    row = db.execute(
        text("""
            SELECT status FROM webhook_dedup_events
            WHERE provider = :provider AND dedup_key = :dedup_key
        """),
        {"provider": provider, "dedup_key": dedup_key},
    ).fetchone()
    return row[0] if row is not None else None
