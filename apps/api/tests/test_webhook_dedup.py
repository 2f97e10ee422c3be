"""Delivery ledger: webhook idempotency gate.

Goal: prove that a redelivered "paid" order does not reset a spent balance
once the ledger is enabled, and that deliveries which did not complete
(store failure, account not yet signed up) are re-claimed by the next
redelivery.

Coverage (SQLite in-memory ledger, fake profile store):
  T1) order_id redelivered after a spend → 200 already_processed; credits kept
  T2) first delivery → ledger status 'done'
  T3) store failure → 'failed'; redelivery re-claims and applies
  T4) unknown account → 'unmatched'; redelivery after sign-up applies
  T5) no order_id → payload hash key; identical body deduped, different body not
  T6) ledger unavailable → 500 WEBHOOK_LEDGER_UNAVAILABLE, store untouched
  T7) non-actionable / no-op events never touch the ledger
  T8) concurrent identical deliveries → exactly one profile write
  T9) ledger database unreachable → 401 still first; signed → 500, store untouched
  T10) attempt cancelled mid-flight → 'failed'; redelivery applies
  T11) 'processing' row past its lease (worker died) → redelivery re-claims
"""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import TIMESTAMP, bindparam, text
from sqlalchemy.exc import OperationalError

from ultragen_api.billing.models import EntitlementEvent
from ultragen_api.billing.profile_store import ProfileStoreError
from ultragen_api.billing.reconciler import derive_entitlement_patch
from ultragen_api.billing.webhook_dedup import (
    PROVIDER_KIWIFY,
    get_dedup_status,
    get_kiwify_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    mark_dedup_unmatched,
    try_acquire_dedup,
)
from ultragen_api.main import app
from ultragen_api.routers.webhooks import _apply_with_ledger, processing_lease_seconds
from ultragen_api.utils.sanitize import payload_hash_bytes

SIGNED_URL = "/webhooks/kiwify?signature=test-secret"


def _pro_order(order_id: str | None = "ord-1001", email: str = "buyer@example.com") -> dict:
    body = {
        "order_status": "paid",
        "product_id": "PROD-OTHER",
        "customer": {"email": email},
        "plan": {"name": "Ultra Pro"},
    }
    if order_id is not None:
        body["order_id"] = order_id
    return body


def _status(ledger, dedup_key: str):
    with ledger.session() as db:
        return get_dedup_status(db, PROVIDER_KIWIFY, dedup_key)


def _row_count(ledger) -> int:
    with ledger.session() as db:
        return db.execute(text("SELECT COUNT(*) FROM webhook_dedup_events")).scalar_one()


# ===========================================================================
# Gate primitives
# ===========================================================================


class TestDedupGate:
    def test_first_acquire_wins_second_is_duplicate(self, ledger):
        with ledger.session() as db:
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_1", "hash") is True
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_1", "hash") is False
            assert get_dedup_status(db, PROVIDER_KIWIFY, "ord_1") == "processing"

    def test_done_record_is_not_reclaimed(self, ledger):
        with ledger.session() as db:
            try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_2")
            mark_dedup_done(db, PROVIDER_KIWIFY, "ord_2")
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_2") is False
            assert get_dedup_status(db, PROVIDER_KIWIFY, "ord_2") == "done"

    @pytest.mark.parametrize("mark", [mark_dedup_failed, mark_dedup_unmatched])
    def test_failed_and_unmatched_records_are_reclaimed(self, ledger, mark):
        with ledger.session() as db:
            try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_3")
            mark(db, PROVIDER_KIWIFY, "ord_3")
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_3") is True
            assert get_dedup_status(db, PROVIDER_KIWIFY, "ord_3") == "processing"

    def test_keys_are_scoped_by_provider(self, ledger):
        with ledger.session() as db:
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_4") is True
            assert try_acquire_dedup(db, "other", "ord_4") is True

    def test_unseen_key_has_no_status(self, ledger):
        with ledger.session() as db:
            assert get_dedup_status(db, PROVIDER_KIWIFY, "ord_missing") is None


class TestDedupKey:
    def test_order_id_is_primary_key(self):
        event = EntitlementEvent.model_validate({"order_id": " abc-123 "})
        assert get_kiwify_dedup_key(event, "deadbeef") == "ord_abc-123"

    def test_numeric_order_id(self):
        event = EntitlementEvent.model_validate({"order_id": 987})
        assert get_kiwify_dedup_key(event, "deadbeef") == "ord_987"

    @pytest.mark.parametrize("order_id", [None, "", "   "])
    def test_payload_hash_fallback(self, order_id):
        event = EntitlementEvent.model_validate({"order_id": order_id})
        assert get_kiwify_dedup_key(event, "deadbeef") == "ph_deadbeef"


# ===========================================================================
# Webhook behaviour with the ledger enabled
# ===========================================================================


def test_t1_redelivery_after_spend_does_not_reset_credits(ledger_client, store, account_factory):
    store.add(account_factory("buyer@example.com", credits=0))

    first = ledger_client.post(SIGNED_URL, json=_pro_order())
    assert first.json()["status"] == "processed"
    assert store.get("buyer@example.com").credits == 70

    # User spends credits between deliveries
    store.add(store.get("buyer@example.com").model_copy(update={"credits": 12}))

    second = ledger_client.post(SIGNED_URL, json=_pro_order())

    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"
    assert store.get("buyer@example.com").credits == 12
    assert len(store.update_calls) == 1


def test_t2_first_delivery_marks_done(ledger_client, ledger, store, account_factory):
    store.add(account_factory("buyer@example.com"))

    response = ledger_client.post(SIGNED_URL, json=_pro_order("ord-2002"))

    assert response.json()["status"] == "processed"
    assert _status(ledger, "ord_ord-2002") == "done"


def test_t3_store_failure_then_redelivery_applies(ledger_client, ledger, store, account_factory):
    store.add(account_factory("buyer@example.com", credits=1))
    store.fail_with = ProfileStoreError("find_by_email timed out after 5.0s")

    failed = ledger_client.post(SIGNED_URL, json=_pro_order("ord-3003"))
    assert failed.status_code == 500
    assert _status(ledger, "ord_ord-3003") == "failed"

    store.fail_with = None
    retried = ledger_client.post(SIGNED_URL, json=_pro_order("ord-3003"))

    assert retried.status_code == 200
    assert retried.json()["status"] == "processed"
    assert store.get("buyer@example.com").credits == 70
    assert _status(ledger, "ord_ord-3003") == "done"


def test_t3_unexpected_error_marks_failed(ledger_client, ledger, store, account_factory):
    store.add(account_factory("buyer@example.com"))
    store.fail_with = KeyError("boom")

    response = ledger_client.post(SIGNED_URL, json=_pro_order("ord-3103"))

    assert response.status_code == 500
    assert response.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
    assert _status(ledger, "ord_ord-3103") == "failed"


def test_t4_unmatched_then_signup_then_redelivery_applies(ledger_client, ledger, store, account_factory):
    first = ledger_client.post(SIGNED_URL, json=_pro_order("ord-4004", email="late@example.com"))
    assert first.json()["status"] == "account_not_found"
    assert _status(ledger, "ord_ord-4004") == "unmatched"
    assert store.update_calls == []

    store.add(account_factory("late@example.com", credits=0))
    second = ledger_client.post(SIGNED_URL, json=_pro_order("ord-4004", email="late@example.com"))

    assert second.json()["status"] == "processed"
    assert store.get("late@example.com").credits == 70
    assert _status(ledger, "ord_ord-4004") == "done"


def test_t5_payload_hash_key_without_order_id(ledger_client, ledger, store, account_factory):
    store.add(account_factory("buyer@example.com"))
    body = b'{"order_status":"paid","customer":{"email":"buyer@example.com"},"plan":{"name":"Ultra Pro"}}'
    headers = {"Content-Type": "application/json"}

    first = ledger_client.post(SIGNED_URL, content=body, headers=headers)
    second = ledger_client.post(SIGNED_URL, content=body, headers=headers)
    # Same order, different serialization → different key
    third = ledger_client.post(SIGNED_URL, content=body.replace(b",", b", "), headers=headers)

    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "already_processed"
    assert third.json()["status"] == "processed"
    assert _status(ledger, f"ph_{payload_hash_bytes(body)}") == "done"


def test_t6_ledger_unavailable_returns_500_without_store_access(ledger_client, store, account_factory):
    store.add(account_factory("buyer@example.com"))

    with patch(
        "ultragen_api.routers.webhooks.try_acquire_dedup",
        side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
    ):
        response = ledger_client.post(SIGNED_URL, json=_pro_order("ord-6006"))

    assert response.status_code == 500
    assert response.headers["retry-after"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_LEDGER_UNAVAILABLE"
    assert store.call_count == 0


def test_t6_mark_failure_keeps_processed_response(ledger_client, ledger, store, account_factory, log_capture):
    store.add(account_factory("buyer@example.com"))

    with patch(
        "ultragen_api.routers.webhooks.mark_dedup_done",
        side_effect=OperationalError("UPDATE", {}, Exception("connection reset")),
    ):
        response = ledger_client.post(SIGNED_URL, json=_pro_order("ord-6106"))

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert log_capture.find("WEBHOOK_LEDGER_MARK_FAILED")


@pytest.mark.parametrize(
    "payload",
    [
        {**_pro_order("ord-7007"), "order_status": "waiting_payment"},
        {**_pro_order("ord-7007"), "plan": {"name": "Unknown Plan"}},
    ],
)
def test_t7_noop_events_do_not_touch_ledger(ledger_client, ledger, store, payload):
    response = ledger_client.post(SIGNED_URL, json=payload)

    assert response.status_code == 200
    assert _row_count(ledger) == 0


@pytest.mark.asyncio
async def test_t8_concurrent_identical_deliveries_write_once(ledger_client, ledger, store, account_factory):
    """5 concurrent deliveries of one order → exactly one profile write."""
    store.add(account_factory("buyer@example.com", credits=0))
    store.delay_seconds = 0.05

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as ac:
        responses = await asyncio.gather(
            *[ac.post(SIGNED_URL, json=_pro_order("ord-8008")) for _ in range(5)]
        )

    statuses = sorted(r.json()["status"] for r in responses)
    assert all(r.status_code == 200 for r in responses)
    assert statuses == ["already_processed"] * 4 + ["processed"]
    assert len(store.update_calls) == 1
    assert _status(ledger, "ord_ord-8008") == "done"


def _backdate(ledger, dedup_key: str, minutes: int) -> None:
    """Pretend the row was claimed `minutes` ago and never touched since."""
    stamp = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    with ledger.session() as db:
        db.execute(
            text("""
                UPDATE webhook_dedup_events
                SET first_seen_at = :ts, last_seen_at = NULL
                WHERE dedup_key = :dedup_key
            """).bindparams(bindparam("ts", type_=TIMESTAMP(timezone=True))),
            {"ts": stamp, "dedup_key": dedup_key},
        )
        db.commit()


def test_t9_unreachable_ledger_unsigned_request_is_401(down_ledger_client, store):
    response = down_ledger_client.post("/webhooks/kiwify", json=_pro_order("ord-9009"))

    assert response.status_code == 401
    assert store.call_count == 0


def test_t9_unreachable_ledger_signed_request_is_500(down_ledger_client, store, account_factory):
    store.add(account_factory("buyer@example.com"))

    response = down_ledger_client.post(SIGNED_URL, json=_pro_order("ord-9009"))

    assert response.status_code == 500
    assert response.headers["retry-after"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_LEDGER_UNAVAILABLE"
    assert store.call_count == 0


@pytest.mark.asyncio
async def test_t10_cancelled_attempt_is_released(ledger_client, ledger, settings, store, account_factory):
    store.add(account_factory("buyer@example.com", credits=3))
    event = EntitlementEvent.model_validate(_pro_order("ord-1010"))
    decision = derive_entitlement_patch(event, settings.catalog, settings.lifetime_product_id)

    with patch(
        "ultragen_api.routers.webhooks._apply_entitlement",
        new=AsyncMock(side_effect=asyncio.CancelledError()),
    ):
        with pytest.raises(asyncio.CancelledError):
            await _apply_with_ledger(
                MagicMock(), settings, store, ledger, event,
                "buyer@example.com", decision, "deadbeef",
            )

    assert _status(ledger, "ord_ord-1010") == "failed"

    redelivery = ledger_client.post(SIGNED_URL, json=_pro_order("ord-1010"))

    assert redelivery.json()["status"] == "processed"
    assert store.get("buyer@example.com").credits == 70


class TestProcessingLease:
    def test_live_processing_record_is_not_reclaimed(self, ledger):
        with ledger.session() as db:
            try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_11")
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_11", lease_seconds=60) is False

    def test_expired_processing_record_is_reclaimed(self, ledger):
        with ledger.session() as db:
            try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_12")
        _backdate(ledger, "ord_12", minutes=10)

        with ledger.session() as db:
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_12", lease_seconds=60) is True
            assert get_dedup_status(db, PROVIDER_KIWIFY, "ord_12") == "processing"
            # Re-claiming refreshes the lease
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_12", lease_seconds=60) is False

    def test_expired_done_record_stays_done(self, ledger):
        with ledger.session() as db:
            try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_13")
            mark_dedup_done(db, PROVIDER_KIWIFY, "ord_13")
        _backdate(ledger, "ord_13", minutes=10)

        with ledger.session() as db:
            assert try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_13", lease_seconds=60) is False

    def test_lease_covers_store_timeout(self, settings):
        slow = dataclasses.replace(settings, store_timeout_seconds=30.0)

        assert processing_lease_seconds(settings) == 60.0
        assert processing_lease_seconds(slow) == 120.0


def test_t11_abandoned_delivery_is_applied_on_redelivery(ledger_client, ledger, store, account_factory):
    store.add(account_factory("buyer@example.com", credits=3))
    with ledger.session() as db:
        try_acquire_dedup(db, PROVIDER_KIWIFY, "ord_ord-1111")
    _backdate(ledger, "ord_ord-1111", minutes=10)

    response = ledger_client.post(SIGNED_URL, json=_pro_order("ord-1111"))

    assert response.json()["status"] == "processed"
    assert store.get("buyer@example.com").credits == 70
    assert _status(ledger, "ord_ord-1111") == "done"
