"""Kiwify order webhook → account entitlement reconciliation.

Request state machine:
  Received → Authenticated → Parsed → Filtered{no-op | actionable}
           → Mutated | Skipped → Acknowledged (2xx)  /  Rejected (4xx/5xx)

Webhook error taxonomy (retry storm prevention):
  (A) Signature missing / mismatch             → 401 (checked before any parsing)
  (B) Method other than POST                   → 405
  (C) Invalid JSON / malformed payload         → 400
  (D) Missing customer.email                   → 400
  (E) Profile store failure / timeout          → 500 + Retry-After (vendor redelivers)
  (F) Ledger unavailable / unexpected error    → 500 + Retry-After
  Business no-ops (status not paid/approved, no rule matched, unknown
  account, duplicate delivery) are acknowledged with 200 so the vendor does
  not redeliver them.
"""

import asyncio
import hmac
import json as _json
import logging
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ultragen_api.billing.models import EntitlementEvent
from ultragen_api.billing.profile_store import ProfileStore, ProfileStoreError, get_profile_store
from ultragen_api.billing.reconciler import (
    EntitlementDecision,
    apply_patch,
    derive_entitlement_patch,
    is_actionable_status,
)
from ultragen_api.billing.webhook_dedup import (
    DEFAULT_PROCESSING_LEASE_SECONDS,
    PROVIDER_KIWIFY,
    get_kiwify_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    mark_dedup_unmatched,
    try_acquire_dedup,
)
from ultragen_api.config.settings import ReconcilerSettings, get_settings
from ultragen_api.context import customer_ref_var, request_id_var
from ultragen_api.db.session import LedgerDatabase, get_ledger
from ultragen_api.schemas import WebhookAck
from ultragen_api.utils.sanitize import (
    customer_ref,
    fingerprint_token,
    payload_hash_bytes,
    sanitize_str,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

# Outcomes of the store phase, mapped onto ledger statuses
OUTCOME_PROCESSED = "processed"
OUTCOME_ACCOUNT_NOT_FOUND = "account_not_found"
OUTCOME_FAILED = "failed"


# ============================================================================
# Response helpers
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions (beyond RFC 9457 base):
      provider, payload_hash, error_code  (never raw payload or secrets)
    """
    request_id = request_id_var.get(None)
    instance = f"urn:ultragen:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER_KIWIFY,
        "payload_hash": payload_hash,
        "error_code": code,
        "http_status": status,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:ultragen:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER_KIWIFY,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"
    if headers:
        response_headers.update(headers)

    return JSONResponse(status_code=status, content=content, headers=response_headers)


def _ack(
    status: str,
    *,
    code: str,
    payload_hash: str,
    profile: Optional[dict[str, Any]] = None,
    rules: Optional[list[str]] = None,
    extra: Optional[dict] = None,
    level: int = logging.INFO,
) -> dict:
    """Log the decision branch and build the 200 acknowledgement body."""
    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER_KIWIFY,
        "payload_hash": payload_hash,
        "outcome": status,
    }
    if extra:
        log_extra.update(extra)
    logger.log(level, code, extra=log_extra)

    return WebhookAck(status=status, profile=profile, rules=rules or []).model_dump(exclude_none=True)


def _signature_matches(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of the ?signature= token with the shared secret."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _raw_payload_for_log(raw_body: bytes) -> str:
    """Raw body as text for manual reconciliation (size-capped by sanitize_str)."""
    return sanitize_str(raw_body.decode("utf-8", errors="replace"))


async def _call_store(fn: Callable, *args: Any, timeout: float) -> Any:
    """Run a synchronous store call in a worker thread, bounded by timeout.

    On timeout the awaiting request stops waiting; the worker thread is left
    to finish on its own (the Supabase client carries the same timeout).
    """
    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)


def processing_lease_seconds(settings: ReconcilerSettings) -> float:
    """How long a claimed delivery may stay 'processing' before a redelivery re-claims it.

    Covers the two bounded store calls of one attempt with room to spare.
    """
    return max(DEFAULT_PROCESSING_LEASE_SECONDS, 4 * settings.store_timeout_seconds)


# ============================================================================
# Kiwify Webhook Handler
# ============================================================================


@router.api_route("/kiwify", methods=["POST", "GET", "HEAD", "OPTIONS", "PUT", "PATCH", "DELETE"])
async def kiwify_webhook(
    request: Request,
    settings: ReconcilerSettings = Depends(get_settings),
    store: ProfileStore = Depends(get_profile_store),
    ledger: Optional[LedgerDatabase] = Depends(get_ledger),
):
    """Kiwify order webhook.

    Authenticates the ``signature`` query parameter, filters on order status,
    derives the entitlement patch and applies it to the profile matching
    ``customer.email``. Always answers with an HTTP status; never raises.
    """
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    payload_size = len(raw_body)
    request.state.payload_hash = payload_hash
    request.state.payload_size = payload_size

    # ── Step 1: Shared-secret check (A → 401), fail closed before parsing ───
    provided_signature = request.query_params.get("signature")
    if not _signature_matches(provided_signature, settings.webhook_secret):
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="signature query parameter is missing or does not match",
            payload_hash=payload_hash,
            extra={
                "token_fingerprint": fingerprint_token(provided_signature),
                "token_length": len(provided_signature or ""),
            },
        )

    # ── Step 2: Method (B → 405) ────────────────────────────────────────────
    if request.method != "POST":
        return _webhook_problem(
            request, 405,
            code="WEBHOOK_METHOD_NOT_ALLOWED",
            title="Method not allowed",
            detail=f"{request.method} is not accepted; use POST",
            payload_hash=payload_hash,
            headers={"Allow": "POST"},
        )

    # ── Step 3: JSON parsing + shape validation (C → 400) ───────────────────
    try:
        webhook_body = _json.loads(raw_body)
    except ValueError:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            payload_hash=payload_hash,
            extra={"raw_payload": _raw_payload_for_log(raw_body), "payload_size": payload_size},
        )

    if not isinstance(webhook_body, dict):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Request body must be a JSON object",
            payload_hash=payload_hash,
            extra={"raw_payload": _raw_payload_for_log(raw_body)},
        )

    try:
        event = EntitlementEvent.model_validate(webhook_body)
    except ValidationError as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Payload fields have unexpected types",
            payload_hash=payload_hash,
            extra={
                "invalid_fields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()],
                "raw_payload": _raw_payload_for_log(raw_body),
            },
        )

    customer_ref_var.set(customer_ref(event.customer_email))
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER_KIWIFY,
            "payload_hash": payload_hash,
            "payload_size": payload_size,
            "order_status": event.order_status,
            "product_id": event.product_id,
            "plan_name": event.plan_name,
        },
    )

    try:
        # ── Step 4: Status filter (non-completed payments are acknowledged) ─
        if not is_actionable_status(event.order_status, settings.accepted_statuses):
            return _ack(
                "ignored",
                code="WEBHOOK_STATUS_IGNORED",
                payload_hash=payload_hash,
                extra={"order_status": event.order_status},
            )

        # ── Step 5: Join key (D → 400) ──────────────────────────────────────
        email = event.customer_email
        if email is None:
            return _webhook_problem(
                request, 400,
                code="WEBHOOK_MISSING_CUSTOMER_EMAIL",
                title="Missing customer email",
                detail="customer.email is required to locate the account",
                payload_hash=payload_hash,
                extra={"raw_payload": _raw_payload_for_log(raw_body)},
            )

        # ── Step 6: Derive the merged mutation ──────────────────────────────
        decision = derive_entitlement_patch(event, settings.catalog, settings.lifetime_product_id)
        if decision.unknown_plan_name is not None:
            logger.warning(
                "WEBHOOK_UNKNOWN_PLAN",
                extra={
                    "provider": PROVIDER_KIWIFY,
                    "payload_hash": payload_hash,
                    "plan_name": decision.unknown_plan_name,
                    "known_tiers": settings.catalog.tier_ids,
                },
            )
        if decision.is_noop:
            return _ack(
                "no_action",
                code="WEBHOOK_NO_ACTION",
                payload_hash=payload_hash,
                extra={"product_id": event.product_id, "plan_name": event.plan_name},
            )

        # ── Step 7: Apply (optionally behind the delivery ledger) ───────────
        if ledger is None:
            _outcome, response = await _apply_entitlement(
                request, settings, store, email, decision, payload_hash
            )
            return response

        return await _apply_with_ledger(
            request, settings, store, ledger, event, email, decision, payload_hash
        )

    except Exception as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )


async def _apply_with_ledger(
    request: Request,
    settings: ReconcilerSettings,
    store: ProfileStore,
    ledger: LedgerDatabase,
    event: EntitlementEvent,
    email: str,
    decision: EntitlementDecision,
    payload_hash: str,
):
    """Dedup gate around the store phase; ledger status follows the outcome."""
    dedup_key = get_kiwify_dedup_key(event, payload_hash)

    try:
        ledger.create_schema()
        with ledger.session() as db:
            is_first = try_acquire_dedup(
                db, PROVIDER_KIWIFY, dedup_key, payload_hash,
                lease_seconds=processing_lease_seconds(settings),
            )
    except SQLAlchemyError as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_LEDGER_UNAVAILABLE",
            title="Delivery ledger unavailable",
            detail="Could not record the delivery; retry later",
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__},
        )

    if not is_first:
        return _ack(
            "already_processed",
            code="WEBHOOK_ALREADY_PROCESSED",
            payload_hash=payload_hash,
            extra={"dedup_key_prefix": dedup_key[:16]},
        )

    with ledger.session() as db:
        try:
            outcome, response = await _apply_entitlement(
                request, settings, store, email, decision, payload_hash
            )
        except BaseException:
            # Includes cancellation: release the claim so the next redelivery re-claims it
            try:
                mark_dedup_failed(db, PROVIDER_KIWIFY, dedup_key)
            except SQLAlchemyError:
                logger.error(
                    "WEBHOOK_LEDGER_MARK_FAILED",
                    extra={
                        "provider": PROVIDER_KIWIFY,
                        "payload_hash": payload_hash,
                        "dedup_key_prefix": dedup_key[:16],
                        "outcome": OUTCOME_FAILED,
                    },
                )
            raise

        try:
            if outcome == OUTCOME_PROCESSED:
                mark_dedup_done(db, PROVIDER_KIWIFY, dedup_key)
            elif outcome == OUTCOME_ACCOUNT_NOT_FOUND:
                mark_dedup_unmatched(db, PROVIDER_KIWIFY, dedup_key)
            else:
                mark_dedup_failed(db, PROVIDER_KIWIFY, dedup_key)
        except SQLAlchemyError as exc:
            # The profile write already happened; report it and keep the response.
            db.rollback()
            logger.error(
                "WEBHOOK_LEDGER_MARK_FAILED",
                extra={
                    "provider": PROVIDER_KIWIFY,
                    "payload_hash": payload_hash,
                    "dedup_key_prefix": dedup_key[:16],
                    "outcome": outcome,
                    "error_type": type(exc).__name__,
                },
            )
        return response


async def _apply_entitlement(
    request: Request,
    settings: ReconcilerSettings,
    store: ProfileStore,
    email: str,
    decision: EntitlementDecision,
    payload_hash: str,
) -> tuple[str, Any]:
    """Look up the account by email and write the patch (one read, one write)."""
    timeout = settings.store_timeout_seconds

    try:
        account = await _call_store(store.find_by_email, email, timeout=timeout)
    except (ProfileStoreError, asyncio.TimeoutError) as exc:
        return OUTCOME_FAILED, _store_failure(request, "find_by_email", exc, payload_hash)

    if account is None:
        # Purchase before local sign-up: accepted gap, acknowledge (no retry storm)
        return OUTCOME_ACCOUNT_NOT_FOUND, _ack(
            OUTCOME_ACCOUNT_NOT_FOUND,
            code="WEBHOOK_ACCOUNT_NOT_FOUND",
            payload_hash=payload_hash,
            rules=decision.rules_matched(),
            level=logging.WARNING,
        )

    try:
        updated = await _call_store(store.update_by_email, email, decision.patch, timeout=timeout)
    except (ProfileStoreError, asyncio.TimeoutError) as exc:
        return OUTCOME_FAILED, _store_failure(request, "update_by_email", exc, payload_hash)

    if not updated:
        return OUTCOME_ACCOUNT_NOT_FOUND, _ack(
            OUTCOME_ACCOUNT_NOT_FOUND,
            code="WEBHOOK_ACCOUNT_NOT_FOUND",
            payload_hash=payload_hash,
            rules=decision.rules_matched(),
            extra={"phase": "update"},
            level=logging.WARNING,
        )

    profile = updated[0]
    expected = apply_patch(account, decision.patch)
    if profile.entitlement_state() != expected.entitlement_state():
        # Another write to the same row landed between our read and our update
        logger.warning(
            "WEBHOOK_CONCURRENT_WRITE_DETECTED",
            extra={
                "provider": PROVIDER_KIWIFY,
                "payload_hash": payload_hash,
                "expected": expected.entitlement_state(),
                "stored": profile.entitlement_state(),
            },
        )

    return OUTCOME_PROCESSED, _ack(
        OUTCOME_PROCESSED,
        code="WEBHOOK_ENTITLEMENT_APPLIED",
        payload_hash=payload_hash,
        profile=profile.to_public(),
        rules=decision.rules_matched(),
        extra={
            "patch": decision.patch.to_row(),
            "credits_before": account.credits,
            "credits_after": profile.credits,
            "tier_before": account.subscription_tier,
            "tier_after": profile.subscription_tier,
        },
    )


def _store_failure(
    request: Request,
    operation: str,
    exc: BaseException,
    payload_hash: str,
) -> JSONResponse:
    """Store failure/timeout (E → 500); the vendor's redelivery retries it."""
    timed_out = isinstance(exc, asyncio.TimeoutError)
    return _webhook_problem(
        request, 500,
        code="WEBHOOK_STORE_FAILED",
        title="Profile store failure",
        detail="The profile store did not complete the update; retry later",
        payload_hash=payload_hash,
        extra={
            "operation": operation,
            "timed_out": timed_out,
            "error_type": type(exc).__name__,
            "error_msg": sanitize_str(str(exc)),
        },
    )
