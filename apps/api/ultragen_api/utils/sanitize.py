"""Redaction helpers for webhook log output.

Kiwify bodies carry buyer PII (email, CPF/CNPJ, phone) and the shared
secret travels in the query string, so every log extra passes through
sanitize_obj before it is serialized:

 - dict keys that name a secret or a PII field are replaced wholesale
 - strings longer than MAX_STR_LOG are replaced by their length + sha256
   (raw bodies stay correlatable with payload_hash without being stored)
 - shorter strings get the credential patterns below scrubbed in place
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_DEPTH: int = 6

REDACTED = "[REDACTED]"

# Compared lower-cased
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    # credentials
    "authorization", "x-admin-token", "signature", "secret", "token",
    "access_token", "api_key",
    # buyer PII in Kiwify order payloads
    "email", "cpf", "cnpj", "phone", "mobile", "card",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"signature=[^&\s]+"),
    re.compile(r"(?:access_)?token=[^&\s]+"),
    re.compile(r"Bearer \S+"),
    re.compile(r"://[^:/@\s]+:[^@\s]+@"),
]


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def fingerprint_token(token: str | None) -> str:
    """Return a short, non-reversible fingerprint of a presented secret.

    Used to audit rejected webhook signatures without writing the value.
    """
    if not token:
        return "absent"
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def customer_ref(email: str | None) -> str:
    """Stable short reference for a customer email (lower-cased before hashing)."""
    if not email:
        return ""
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()[:16]


def sanitize_str(s: str) -> str:
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    if len(s) > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={len(s)} sha256={digest}]"

    for pattern in _PATTERNS:
        s = pattern.sub(REDACTED, s)
    return s


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively redact a log extra value (dicts, lists, strings)."""
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS
            else sanitize_obj(value, depth + 1)
            for key, value in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Formatted traceback without local variable values, then sanitize_str."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    te = traceback.TracebackException.from_exception(value, capture_locals=False)
    return sanitize_str("".join(te.format()))
