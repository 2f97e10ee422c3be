"""Utility functions and helpers."""

from ultragen_api.utils.logging import JSONFormatter, configure_json_logging
from ultragen_api.utils.sanitize import (
    customer_ref,
    fingerprint_token,
    payload_hash_bytes,
    sanitize_obj,
    sanitize_str,
)

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "customer_ref",
    "fingerprint_token",
    "payload_hash_bytes",
    "sanitize_obj",
    "sanitize_str",
]
