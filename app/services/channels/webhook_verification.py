"""HMAC verification of inbound webhook payloads.

Signatures are always computed over the raw request bytes. Re-serialized
JSON changes byte layout and will not verify.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

from app.logging import get_logger

logger = get_logger(__name__)

_ALGORITHMS = {"sha1": hashlib.sha1, "sha256": hashlib.sha256}
_PREFIXES = ("sha256=", "sha1=")

# Checked in order; the first header present wins.
SIGNATURE_HEADERS = ("x-hub-signature-256", "x-hub-signature", "x-tiktok-signature")


def _to_bytes(payload: bytes | str) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


def _strip_prefix(signature: str) -> str:
    for prefix in _PREFIXES:
        if signature.startswith(prefix):
            return signature[len(prefix) :]
    return signature


def signature_algorithm(signature: str | None) -> str:
    """Algorithm implied by a signature's prefix (``sha1=`` selects SHA1)."""
    if signature and signature.startswith("sha1="):
        return "sha1"
    return "sha256"


def verify_webhook_signature(
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
    algorithm: str = "sha256",
) -> bool:
    if not signature or not secret:
        logger.warning("webhook_signature_missing has_signature=%s has_secret=%s", bool(signature), bool(secret))
        return False
    digestmod = _ALGORITHMS.get(algorithm)
    if digestmod is None:
        logger.warning("webhook_signature_unsupported_algorithm algorithm=%s", algorithm)
        return False
    provided = _strip_prefix(signature.strip()).lower().encode("ascii", errors="replace")
    expected = hmac.new(secret.encode("utf-8"), _to_bytes(payload), digestmod).hexdigest().encode("ascii")
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


def verify_meta_webhook(payload: bytes | str, signature: str | None, app_secret: str | None) -> bool:
    return verify_webhook_signature(payload, signature, app_secret, algorithm="sha256")


def verify_tiktok_webhook(payload: bytes | str, signature: str | None, app_secret: str | None) -> bool:
    return verify_webhook_signature(payload, signature, app_secret, algorithm="sha256")


def extract_signature_from_headers(headers: Mapping[str, str]) -> str | None:
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in SIGNATURE_HEADERS:
        value = lowered.get(header)
        if value:
            return value
    return None


def log_webhook_verification(
    platform: str,
    verified: bool,
    signature: str | None = None,
    payload_length: int | None = None,
) -> None:
    logger.info(
        "webhook_verification platform=%s verified=%s has_signature=%s payload_len=%s",
        platform,
        verified,
        bool(signature),
        payload_length,
    )
    if not verified:
        logger.warning("webhook_verification_failed platform=%s", platform)
