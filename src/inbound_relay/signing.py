# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HMAC-SHA256 signatures for webhook payloads.

The signature header has the form ``t=<unix seconds>,v1=<hex digest>``
where the digest covers ``"<t>.<body>"``. Receivers recompute the digest
with the shared secret and reject stale timestamps.
"""

from __future__ import annotations

import hashlib
import hmac
import time

SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_TOLERANCE_SECONDS = 300
MAX_CLOCK_SKEW_SECONDS = 60


def _digest(body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("ascii") + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Return the signature header value for ``body``."""
    ts = int(timestamp if timestamp is not None else time.time())
    return f"t={ts},v1={_digest(body, secret, ts)}"


def verify_signature(
    body: bytes,
    signature: str,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> tuple[bool, str | None]:
    """Check a signature header produced by :func:`sign_payload`.

    Args:
        body: Raw request body as received.
        signature: Value of the signature header.
        secret: Shared endpoint secret.
        tolerance: Maximum accepted age of the timestamp in seconds.
        now: Current unix time, for tests.

    Returns:
        ``(True, None)`` when valid, otherwise ``(False, reason)``.
    """
    timestamp: int | None = None
    candidates: list[str] = []
    for element in signature.split(","):
        key, _, value = element.strip().partition("=")
        if key == "t" and value.isdigit():
            timestamp = int(value)
        elif key == "v1" and value:
            candidates.append(value)

    if timestamp is None:
        return False, "No timestamp found in signature"
    if not candidates:
        return False, "No signature found"

    current = int(now if now is not None else time.time())
    if current - timestamp > tolerance:
        return False, "Timestamp too old"
    if timestamp > current + MAX_CLOCK_SKEW_SECONDS:
        return False, "Timestamp too far in the future"

    expected = _digest(body, secret, timestamp)
    if any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        return True, None
    return False, "Signature mismatch"
