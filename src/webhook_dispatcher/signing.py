"""HMAC-SHA256 webhook signatures.

The signed string is ``"{timestamp}.{canonical_json(payload)}"`` and the
signature is ``"sha256=" + hexdigest``. Receivers recompute it with
:func:`verify`, which also enforces a replay window on the timestamp.
"""
from __future__ import annotations

import hmac
import json
import time
from hashlib import sha256
from typing import Any

SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300


def canonical_json(payload: Any) -> str:
    """Deterministic JSON encoding shared by signer, sender and verifier."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(secret: str, payload: Any, timestamp: int) -> str:
    raw = f"{int(timestamp)}.{canonical_json(payload)}"
    digest = hmac.new(secret.encode("utf-8"), raw.encode("utf-8"), sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def constant_time_equals(a: str | bytes, b: str | bytes) -> bool:
    """Length check first, then a constant-time comparison of equal-length inputs."""
    a_bytes = a.encode("utf-8") if isinstance(a, str) else a
    b_bytes = b.encode("utf-8") if isinstance(b, str) else b
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


def verify(
    signature: str,
    secret: str,
    payload: Any,
    timestamp: int,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    *,
    now: float | None = None,
) -> bool:
    """Return True only for a well-formed, fresh, matching signature.

    Malformed input of any kind yields False rather than an exception.
    """
    if not isinstance(signature, str) or not signature.startswith(SIGNATURE_PREFIX):
        return False
    if not isinstance(secret, str) or isinstance(timestamp, bool):
        return False
    try:
        ts = int(timestamp)
        current = int(time.time() if now is None else now)
        if abs(current - ts) > tolerance_seconds:
            return False
        expected = sign(secret, payload, ts)
    except (TypeError, ValueError, OverflowError, RecursionError):
        return False
    return constant_time_equals(signature, expected)
