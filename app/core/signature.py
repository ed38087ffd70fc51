"""
HMAC-SHA256 verification for inbound provider webhooks.

Different provider tenants encode the signature differently (hex or base64,
sometimes with a ``sha256=`` prefix), so the header value is decoded to raw
digest bytes before a constant-time comparison.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass

REASON_MISSING_SIGNATURE = "missing_signature"
REASON_TIMESTAMP_SKEW = "timestamp_skew"
REASON_SIGNATURE_MISMATCH = "signature_mismatch"

_DIGEST_SIZE = hashlib.sha256().digest_size
# מעל הסף הזה חותמת הזמן בהכרח במילישניות (1e11 שניות = שנת 5138)
_MILLIS_THRESHOLD = 100_000_000_000


@dataclass(frozen=True)
class SignatureResult:
    valid: bool
    reason: str | None = None


def _decode_signature(signature: str) -> list[bytes]:
    """Candidate digests for a header value: hex first, then base64 variants."""
    value = signature.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]

    candidates: list[bytes] = []
    if len(value) == _DIGEST_SIZE * 2:
        try:
            candidates.append(bytes.fromhex(value))
        except ValueError:
            pass

    padded = value + "=" * (-len(value) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            decoded = decoder(padded.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            continue
        if len(decoded) == _DIGEST_SIZE:
            candidates.append(decoded)
    return candidates


def _parse_header_timestamp(raw: str) -> float | None:
    """Header timestamp as epoch seconds; accepts seconds or millis."""
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    if abs(value) >= _MILLIS_THRESHOLD:
        value = value / 1000.0
    return value


def verify_hmac_sha256(
    raw_body: bytes,
    secret: str,
    header_signature: str | None,
    header_timestamp: str | None = None,
    max_skew_seconds: float | None = None,
    now: float | None = None,
) -> SignatureResult:
    """
    אימות חתימת HMAC-SHA256 על ה-bytes הגולמיים של הבקשה.

    לא זורק לעולם - מחזיר valid + קוד סיבה ל-observability.
    בדיקת ה-skew רצה רק כשגם header הזמן וגם הגבול קיימים,
    ובלי קשר לתקינות החתימה (anti-replay).
    """
    if not header_signature or not header_signature.strip():
        return SignatureResult(False, REASON_MISSING_SIGNATURE)

    if header_timestamp and max_skew_seconds is not None:
        ts = _parse_header_timestamp(header_timestamp)
        current = time.time() if now is None else now
        if ts is None or abs(current - ts) > max_skew_seconds:
            return SignatureResult(False, REASON_TIMESTAMP_SKEW)

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    for candidate in _decode_signature(header_signature):
        if hmac.compare_digest(expected, candidate):
            return SignatureResult(True)

    return SignatureResult(False, REASON_SIGNATURE_MISMATCH)


def sign_hex(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def sign_base64(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")
