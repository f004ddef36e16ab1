"""
CallTriage - Webhook Authenticity

Verifies that a webhook really came from the call platform before any
tenant lookup happens.

Accepted schemes (first present wins):
    1. HMAC-SHA256 over the raw body, sent as "sha256=<hex>" (or bare hex)
       in x-vapi-signature / x-signature / signature
    2. Shared-secret token in x-vapi-secret

The HMAC always covers the raw body only. When a timestamp header
(x-vapi-timestamp / x-timestamp / timestamp) is present it is checked
separately, and requests older than WEBHOOK_MAX_AGE_SECONDS are rejected as
replays.

With no secret configured, verification is skipped and a warning logged.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Callable, Mapping, Optional

from calltriage.core.exceptions import AuthenticationFailure

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-vapi-signature", "x-signature", "signature")
TIMESTAMP_HEADERS = ("x-vapi-timestamp", "x-timestamp", "timestamp")
SECRET_HEADER = "x-vapi-secret"


def _header(headers: Mapping[str, str], names) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value
    return None


def compute_signature(secret: str, body: bytes) -> str:
    """Signature in the "sha256=<hex>" form the platform sends."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookVerifier:
    """
    Args:
        secret: Shared secret; None disables verification
        max_age_seconds: Replay window for timestamped requests
        clock: Returns current epoch seconds; injectable for tests
    """

    def __init__(
        self,
        secret: Optional[str],
        max_age_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret or None
        self._max_age = max_age_seconds
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._secret is not None

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        """
        Raises:
            AuthenticationFailure: signature/secret missing, stale or wrong
        """
        if not self.enabled:
            logger.warning("Webhook secret not configured; skipping signature verification")
            return

        signature = _header(headers, SIGNATURE_HEADERS)
        if signature:
            self._verify_hmac(body, signature, _header(headers, TIMESTAMP_HEADERS))
            return

        token = _header(headers, (SECRET_HEADER,))
        if token:
            if not hmac.compare_digest(token.encode(), self._secret.encode()):
                raise AuthenticationFailure("Invalid webhook secret")
            return

        raise AuthenticationFailure("Missing webhook signature")

    def _verify_hmac(self, body: bytes, signature: str, timestamp: Optional[str]) -> None:
        if timestamp:
            try:
                sent_at = float(timestamp)
            except ValueError:
                raise AuthenticationFailure("Invalid webhook timestamp") from None
            # Platforms send either seconds or milliseconds
            if sent_at > 1e12:
                sent_at /= 1000.0
            if abs(self._clock() - sent_at) > self._max_age:
                raise AuthenticationFailure("Webhook timestamp outside allowed window")

        expected = compute_signature(self._secret, body)
        provided = signature.strip()
        if not provided.startswith("sha256="):
            provided = f"sha256={provided}"

        if not hmac.compare_digest(provided.encode(), expected.encode()):
            raise AuthenticationFailure("Invalid webhook signature")
