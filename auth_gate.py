"""
Constant-time authorization gate for privileged models.

Credentials are compared with a double-MAC: both strings are HMACed under a
fresh random key and the digests are compared with hmac.compare_digest. The
digests have a fixed length, so neither the mismatch position nor the input
lengths show up in the comparison time. Only when the digests match are the
original strings compared directly.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from gateway_errors import Unauthorized

logger = logging.getLogger(__name__)

_KEY_BYTES = 32


def _mac(key: bytes, value: str) -> bytes:
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).digest()


def is_authorized(credential: Optional[str], secret: Optional[str]) -> bool:
    if not credential or not secret:
        return False
    key = secrets.token_bytes(_KEY_BYTES)
    if not hmac.compare_digest(_mac(key, credential), _mac(key, secret)):
        return False
    return credential == secret


class AuthGate:
    """Holds the server-side secret; never logs either side of the comparison."""

    def __init__(self, secret: str):
        self._secret = secret
        if not secret:
            logger.warning("AUTH_KEY not configured - privileged models are unavailable (fail-closed)")

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def is_authorized(self, credential: Optional[str]) -> bool:
        return is_authorized(credential, self._secret)

    def require_authorized(self, credential: Optional[str]) -> None:
        if not self.is_authorized(credential):
            raise Unauthorized("This model requires authorization")
