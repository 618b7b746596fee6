"""
uPnL proof verification.

The off-chain feeder signs ``"{request_id}:{upnl}"`` with a shared key; the
vault refuses to price a settlement with a figure the key did not sign.
"""
from __future__ import annotations

import hashlib
import hmac

from loguru import logger


class HmacUpnlVerifier:
    """HMAC-SHA256 over request id and uPnL."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("uPnL signing key must not be empty")
        self._key = secret.encode()

    def sign(self, request_id: int, upnl: int) -> str:
        message = f"{request_id}:{upnl}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(self, request_id: int, upnl: int, proof: str) -> bool:
        ok = hmac.compare_digest(self.sign(request_id, upnl), proof or "")
        if not ok:
            logger.warning(f"uPnL proof mismatch for request #{request_id} (upnl={upnl})")
        return ok
