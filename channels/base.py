"""
Messaging gateway — base infrastructure for outbound/inbound channels.

Provides:
- GatewayError: structured error for failed sends
- normalize_address: strip channel suffixes from a responder address
- MessageDeduplicator: TTL seen-set so redelivered webhooks are handled once
- InputSanitizer: strip control characters from inbound text
- MessagingGateway: abstract base every gateway implements
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class GatewayError(Exception):
    """Raised when a gateway cannot deliver a message."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  ADDRESSES
# ══════════════════════════════════════════════════════════════

_ADDRESS_SUFFIXES = ("@s.whatsapp.net", "@c.us")


def normalize_address(remote_jid: str) -> str:
    """'5531999999999@s.whatsapp.net' → '5531999999999'."""
    remote_jid = (remote_jid or "").strip()
    for suffix in _ADDRESS_SUFFIXES:
        if remote_jid.endswith(suffix):
            return remote_jid[: -len(suffix)]
    return remote_jid


def is_group_address(remote_jid: str) -> bool:
    return (remote_jid or "").endswith("@g.us")


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating inbound messages."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        if not key:
            return False
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        # Oldest first when still over capacity
        while len(self._seen) >= self.max_size:
            del self._seen[next(iter(self._seen))]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  MESSAGING GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Sends text to a responder address.

    Implementations raise GatewayError on any failure; a normal return means
    the gateway acknowledged the message.
    """

    channel: str = "generic"

    @abc.abstractmethod
    async def send(self, address: str, text: str) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "status": "ok"}
