"""
WhatsApp Gateway — Evolution API integration.

Provides:
- Outbound text: POST {base_url}/message/sendText/{instance}
  with {"number", "text"} and an `apikey` header
- Address normalization (strips @s.whatsapp.net / @c.us)
- Inbound parsing of `messages.upsert` webhook events: plain text,
  extended text, media captions, button and list replies
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx

from channels.base import (
    GatewayError, InputSanitizer, MessagingGateway, is_group_address, normalize_address,
)
from config.settings import GatewayConfig
from models.schemas import InboundMessage

logger = structlog.get_logger()

_sanitizer = InputSanitizer()


class WhatsAppGateway(MessagingGateway):
    """
    Evolution API client for one WhatsApp instance.

    Every send is a single attempt; callers decide what a failure means
    for the conversation.
    """

    channel = "whatsapp"

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
            )
        return self._client

    @property
    def send_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/message/sendText/{self.config.instance}"

    async def send(self, address: str, text: str) -> dict[str, Any]:
        number = normalize_address(address)
        if not number:
            raise GatewayError("No WhatsApp number", channel=self.channel)

        client = await self._get_client()
        try:
            resp = await client.post(
                self.send_url,
                json={"number": number, "text": text},
                headers={"apikey": self.config.api_key},
            )
        except httpx.HTTPError as e:
            logger.error("whatsapp_send_failed", to=number, error=str(e))
            raise GatewayError(f"Gateway unreachable: {e}", channel=self.channel, retryable=True) from e

        if resp.status_code >= 400:
            logger.error(
                "whatsapp_api_error",
                to=number,
                status=resp.status_code,
                body=resp.text[:500],
            )
            raise GatewayError(
                f"Gateway returned HTTP {resp.status_code}",
                channel=self.channel,
                retryable=resp.status_code >= 500,
            )

        try:
            body = resp.json()
        except ValueError:
            body = {}
        msg_id = (body.get("key") or {}).get("id") if isinstance(body, dict) else None
        msg_id = msg_id or f"evo.{uuid.uuid4().hex[:20]}"
        logger.info("whatsapp_text_sent", to=number, msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "status": "ok",
            "instance": self.config.instance,
            "base_url": self.config.base_url,
        }


# ══════════════════════════════════════════════════════════════
#  INBOUND PARSING
# ══════════════════════════════════════════════════════════════

def extract_text(message: dict[str, Any]) -> str:
    """Pull the text content out of an Evolution `message` object."""
    if not message:
        return ""
    if message.get("conversation"):
        return message["conversation"]

    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]

    for media in ("imageMessage", "videoMessage", "documentMessage"):
        caption = (message.get(media) or {}).get("caption")
        if caption:
            return caption

    buttons = message.get("buttonsResponseMessage") or {}
    if buttons.get("selectedDisplayText"):
        return buttons["selectedDisplayText"]

    listed = message.get("listResponseMessage") or {}
    if listed.get("title"):
        return listed["title"]

    return ""


def parse_webhook(payload: dict[str, Any]) -> Optional[InboundMessage]:
    """
    Parse an Evolution webhook payload.

    Returns None for anything that is not a `messages.upsert` event carrying
    text. Outbound echoes (fromMe) are returned with from_me=True so callers
    can decide to ignore them.
    """
    if (payload or {}).get("event") != "messages.upsert":
        return None

    data = payload.get("data") or {}
    # Some Evolution versions batch messages in a list
    if isinstance(data, list):
        data = data[0] if data else {}

    key = data.get("key") or {}
    remote_jid = key.get("remoteJid", "")
    if not remote_jid:
        return None

    text = _sanitizer.sanitize(extract_text(data.get("message") or {}))
    if not text:
        return None

    return InboundMessage(
        remote_jid=remote_jid,
        text=text,
        push_name=data.get("pushName") or "",
        from_me=bool(key.get("fromMe", False)),
        is_group=is_group_address(remote_jid),
        instance=payload.get("instance") or "",
        message_id=key.get("id") or "",
    )
