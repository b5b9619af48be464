"""
Tests for the WhatsApp gateway (Evolution API) and webhook parsing.
HTTP is served by httpx.MockTransport; nothing leaves the process.
"""
import json

import httpx
import pytest

from channels.base import (
    GatewayError, InputSanitizer, MessageDeduplicator, is_group_address, normalize_address,
)
from channels.whatsapp_adapter import WhatsAppGateway, extract_text, parse_webhook
from config.settings import GatewayConfig


def _gateway(handler) -> WhatsAppGateway:
    config = GatewayConfig(base_url="http://evolution:8080/", api_key="secret-key", instance="main")
    return WhatsAppGateway(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


# ──────────────────────────────────────────────────────────────
#  Outbound
# ──────────────────────────────────────────────────────────────

class TestWhatsAppSend:
    @pytest.mark.asyncio
    async def test_send_text(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"key": {"id": "BAE5F1"}, "status": "PENDING"})

        gw = _gateway(handler)
        result = await gw.send("5531999990000@s.whatsapp.net", "Olá")

        assert result == {"status": "sent", "channel_message_id": "BAE5F1"}
        request = seen[0]
        assert str(request.url) == "http://evolution:8080/message/sendText/main"
        assert request.headers["apikey"] == "secret-key"
        assert json.loads(request.content) == {"number": "5531999990000", "text": "Olá"}
        await gw.close()

    @pytest.mark.asyncio
    async def test_generated_id_when_missing(self):
        gw = _gateway(lambda request: httpx.Response(200, text="ok"))
        result = await gw.send("5531999990000", "Olá")
        assert result["channel_message_id"].startswith("evo.")

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        gw = _gateway(lambda request: httpx.Response(401, json={"error": "unauthorized"}))
        with pytest.raises(GatewayError) as exc:
            await gw.send("5531999990000", "Olá")
        assert "401" in str(exc.value)
        assert not exc.value.retryable
        assert exc.value.channel == "whatsapp"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        gw = _gateway(lambda request: httpx.Response(503))
        with pytest.raises(GatewayError) as exc:
            await gw.send("5531999990000", "Olá")
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gw = _gateway(handler)
        with pytest.raises(GatewayError) as exc:
            await gw.send("5531999990000", "Olá")
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_empty_address(self):
        gw = _gateway(lambda request: httpx.Response(200))
        with pytest.raises(GatewayError):
            await gw.send("", "Olá")

    @pytest.mark.asyncio
    async def test_health_check(self):
        gw = _gateway(lambda request: httpx.Response(200))
        health = await gw.health_check()
        assert health["channel"] == "whatsapp"
        assert health["instance"] == "main"


# ──────────────────────────────────────────────────────────────
#  Inbound
# ──────────────────────────────────────────────────────────────

def _upsert(message: dict, remote_jid="5531999990000@s.whatsapp.net", from_me=False, **extra) -> dict:
    data = {
        "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": "3EB0ABC"},
        "pushName": "Copasa",
        "message": message,
        **extra,
    }
    return {"event": "messages.upsert", "instance": "main", "data": data}


class TestParseWebhook:
    def test_plain_conversation(self):
        msg = parse_webhook(_upsert({"conversation": "Informe seu CPF:"}))
        assert msg.remote_jid == "5531999990000@s.whatsapp.net"
        assert msg.text == "Informe seu CPF:"
        assert msg.push_name == "Copasa"
        assert msg.message_id == "3EB0ABC"
        assert msg.instance == "main"
        assert not msg.from_me
        assert not msg.is_group

    def test_batched_data_list(self):
        payload = _upsert({"conversation": "Oi"})
        payload["data"] = [payload["data"]]
        assert parse_webhook(payload).text == "Oi"

    def test_from_me_flagged(self):
        assert parse_webhook(_upsert({"conversation": "Olá"}, from_me=True)).from_me

    def test_group_flagged(self):
        assert parse_webhook(_upsert({"conversation": "Oi"}, remote_jid="1203630@g.us")).is_group

    @pytest.mark.parametrize("payload", [
        {"event": "connection.update", "data": {}},
        {"event": "messages.upsert", "data": {"key": {"remoteJid": "x"}, "message": {"audioMessage": {}}}},
        {"event": "messages.upsert", "data": {"message": {"conversation": "no key"}}},
        {"event": "messages.upsert", "data": []},
        {},
    ])
    def test_ignored_payloads(self, payload):
        assert parse_webhook(payload) is None

    def test_control_characters_stripped(self):
        assert parse_webhook(_upsert({"conversation": "  1\x00 - Fatura\x07 "})).text == "1 - Fatura"


class TestExtractText:
    @pytest.mark.parametrize("message, expected", [
        ({"conversation": "a"}, "a"),
        ({"extendedTextMessage": {"text": "b"}}, "b"),
        ({"imageMessage": {"caption": "c"}}, "c"),
        ({"documentMessage": {"caption": "d"}}, "d"),
        ({"buttonsResponseMessage": {"selectedDisplayText": "e"}}, "e"),
        ({"listResponseMessage": {"title": "f"}}, "f"),
        ({"stickerMessage": {}}, ""),
        ({}, ""),
    ])
    def test_variants(self, message, expected):
        assert extract_text(message) == expected


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

class TestAddressHelpers:
    def test_normalize(self):
        assert normalize_address("5531999990000@s.whatsapp.net") == "5531999990000"
        assert normalize_address("5531999990000@c.us") == "5531999990000"
        assert normalize_address(" 5531999990000 ") == "5531999990000"
        assert normalize_address("") == ""

    def test_group(self):
        assert is_group_address("1203630@g.us")
        assert not is_group_address("5531999990000@s.whatsapp.net")


class TestDeduplicator:
    def test_seen_once(self):
        dedup = MessageDeduplicator()
        assert not dedup.is_duplicate("m1")
        assert dedup.is_duplicate("m1")
        assert not dedup.is_duplicate("m2")

    def test_empty_key_never_duplicate(self):
        dedup = MessageDeduplicator()
        assert not dedup.is_duplicate("")
        assert not dedup.is_duplicate("")

    def test_capacity_evicts_oldest(self):
        dedup = MessageDeduplicator(max_size=2)
        for key in ("a", "b", "c"):
            dedup.is_duplicate(key)
        assert not dedup.is_duplicate("a")


class TestSanitizer:
    def test_truncates(self):
        assert InputSanitizer(max_length=5).sanitize("abcdefgh") == "abcde... [truncated]"
