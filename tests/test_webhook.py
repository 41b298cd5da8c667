"""Tests for polybot.webhook — POST / update handling, allow-list, /health."""

from __future__ import annotations

import ipaddress
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from polybot.config import TELEGRAM_NETWORKS
from polybot.errors import TelegramError
from polybot.router import CommandRouter
from polybot.sessions import SessionRegistry
from polybot.webhook import WebhookApp, is_allowed_source

LOCALHOST = [ipaddress.ip_network("127.0.0.0/8")]
TELEGRAM = [ipaddress.ip_network(n) for n in TELEGRAM_NETWORKS.split(",")]


def make_update(
    text: str | None,
    *,
    user_id: int = 42,
    chat_id: int | None = None,
    update_id: int = 1,
    edited: bool = False,
) -> dict[str, Any]:
    """Build a Telegram update dict carrying one (optionally edited) message."""
    message: dict[str, Any] = {
        "message_id": update_id,
        "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
        "chat": {"id": chat_id if chat_id is not None else user_id, "type": "private"},
        "date": 1700000000,
    }
    if text is not None:
        message["text"] = text
    return {"update_id": update_id, "edited_message" if edited else "message": message}


def update_body(text: str | None, **kwargs: Any) -> bytes:
    return json.dumps(make_update(text, **kwargs)).encode("utf-8")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def reply() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def webhook(router: CommandRouter, reply: AsyncMock, registry: SessionRegistry) -> WebhookApp:
    return WebhookApp(router, reply, registry, allowed_networks=LOCALHOST)


async def _create_test_client(app: WebhookApp) -> TestClient:
    """Create an aiohttp test client for a freshly built webhook application."""
    client = TestClient(TestServer(app.build()))
    await client.start_server()
    return client


# ---------------------------------------------------------------------------
# Allow-list
# ---------------------------------------------------------------------------


class TestIsAllowedSource:
    def test_inside_network(self) -> None:
        assert is_allowed_source("149.154.167.220", TELEGRAM)
        assert is_allowed_source("91.108.4.1", TELEGRAM)

    def test_outside_network(self) -> None:
        assert not is_allowed_source("8.8.8.8", TELEGRAM)

    def test_ipv4_mapped_ipv6(self) -> None:
        assert is_allowed_source("::ffff:149.154.161.1", TELEGRAM)

    def test_unknown_or_garbage_peer(self) -> None:
        assert not is_allowed_source(None, TELEGRAM)
        assert not is_allowed_source("", TELEGRAM)
        assert not is_allowed_source("not-an-ip", TELEGRAM)

    def test_empty_allow_list_rejects_everything(self) -> None:
        assert not is_allowed_source("127.0.0.1", [])


class TestAllowListMiddleware:
    @pytest.mark.asyncio
    async def test_outside_source_gets_403(
        self, router: CommandRouter, reply: AsyncMock, registry: SessionRegistry
    ) -> None:
        app = WebhookApp(router, reply, registry, allowed_networks=TELEGRAM)
        client = await _create_test_client(app)
        try:
            resp = await client.post("/", data=update_body("/echo hi"))
            assert resp.status == 403
            resp = await client.get("/health")
            assert resp.status == 403
        finally:
            await client.close()
        reply.assert_not_awaited()
        assert registry.session_count() == 0


# ---------------------------------------------------------------------------
# POST /
# ---------------------------------------------------------------------------


class TestUpdateHandling:
    @pytest.mark.asyncio
    async def test_text_message_is_routed_and_replied(
        self, webhook: WebhookApp, reply: AsyncMock
    ) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=update_body("/echo hi", user_id=7, chat_id=99))
            assert resp.status == 200
        finally:
            await client.close()
        reply.assert_awaited_once_with(99, "echo:hi")

    @pytest.mark.asyncio
    async def test_unknown_command_reply(self, webhook: WebhookApp, reply: AsyncMock) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=update_body("/Echo hi"))
            assert resp.status == 200
        finally:
            await client.close()
        reply.assert_awaited_once_with(42, "Did not understand!")

    @pytest.mark.asyncio
    async def test_edited_message_is_routed(self, webhook: WebhookApp, reply: AsyncMock) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=update_body("/echo again", edited=True))
            assert resp.status == 200
        finally:
            await client.close()
        reply.assert_awaited_once_with(42, "echo:again")

    @pytest.mark.asyncio
    async def test_non_utf8_payload_is_400(self, webhook: WebhookApp, reply: AsyncMock) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=b"\xff\xfe\xfa not utf-8")
            assert resp.status == 400
        finally:
            await client.close()
        reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_json_payload_is_400(self, webhook: WebhookApp) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=b"{not json")
            assert resp.status == 400
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_non_text_message_is_400(self, webhook: WebhookApp, reply: AsyncMock) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=update_body(None))
            assert resp.status == 400
        finally:
            await client.close()
        reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_without_message_is_acknowledged(
        self, webhook: WebhookApp, reply: AsyncMock
    ) -> None:
        client = await _create_test_client(webhook)
        try:
            body = json.dumps({"update_id": 5, "channel_post": {"message_id": 1}})
            resp = await client.post("/", data=body)
            assert resp.status == 200
        finally:
            await client.close()
        reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reply_failure_is_500(self, webhook: WebhookApp, reply: AsyncMock) -> None:
        reply.side_effect = TelegramError("sendMessage: Forbidden")
        client = await _create_test_client(webhook)
        try:
            resp = await client.post("/", data=update_body("/echo hi"))
            assert resp.status == 500
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_routing_failure_is_500(
        self, reply: AsyncMock, registry: SessionRegistry
    ) -> None:
        router = AsyncMock()
        router.route.side_effect = RuntimeError("boom")
        app = WebhookApp(router, reply, registry, allowed_networks=LOCALHOST)
        client = await _create_test_client(app)
        try:
            resp = await client.post("/", data=update_body("/echo hi"))
            assert resp.status == 500
        finally:
            await client.close()
        reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_chat_mode_across_requests(
        self, webhook: WebhookApp, reply: AsyncMock
    ) -> None:
        client = await _create_test_client(webhook)
        try:
            for text in ("/chat", "hello", "/end", "hello"):
                resp = await client.post("/", data=update_body(text))
                assert resp.status == 200
        finally:
            await client.close()
        replies = [c.args[1] for c in reply.await_args_list]
        assert replies == ["entered", "talk:hello", "left", "Did not understand!"]

    @pytest.mark.asyncio
    async def test_get_root_not_allowed(self, webhook: WebhookApp) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.get("/")
            assert resp.status == 405
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_returns_ok(self, webhook: WebhookApp) -> None:
        client = await _create_test_client(webhook)
        try:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "ok"
            assert data["uptime"] >= 0.0
            assert data["sessions"] == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_health_counts_sessions(self, webhook: WebhookApp) -> None:
        client = await _create_test_client(webhook)
        try:
            await client.post("/", data=update_body("/echo", user_id=1))
            await client.post("/", data=update_body("/echo", user_id=2))
            data = await (await client.get("/health")).json()
            assert data["sessions"] == 2
        finally:
            await client.close()

    def test_fresh_application_per_build(self, webhook: WebhookApp) -> None:
        assert webhook.build() is not webhook.build()


def test_make_update_shape() -> None:
    update = make_update("hi", user_id=3)
    assert update["message"]["from"]["id"] == 3
    assert update["message"]["chat"]["id"] == 3
