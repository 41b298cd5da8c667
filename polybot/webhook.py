"""
Webhook application — the HTTP surface mounted by the listener.

Routes:
  POST /        — Telegram update delivery
  GET  /health  — Health check

Status codes for POST /:
  200  update dispatched and the reply delivered
  200  also for updates that carry no message (ignored)
  400  body is not UTF-8, not an update, or a message without text
  403  request from outside the allowed source networks
  500  routing or reply delivery failed
"""

from __future__ import annotations

import ipaddress
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

import structlog
from aiohttp import web
from pydantic import ValidationError

from polybot.services.telegram import Update

if TYPE_CHECKING:
    from polybot.router import CommandRouter
    from polybot.sessions import SessionRegistry

logger = structlog.get_logger(__name__)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network
ReplyFn = Callable[[int, str], Awaitable[None]]


def is_allowed_source(remote: str | None, networks: Sequence[Network]) -> bool:
    """True if *remote* falls in any of *networks*. Unknown peers are rejected."""
    if not remote:
        return False
    try:
        address = ipaddress.ip_address(remote)
    except ValueError:
        return False
    # IPv4 peers on a dual-stack socket arrive as ::ffff:a.b.c.d
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(address in network for network in networks)


class WebhookApp:
    """
    Builds aiohttp applications serving the webhook.

    A fresh ``web.Application`` is built for every listener instance since an
    application cannot be restarted once its runner has been cleaned up.
    """

    def __init__(
        self,
        router: "CommandRouter",
        reply: ReplyFn,
        registry: "SessionRegistry",
        *,
        allowed_networks: Sequence[Network] = (),
    ) -> None:
        self._router = router
        self._reply = reply
        self._registry = registry
        self._allowed_networks = list(allowed_networks)
        self._started_at = time.monotonic()

    def build(self) -> web.Application:
        app = web.Application(middlewares=[self._allow_list_middleware])
        app.router.add_post("/", self._handle_update)
        app.router.add_get("/health", self._handle_health)
        return app

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    @web.middleware
    async def _allow_list_middleware(
        self,
        request: web.Request,
        handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
    ) -> web.StreamResponse:
        if not is_allowed_source(request.remote, self._allowed_networks):
            logger.warning("webhook.source_rejected", remote=request.remote, path=request.path)
            return web.Response(status=403, text="forbidden")
        return await handler(request)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime": round(time.monotonic() - self._started_at, 1),
            "sessions": self._registry.session_count(),
        })

    async def _handle_update(self, request: web.Request) -> web.Response:
        body = await request.read()
        try:
            raw = body.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("webhook.bad_encoding", size=len(body))
            return web.Response(status=400, text="payload is not UTF-8")

        try:
            update = Update.model_validate_json(raw)
        except ValidationError as e:
            logger.error("webhook.bad_update", error_count=e.error_count())
            return web.Response(status=400, text="malformed update")

        message = update.any_message
        if message is None:
            logger.debug("webhook.update_ignored", update_id=update.update_id)
            return web.Response(status=200, text="ignored")
        if message.text is None:
            logger.warning("webhook.non_text_message", update_id=update.update_id)
            return web.Response(status=400, text="message carries no text")

        try:
            answer = await self._router.route(message.user_id, message.text)
        except Exception:
            logger.exception("webhook.routing_failed", update_id=update.update_id)
            return web.Response(status=500, text="internal error")

        try:
            await self._reply(message.chat.id, answer)
        except Exception as e:
            logger.error(
                "webhook.reply_failed",
                update_id=update.update_id,
                chat_id=message.chat.id,
                error=str(e),
            )
            return web.Response(status=500, text="reply failed")

        return web.Response(status=200, text="ok")
