"""
Listener supervisor — owns the single HTTPS listener serving the webhook.

The listener is an aiohttp ``AppRunner`` + ``SockSite`` over a socket bound
with ``SO_REUSEADDR`` so a fresh bind can take the address right after the
previous instance closed, even with connections still in TIME_WAIT.

Swap protocol (certificate rotation):

  1. load the new certificate; a bad certificate fails here and the working
     listener is left untouched
  2. start the replacement on a duplicate of the current listening socket, so
     the address never stops accepting
  3. stop the current listener: stop accepting on its copy of the socket,
     drain in-flight requests, force-close the rest, all within the grace
     window

With no live listener to inherit from, step 2 binds a new socket on the
configured address instead.

Failures surface as ``ListenerError``. The supervisor never retries; that is
the orchestrator's call.
"""

from __future__ import annotations

import asyncio
import socket
import ssl
from pathlib import Path
from typing import Awaitable, Callable

import structlog
from aiohttp import web

from polybot.config import ServerConfig
from polybot.errors import ListenerError

logger = structlog.get_logger(__name__)

# Slice of the grace window reserved for cancelling handlers that are still
# running when the drain ends.
_FORCE_CLOSE_TIMEOUT = 0.5


def make_ssl_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """Server-side TLS context for the self-signed certificate pair."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except (OSError, ssl.SSLError) as e:
        raise ListenerError(f"cannot load certificate {cert_path}: {e}") from e
    return context


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a TCP socket with SO_REUSEADDR. IPv6 literals get an AF_INET6 socket."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        raise ListenerError(f"cannot bind {host}:{port}: {e}") from e
    return sock


class InFlightTracker:
    """Counts requests currently being handled by one listener instance."""

    def __init__(self) -> None:
        self.count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @web.middleware
    async def middleware(
        self,
        request: web.Request,
        handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
    ) -> web.StreamResponse:
        self.count += 1
        self._idle.clear()
        try:
            return await handler(request)
        finally:
            self.count -= 1
            if self.count == 0:
                self._idle.set()

    async def wait_idle(self, timeout: float) -> bool:
        """Wait until nothing is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except TimeoutError:
            return False
        return True


class ListenerHandle:
    """One running listener instance."""

    def __init__(
        self,
        runner: web.AppRunner,
        site: web.SockSite,
        tracker: InFlightTracker,
        sock: socket.socket,
        *,
        host: str,
        port: int,
    ) -> None:
        self._runner = runner
        self._site = site
        self._tracker = tracker
        self._sock = sock
        self.host = host
        self.port = port
        self._closed = asyncio.Event()
        self._stopping = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def in_flight(self) -> int:
        return self._tracker.count

    def dup_socket(self) -> socket.socket:
        """A second descriptor for the listening socket; it outlives this listener."""
        try:
            return self._sock.dup()
        except OSError as e:
            raise ListenerError(f"cannot duplicate listening socket on port {self.port}: {e}") from e

    async def stop(self, grace: float) -> None:
        """Stop accepting, drain, then force-close; the whole stop fits in *grace* seconds."""
        if self._stopping:
            await self._closed.wait()
            return
        if self._closed.is_set():
            return
        self._stopping = True
        drain_budget = max(0.0, grace - _FORCE_CLOSE_TIMEOUT)
        try:
            await self._site.stop()
            drained = await self._tracker.wait_idle(drain_budget)
            if not drained:
                logger.warning(
                    "listener.drain_timeout",
                    port=self.port,
                    grace=grace,
                    in_flight=self._tracker.count,
                )
            await self._runner.cleanup()
        finally:
            self._closed.set()
        logger.info("listener.stopped", host=self.host, port=self.port)

    async def wait_closed(self) -> None:
        await self._closed.wait()


class ListenerSupervisor:
    """
    Owns the listener handle. Only this object binds, stops or replaces it.

    ``app_factory`` is called once per listener instance and must return a
    fresh ``web.Application``.
    """

    def __init__(
        self,
        config: ServerConfig,
        app_factory: Callable[[], web.Application],
    ) -> None:
        self._config = config
        self._app_factory = app_factory
        self._active: ListenerHandle | None = None
        # Port 0 picks a free port on first bind; swaps then reuse that port.
        self._port = config.port

    @property
    def active(self) -> ListenerHandle | None:
        return self._active

    @property
    def port(self) -> int:
        return self._port

    def load_certificate(self) -> ssl.SSLContext:
        return make_ssl_context(self._config.pubkey_path, self._config.privkey_path)

    async def bind(
        self,
        ssl_context: ssl.SSLContext | None = None,
        *,
        sock: socket.socket | None = None,
    ) -> ListenerHandle:
        """
        Construct and start a listener; it becomes the active one.

        *sock* serves an already-listening socket instead of binding a new one.
        """
        if ssl_context is None:
            ssl_context = self.load_certificate()
        host = self._config.ip
        if sock is None:
            sock = bind_socket(host, self._port)
        port = sock.getsockname()[1]

        app = self._app_factory()
        tracker = InFlightTracker()
        app.middlewares.insert(0, tracker.middleware)
        runner = web.AppRunner(
            app,
            handle_signals=False,
            access_log=None,
            shutdown_timeout=_FORCE_CLOSE_TIMEOUT,
        )
        await runner.setup()
        site = web.SockSite(
            runner,
            sock,
            ssl_context=ssl_context,
            backlog=self._config.backlog,
        )
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            sock.close()
            raise ListenerError(f"cannot start listener on {host}:{port}: {e}") from e

        self._port = port
        self._active = ListenerHandle(runner, site, tracker, sock, host=host, port=port)
        logger.info("listener.started", host=host, port=port)
        return self._active

    async def start(self) -> None:
        """Bind if needed and wait until the listener terminates."""
        handle = self._active
        if handle is None or handle.closed:
            handle = await self.bind()
        await handle.wait_closed()

    async def stop(self, grace: float | None = None) -> None:
        handle = self._active
        if handle is None:
            return
        await handle.stop(self._config.grace_seconds if grace is None else grace)

    async def swap(self) -> ListenerHandle:
        """Replace the active listener with one serving the current certificate."""
        ssl_context = self.load_certificate()
        old = self._active
        logger.info("listener.swapping", port=self._port)
        if old is None or old.closed:
            self._active = None
            return await self.bind(ssl_context)

        # The replacement accepts on the inherited socket before the old
        # listener stops, so the address is never unbound.
        new = await self.bind(ssl_context, sock=old.dup_socket())
        await old.stop(self._config.grace_seconds)
        return new

    async def wait_closed(self) -> None:
        handle = self._active
        if handle is not None:
            await handle.wait_closed()
