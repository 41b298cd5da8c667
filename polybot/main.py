"""
Polybot service entry point.

Wires the collaborators together and hands control to the orchestrator:

  config → http session + Telegram client → sessions + command table → router
         → webhook app → listener supervisor → IP monitor / aux loops
         → orchestrator

Run with: polybot serve
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import signal
import sys
from typing import Awaitable, Callable, TypeVar

import aiohttp
import structlog
from pydantic import ValidationError

from polybot.commands import CommandTable
from polybot.config import LLMConfig, MonitorConfig, PolybotConfig, WeatherConfig
from polybot.errors import ConfigurationError, PolybotError, ServiceError
from polybot.handlers import HandlerServices, build_command_table
from polybot.listener import ListenerSupervisor
from polybot.monitor import DirtySignal, IpChangeMonitor
from polybot.orchestrator import EXIT_FAILURE, EXIT_OK, AuxiliaryService, Orchestrator
from polybot.router import CommandRouter
from polybot.services.affirmations import Affirmations
from polybot.services.certificates import CertificateIssuer
from polybot.services.llm import LanguageModel
from polybot.services.network import IpLookup
from polybot.services.plant import PlantMonitor
from polybot.services.telegram import TelegramClient
from polybot.services.weather import OpenMeteo
from polybot.sessions import SessionRegistry
from polybot.webhook import WebhookApp

EXIT_CONFIG = 2

_TELEGRAM_BOT_TOKEN_RE = re.compile(r"(?<!\d)\d{6,12}:[A-Za-z0-9_-]{20,}")
_MESSAGE_KEYS = ("text", "argument", "reply")
_MAX_DISPLAY_LEN = 80

_UNSPECIFIED_ADDRESSES = {"0.0.0.0", "::", ""}

T = TypeVar("T")


class StartupAborted(PolybotError):
    """Shutdown was requested while a startup call was still being retried."""


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that keeps chat content and bot tokens out of logs.

    Message text fields are truncated; anything shaped like a bot token is
    replaced wherever it appears.
    """
    for key in _MESSAGE_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"

    for key, val in event_dict.items():
        if isinstance(val, str):
            event_dict[key] = _TELEGRAM_BOT_TOKEN_RE.sub("[REDACTED_TELEGRAM_TOKEN]", val)

    return event_dict


_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog over standard-library logging.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    # httpx logs full request URLs, which carry the bot token.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


def build_table(
    http: aiohttp.ClientSession,
    monitor: MonitorConfig,
    weather: WeatherConfig,
    llm: LLMConfig,
) -> CommandTable:
    services = HandlerServices(
        ip_lookup=IpLookup(http, monitor.ip_lookup_url),
        weather=OpenMeteo(weather, http),
        affirmations=Affirmations(http, weather.affirmation_url),
        llm=LanguageModel(llm),
    )
    return build_command_table(services)


class PolybotService:
    """Owns every long-lived object for one run of the bot."""

    def __init__(self, config: PolybotConfig) -> None:
        self._config = config
        self._orchestrator: Orchestrator | None = None
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self, reason: str) -> None:
        logger.info("service.shutdown_requested", reason=reason)
        self._shutdown_event.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal_{sig.name.lower()}")
            except NotImplementedError:
                pass

    async def _retry_startup(self, step: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Await *call* until it succeeds, backing off between transport failures.

        Only ``ServiceError`` is retried; configuration errors propagate. A
        shutdown request during the backoff raises ``StartupAborted``.
        """
        delay = self._config.bot.retry_base_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except ServiceError as e:
                logger.warning(
                    "service.startup_retry",
                    step=step,
                    attempt=attempt,
                    retry_in=delay,
                    error=str(e),
                )
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), delay)
            except TimeoutError:
                delay = min(delay * 2, self._config.bot.retry_max_delay)
            else:
                raise StartupAborted(step)

    async def _bootstrap_certificate(self, issuer: CertificateIssuer, ip_lookup: IpLookup) -> None:
        """Make sure a certificate exists before the first bind."""
        if issuer.exists():
            return
        ip = self._config.server.ip
        if ip in _UNSPECIFIED_ADDRESSES:
            ip = await self._retry_startup("ip_lookup", ip_lookup.lookup_external_ip)
        logger.info("service.certificate_bootstrap", ip=ip)
        await issuer.issue(ip)

    async def run(self) -> int:
        async with aiohttp.ClientSession() as http:
            telegram = TelegramClient(self._config.bot)
            try:
                await self._retry_startup("telegram.initialize", telegram.start)
                return await self._serve(http, telegram)
            except StartupAborted as e:
                logger.info("service.startup_aborted", step=str(e))
                return EXIT_OK
            finally:
                await telegram.close()

    async def _serve(self, http: aiohttp.ClientSession, telegram: TelegramClient) -> int:
        config = self._config
        registry = SessionRegistry(
            ttl_seconds=config.sessions.ttl_seconds,
            max_history=config.sessions.max_history,
        )
        table = build_table(http, config.monitor, config.weather, config.llm)
        router = CommandRouter(registry, table)

        # Best effort; the menu is cosmetic and the next start retries it.
        try:
            await telegram.set_my_commands(table.describe())
        except ServiceError as e:
            logger.warning("service.commands_sync_failed", error=str(e))

        ip_lookup = IpLookup(http, config.monitor.ip_lookup_url)
        issuer = CertificateIssuer(
            config.server.pubkey_path,
            config.server.privkey_path,
            organization=config.monitor.cert_org,
            days=config.monitor.cert_days,
        )
        await self._bootstrap_certificate(issuer, ip_lookup)

        webhook = WebhookApp(
            router,
            telegram.reply,
            registry,
            allowed_networks=config.server.get_network_list(),
        )
        supervisor = ListenerSupervisor(config.server, webhook.build)
        dirty = DirtySignal()

        auxiliaries = []
        if config.sessions.ttl_seconds > 0:
            auxiliaries.append(AuxiliaryService(
                "session-eviction",
                functools.partial(registry.run_eviction, config.sessions.cleanup_interval),
            ))
        if config.monitor.enabled:
            monitor = IpChangeMonitor(
                ip_lookup,
                telegram,
                issuer,
                dirty,
                interval=config.monitor.interval,
                port=supervisor.port,
            )
            auxiliaries.append(AuxiliaryService("ip-monitor", monitor.run))
        if config.plant.enabled:
            if config.bot.owner_chat_id is None:
                logger.warning("service.plant_disabled", reason="POLYBOT_OWNER_CHAT_ID not set")
            else:
                plant = PlantMonitor(
                    config.plant,
                    functools.partial(telegram.reply, config.bot.owner_chat_id),
                )
                auxiliaries.append(AuxiliaryService("plant", plant.run))

        self._orchestrator = Orchestrator(
            supervisor,
            dirty,
            auxiliaries=auxiliaries,
            shutdown_event=self._shutdown_event,
            swap_max_attempts=config.server.swap_max_attempts,
            swap_backoff_seconds=config.server.swap_backoff_seconds,
            swap_backoff_max_seconds=config.server.swap_backoff_max_seconds,
        )
        logger.info("service.starting", config=repr(config), commands=len(table))
        return await self._orchestrator.run()


def run_service(level: str = "INFO") -> int:
    """
    Load config, run the service and return the process exit status.

    0 after a requested shutdown, 1 when the listener dies or cannot be
    replaced, 2 for configuration errors.
    """
    configure_logging(level)
    try:
        config = PolybotConfig()
    except (ValidationError, ConfigurationError) as e:
        print(f"[polybot] Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    service = PolybotService(config)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    service.install_signal_handlers(loop)
    try:
        return loop.run_until_complete(service.run())
    except ConfigurationError as e:
        print(f"[polybot] Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except PolybotError as e:
        logger.error("service.failed", error=str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return 0
    finally:
        loop.close()
