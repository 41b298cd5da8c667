"""
IP-change monitor — keeps the webhook registration pointing at this host.

Every interval the monitor compares the host's external IP with what Telegram
has on file. When they differ (or Telegram holds no custom certificate) it
issues a fresh self-signed certificate for the new IP, registers it with
``setWebhook`` and raises the dirty signal so the orchestrator swaps the
listener onto the new certificate.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from polybot.services.certificates import CertificateIssuer
from polybot.services.network import IpLookup
from polybot.services.telegram import TelegramClient

logger = structlog.get_logger(__name__)


class DirtySignal:
    """
    Edge-triggered, coalescing "configuration changed" flag.

    Any number of ``notify()`` calls before the waiter wakes collapse into a
    single wake-up. ``wait()`` consumes the signal.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def notify(self) -> None:
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()


@dataclass
class IpState:
    """Outcome of the most recent monitor pass."""

    current_ip: Optional[str] = None
    registered_ip: Optional[str] = None
    has_custom_certificate: bool = False
    last_checked: Optional[float] = None
    last_rotation: Optional[float] = None
    rotations: int = 0
    consecutive_failures: int = 0


def webhook_url(ip: str, port: int) -> str:
    if ":" in ip:
        ip = f"[{ip}]"
    if port == 443:
        return f"https://{ip}/"
    return f"https://{ip}:{port}/"


class IpChangeMonitor:
    def __init__(
        self,
        ip_lookup: IpLookup,
        telegram: TelegramClient,
        issuer: CertificateIssuer,
        dirty: DirtySignal,
        *,
        interval: float = 60.0,
        port: int = 8443,
    ) -> None:
        self._ip_lookup = ip_lookup
        self._telegram = telegram
        self._issuer = issuer
        self._dirty = dirty
        self._interval = interval
        self._port = port
        self.state = IpState()

    async def check_once(self) -> bool:
        """
        Run one pass. Returns True if a new certificate was registered.

        Errors from any collaborator propagate; ``run()`` is the place that
        logs and carries on.
        """
        current_ip = await self._ip_lookup.lookup_external_ip()
        status = await self._telegram.query_webhook_status()

        state = self.state
        state.current_ip = current_ip
        state.registered_ip = status.configured_ip
        state.has_custom_certificate = status.has_custom_certificate
        state.last_checked = time.time()

        if status.configured_ip == current_ip and status.has_custom_certificate:
            logger.debug("monitor.webhook_current", ip=current_ip)
            return False

        logger.info(
            "monitor.webhook_stale",
            current_ip=current_ip,
            registered_ip=status.configured_ip,
            has_custom_certificate=status.has_custom_certificate,
        )
        certificate = await self._issuer.issue(current_ip)
        await self._telegram.register_webhook(webhook_url(current_ip, self._port), certificate)

        state.last_rotation = time.time()
        state.rotations += 1
        self._dirty.notify()
        logger.info("monitor.certificate_rotated", ip=current_ip, rotations=state.rotations)
        return True

    async def run(self) -> None:
        """Check forever at the fixed interval. Failures wait for the next tick."""
        logger.info("monitor.started", interval=self._interval)
        while True:
            try:
                await self.check_once()
                self.state.consecutive_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.state.consecutive_failures += 1
                logger.error(
                    "monitor.check_failed",
                    error=str(e),
                    consecutive_failures=self.state.consecutive_failures,
                    exc_info=True,
                )
            await asyncio.sleep(self._interval)
