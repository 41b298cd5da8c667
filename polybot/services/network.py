"""External (public) IP discovery."""

from __future__ import annotations

import ipaddress

import aiohttp
import structlog

from polybot.errors import IpLookupError

logger = structlog.get_logger(__name__)

DEFAULT_IP_LOOKUP_URL = "https://api.ipify.org?format=json"


class IpLookup:
    """Ask an ipify-compatible endpoint (``{"ip": "…"}``) for our public address."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str = DEFAULT_IP_LOOKUP_URL,
        *,
        timeout: float = 15.0,
    ) -> None:
        self._session = session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def lookup_external_ip(self) -> str:
        try:
            async with self._session.get(
                self._url,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            ) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise IpLookupError(f"ip lookup failed: {e}") from e

        ip = data.get("ip") if isinstance(data, dict) else None
        if not isinstance(ip, str):
            raise IpLookupError("ip lookup returned no address")
        try:
            return str(ipaddress.ip_address(ip.strip()))
        except ValueError as e:
            raise IpLookupError(f"ip lookup returned {ip!r}") from e
