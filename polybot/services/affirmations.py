"""affirmations.dev client."""

from __future__ import annotations

import aiohttp

from polybot.errors import ServiceError

DEFAULT_AFFIRMATION_URL = "https://www.affirmations.dev"


class Affirmations:
    def __init__(self, session: aiohttp.ClientSession, url: str = DEFAULT_AFFIRMATION_URL) -> None:
        self._session = session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=15.0)

    async def get_affirmation(self) -> str:
        try:
            async with self._session.get(
                self._url,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            ) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise ServiceError(f"affirmation request failed: {e}") from e
        text = data.get("affirmation") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise ServiceError("affirmation response had no text")
        return text.strip()
