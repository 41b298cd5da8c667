"""Open-Meteo weather provider (geocoding + hourly forecast)."""

from __future__ import annotations

import datetime
from typing import Any, Optional

import aiohttp
import structlog

from polybot.config import WeatherConfig
from polybot.errors import WeatherError

logger = structlog.get_logger(__name__)


class OpenMeteo:
    """Current temperature for a city name, no API key required."""

    def __init__(self, config: WeatherConfig, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=15.0)

    @property
    def favourite_city(self) -> str:
        return self._config.favourite_city

    async def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        try:
            async with self._session.get(url, params=params, timeout=self._timeout) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise WeatherError(f"open-meteo request failed: {e}") from e

    async def get_geolocation(self, city: str) -> Optional[tuple[float, float]]:
        """(latitude, longitude) of the best match for *city*, or None if unknown."""
        data = await self._get_json(
            self._config.geocoding_url,
            {"name": city, "count": 1, "language": "en", "format": "json"},
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not results:
            return None
        first = results[0]
        return float(first["latitude"]), float(first["longitude"])

    async def get_temperature(self, city: str) -> float:
        """Temperature (°C) at *city* for the current local hour."""
        location = await self.get_geolocation(city)
        if location is None:
            raise WeatherError(f"unknown city {city!r}")
        lat, lon = location
        data = await self._get_json(
            self._config.forecast_url,
            {
                "latitude": lat,
                "longitude": lon,
                "hourly": "temperature_2m",
                "forecast_days": 1,
                "timezone": "auto",
            },
        )
        try:
            temperatures = data["hourly"]["temperature_2m"]
            offset = int(data.get("utc_offset_seconds", 0))
        except (KeyError, TypeError) as e:
            raise WeatherError("unexpected forecast payload") from e

        now_utc = datetime.datetime.now(datetime.timezone.utc)
        hour = (now_utc + datetime.timedelta(seconds=offset)).hour
        if hour >= len(temperatures) or temperatures[hour] is None:
            raise WeatherError("forecast has no value for the current hour")
        logger.debug("weather.temperature", city=city, hour=hour)
        return float(temperatures[hour])
