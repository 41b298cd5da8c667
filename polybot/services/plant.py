"""
Plant telemetry listener — an auxiliary service loop.

A soil-moisture sensor sends JSON datagrams (``{"moisture": 512,
"is_watering": false}``) over UDP. Readings are averaged in batches and the
average is reported to the owner chat.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel, ValidationError

from polybot.config import PlantConfig

logger = structlog.get_logger(__name__)

# Bounded so a chatty sensor cannot grow memory while a report is being sent.
_QUEUE_SIZE = 256


class PlantReading(BaseModel):
    moisture: int
    is_watering: bool = False

    model_config = {"extra": "ignore"}


class _DatagramQueue(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[bytes]) -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning("plant.queue_full", addr=addr[0] if addr else None)


class PlantMonitor:
    """Receives readings and reports the average every ``batch`` readings."""

    def __init__(
        self,
        config: PlantConfig,
        notify: Callable[[str], Awaitable[None]],
    ) -> None:
        self._config = config
        self._notify = notify
        self._readings: list[int] = []
        self.last_reading: PlantReading | None = None

    def ingest(self, data: bytes) -> str | None:
        """Parse one datagram. Returns a report when a batch completes."""
        try:
            reading = PlantReading.model_validate_json(data)
        except ValidationError as e:
            logger.error("plant.bad_reading", error=str(e))
            return None
        self.last_reading = reading
        self._readings.append(reading.moisture)
        logger.info(
            "plant.reading",
            plant=self._config.plant_name,
            moisture=reading.moisture,
            is_watering=reading.is_watering,
        )
        if len(self._readings) < self._config.batch:
            return None
        average = sum(self._readings) // len(self._readings)
        self._readings.clear()
        return f"Moisture now is {average}."

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=_QUEUE_SIZE)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramQueue(queue),
            local_addr=(self._config.host, self._config.port),
        )
        logger.info("plant.listening", host=self._config.host, port=self._config.port)
        try:
            while True:
                report = self.ingest(await queue.get())
                if report is not None:
                    await self._notify(report)
        finally:
            transport.close()
