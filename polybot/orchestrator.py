"""
Orchestrator — the top-level event race.

Three kinds of events are raced against each other:

  * the active listener terminating, which is fatal: ``run()`` returns a
    failure status and outer supervision (systemd, docker) restarts us
  * the dirty signal from the IP monitor, which swaps the listener onto the
    new certificate and goes back to racing
  * an auxiliary loop ending, which is logged and that loop alone is
    restarted after its delay

A shutdown request ends the race with a success status.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from polybot.errors import ListenerError
from polybot.listener import ListenerSupervisor
from polybot.monitor import DirtySignal

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class AuxiliaryService:
    """A long-running background loop owned by the orchestrator."""

    name: str
    factory: Callable[[], Awaitable[None]]
    restart_delay: float = 5.0


class Orchestrator:
    def __init__(
        self,
        supervisor: ListenerSupervisor,
        dirty: DirtySignal,
        *,
        auxiliaries: Iterable[AuxiliaryService] = (),
        shutdown_event: Optional[asyncio.Event] = None,
        swap_max_attempts: int = 5,
        swap_backoff_seconds: float = 1.0,
        swap_backoff_max_seconds: float = 30.0,
    ) -> None:
        self._supervisor = supervisor
        self._dirty = dirty
        self._auxiliaries = list(auxiliaries)
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._swap_max_attempts = max(1, int(swap_max_attempts))
        self._swap_backoff = max(0.0, float(swap_backoff_seconds))
        self._swap_backoff_max = max(self._swap_backoff, float(swap_backoff_max_seconds))
        self.swaps = 0
        self.restarts: dict[str, int] = {}

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._shutdown_event.is_set():
            logger.info("orchestrator.shutdown_requested", reason=reason)
        self._shutdown_event.set()

    async def run(self) -> int:
        """Race until shutdown (EXIT_OK) or a fatal listener event (EXIT_FAILURE)."""
        if self._supervisor.active is None or self._supervisor.active.closed:
            try:
                await self._supervisor.bind()
            except ListenerError as e:
                logger.error("orchestrator.listener_start_failed", error=str(e))
                return EXIT_FAILURE

        aux_tasks: dict[asyncio.Task, AuxiliaryService] = {
            asyncio.create_task(svc.factory(), name=f"aux-{svc.name}"): svc
            for svc in self._auxiliaries
        }
        listener_task = asyncio.create_task(self._supervisor.wait_closed(), name="listener")
        dirty_task = asyncio.create_task(self._dirty.wait(), name="dirty")
        shutdown_task = asyncio.create_task(self._shutdown_event.wait(), name="shutdown")
        logger.info("orchestrator.running", auxiliaries=[svc.name for svc in self._auxiliaries])

        try:
            while True:
                done, _ = await asyncio.wait(
                    {listener_task, dirty_task, shutdown_task, *aux_tasks},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if shutdown_task in done:
                    logger.info("orchestrator.shutting_down")
                    return EXIT_OK

                if listener_task in done:
                    logger.error("orchestrator.listener_terminated", port=self._supervisor.port)
                    return EXIT_FAILURE

                if dirty_task in done:
                    # The old listener closes as part of the swap; that is not a failure.
                    listener_task.cancel()
                    if not await self._swap_with_retry():
                        return EXIT_FAILURE
                    listener_task = asyncio.create_task(
                        self._supervisor.wait_closed(), name="listener"
                    )
                    dirty_task = asyncio.create_task(self._dirty.wait(), name="dirty")

                for task in done & aux_tasks.keys():
                    svc = aux_tasks.pop(task)
                    self._report_aux_exit(svc, task)
                    restarted = asyncio.create_task(
                        self._restart_after_delay(svc), name=f"aux-{svc.name}"
                    )
                    aux_tasks[restarted] = svc
        finally:
            pending = [listener_task, dirty_task, shutdown_task, *aux_tasks]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await self._supervisor.stop()
            logger.info("orchestrator.stopped", swaps=self.swaps)

    async def _swap_with_retry(self) -> bool:
        """Swap the listener, backing off between failures. False once attempts run out."""
        delay = self._swap_backoff
        for attempt in range(1, self._swap_max_attempts + 1):
            try:
                await self._supervisor.swap()
            except ListenerError as e:
                logger.warning(
                    "orchestrator.swap_failed",
                    attempt=attempt,
                    max_attempts=self._swap_max_attempts,
                    error=str(e),
                )
            else:
                self.swaps += 1
                logger.info("orchestrator.swapped", attempt=attempt, port=self._supervisor.port)
                return True

            if attempt == self._swap_max_attempts:
                break
            if await self._shutdown_requested_within(delay):
                # Nothing left to serve; let the main race report the shutdown.
                return True
            delay = min(delay * 2, self._swap_backoff_max)

        logger.error("orchestrator.swap_exhausted", attempts=self._swap_max_attempts)
        return False

    async def _shutdown_requested_within(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), delay)
        except TimeoutError:
            return False
        return True

    async def _restart_after_delay(self, svc: AuxiliaryService) -> None:
        await asyncio.sleep(svc.restart_delay)
        self.restarts[svc.name] = self.restarts.get(svc.name, 0) + 1
        logger.info("orchestrator.aux_restarting", name=svc.name, restarts=self.restarts[svc.name])
        await svc.factory()

    @staticmethod
    def _report_aux_exit(svc: AuxiliaryService, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("orchestrator.aux_cancelled", name=svc.name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "orchestrator.aux_failed",
                name=svc.name,
                error=str(exc),
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        else:
            logger.warning("orchestrator.aux_exited", name=svc.name)
