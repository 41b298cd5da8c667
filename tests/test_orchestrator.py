"""Tests for polybot.orchestrator — the listener/dirty/aux event race."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from polybot.errors import ListenerError
from polybot.monitor import DirtySignal
from polybot.orchestrator import EXIT_FAILURE, EXIT_OK, AuxiliaryService, Orchestrator


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _Handle:
    def __init__(self) -> None:
        self.closed = False


class FakeSupervisor:
    """Stands in for ListenerSupervisor; the test decides when the listener dies."""

    def __init__(self, *, bind_error: Exception | None = None) -> None:
        self.active: _Handle | None = None
        self.port = 8443
        self.bind_calls = 0
        self.swap_calls = 0
        self.stop_calls = 0
        self.swap_results: list[Any] = []
        self._bind_error = bind_error
        self._closed = asyncio.Event()

    async def bind(self) -> _Handle:
        self.bind_calls += 1
        if self._bind_error is not None:
            raise self._bind_error
        self.active = _Handle()
        self._closed = asyncio.Event()
        return self.active

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def stop(self, grace: float | None = None) -> None:
        self.stop_calls += 1
        if self.active is not None:
            self.active.closed = True
        self._closed.set()

    async def swap(self) -> _Handle:
        self.swap_calls += 1
        if self.swap_results:
            result = self.swap_results.pop(0)
            if isinstance(result, Exception):
                self.active = None
                raise result
        return await self.bind()

    def die(self) -> None:
        """Simulate the listener terminating on its own."""
        if self.active is not None:
            self.active.closed = True
        self._closed.set()


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def dirty() -> DirtySignal:
    return DirtySignal()


def _orchestrator(supervisor, dirty, **kwargs: Any) -> Orchestrator:
    kwargs.setdefault("swap_backoff_seconds", 0.01)
    kwargs.setdefault("swap_backoff_max_seconds", 0.02)
    return Orchestrator(supervisor, dirty, **kwargs)


# ---------------------------------------------------------------------------
# Shutdown and fatal events
# ---------------------------------------------------------------------------


class TestTermination:
    @pytest.mark.asyncio
    async def test_shutdown_is_success(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        orch = _orchestrator(supervisor, dirty)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        orch.request_shutdown("test")
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK
        assert supervisor.stop_calls >= 1

    @pytest.mark.asyncio
    async def test_external_shutdown_event(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        event = asyncio.Event()
        orch = _orchestrator(supervisor, dirty, shutdown_event=event)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        event.set()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK

    @pytest.mark.asyncio
    async def test_listener_death_is_fatal(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        orch = _orchestrator(supervisor, dirty)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        supervisor.die()
        assert await asyncio.wait_for(task, 2.0) == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_bind_failure_is_fatal(self, dirty: DirtySignal) -> None:
        supervisor = FakeSupervisor(bind_error=ListenerError("cannot bind"))
        orch = _orchestrator(supervisor, dirty)
        assert await asyncio.wait_for(orch.run(), 2.0) == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_existing_listener_is_reused(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        await supervisor.bind()
        orch = _orchestrator(supervisor, dirty)
        task = asyncio.create_task(orch.run())
        await asyncio.sleep(0.01)
        orch.request_shutdown()
        await asyncio.wait_for(task, 2.0)
        assert supervisor.bind_calls == 1

    @pytest.mark.asyncio
    async def test_aux_tasks_cancelled_on_exit(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        cancelled = asyncio.Event()

        async def forever() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        orch = _orchestrator(supervisor, dirty, auxiliaries=[AuxiliaryService("forever", forever)])
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        await asyncio.sleep(0.01)
        orch.request_shutdown()
        await asyncio.wait_for(task, 2.0)
        assert cancelled.is_set()


# ---------------------------------------------------------------------------
# Dirty signal → swap
# ---------------------------------------------------------------------------


class TestSwap:
    @pytest.mark.asyncio
    async def test_dirty_signal_triggers_swap(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        orch = _orchestrator(supervisor, dirty)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        dirty.notify()
        await _until(lambda: orch.swaps == 1)
        assert not task.done()

        # The swapped-in listener is watched too.
        supervisor.die()
        assert await asyncio.wait_for(task, 2.0) == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_each_signal_swaps_once(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        orch = _orchestrator(supervisor, dirty)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        dirty.notify()
        dirty.notify()
        await _until(lambda: orch.swaps == 1)
        await asyncio.sleep(0.02)
        assert supervisor.swap_calls == 1
        dirty.notify()
        await _until(lambda: orch.swaps == 2)
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK

    @pytest.mark.asyncio
    async def test_failed_swap_is_retried(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        supervisor.swap_results = [ListenerError("busy"), ListenerError("busy")]
        orch = _orchestrator(supervisor, dirty, swap_max_attempts=5)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        dirty.notify()
        await _until(lambda: orch.swaps == 1)
        assert supervisor.swap_calls == 3
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK

    @pytest.mark.asyncio
    async def test_exhausted_swap_is_fatal(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        supervisor.swap_results = [ListenerError("busy")] * 3
        orch = _orchestrator(supervisor, dirty, swap_max_attempts=3)
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        dirty.notify()
        assert await asyncio.wait_for(task, 2.0) == EXIT_FAILURE
        assert supervisor.swap_calls == 3

    @pytest.mark.asyncio
    async def test_shutdown_during_backoff(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        supervisor.swap_results = [ListenerError("busy")] * 10
        orch = _orchestrator(
            supervisor,
            dirty,
            swap_max_attempts=10,
            swap_backoff_seconds=5.0,
            swap_backoff_max_seconds=5.0,
        )
        task = asyncio.create_task(orch.run())
        await _until(lambda: supervisor.active is not None)
        dirty.notify()
        await _until(lambda: supervisor.swap_calls == 1)
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK
        assert supervisor.swap_calls == 1


# ---------------------------------------------------------------------------
# Auxiliary loops
# ---------------------------------------------------------------------------


class TestAuxiliaryLoops:
    @pytest.mark.asyncio
    async def test_failing_loop_is_restarted(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        runs = 0

        async def flaky() -> None:
            nonlocal runs
            runs += 1
            raise RuntimeError("lost connection")

        orch = _orchestrator(
            supervisor,
            dirty,
            auxiliaries=[AuxiliaryService("flaky", flaky, restart_delay=0.01)],
        )
        task = asyncio.create_task(orch.run())
        await _until(lambda: runs >= 3)
        assert not task.done()
        assert orch.restarts["flaky"] >= 2
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK

    @pytest.mark.asyncio
    async def test_returning_loop_is_restarted(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        runs = 0

        async def short() -> None:
            nonlocal runs
            runs += 1

        orch = _orchestrator(
            supervisor,
            dirty,
            auxiliaries=[AuxiliaryService("short", short, restart_delay=0.01)],
        )
        task = asyncio.create_task(orch.run())
        await _until(lambda: runs >= 2)
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK

    @pytest.mark.asyncio
    async def test_only_the_failed_loop_restarts(
        self, supervisor: FakeSupervisor, dirty: DirtySignal
    ) -> None:
        steady_runs = 0
        flaky_runs = 0

        async def steady() -> None:
            nonlocal steady_runs
            steady_runs += 1
            await asyncio.Event().wait()

        async def flaky() -> None:
            nonlocal flaky_runs
            flaky_runs += 1
            raise RuntimeError("boom")

        orch = _orchestrator(
            supervisor,
            dirty,
            auxiliaries=[
                AuxiliaryService("steady", steady, restart_delay=0.01),
                AuxiliaryService("flaky", flaky, restart_delay=0.01),
            ],
        )
        task = asyncio.create_task(orch.run())
        await _until(lambda: flaky_runs >= 3)
        assert steady_runs == 1
        assert supervisor.swap_calls == 0
        orch.request_shutdown()
        assert await asyncio.wait_for(task, 2.0) == EXIT_OK
