# tests/test_coordinator.py
import asyncio
import time

import pytest
from bs4 import BeautifulSoup

from mdrender_backend.coordinator import RenderCoordinator
from mdrender_backend.errors import (
    InitializationError,
    NotReadyError,
    ProcessingError,
    RenderTimeoutError,
    TerminationError,
    UnitFault,
)
from mdrender_backend.unit import ProcessUnit, ThreadUnit, UnitState

from tests.conftest import ScriptedUnit


async def settle(rounds=3):
    for _ in range(rounds):
        await asyncio.sleep(0)


def result(request_id, html):
    return {"outcome": "result", "id": request_id, "html": html, "elapsedMs": 0.1}


@pytest.mark.asyncio
class TestDispatch:
    async def test_render_before_start_fails_fast(self):
        unit = ScriptedUnit()
        coordinator = RenderCoordinator(unit)

        with pytest.raises(NotReadyError):
            await coordinator.render("# x")
        assert unit.posted == []

    async def test_result_resolves_matching_request(self, scripted_coordinator, scripted_unit):
        task = asyncio.create_task(scripted_coordinator.render("# x"))
        await settle()
        [request_id] = scripted_unit.process_ids()
        assert scripted_unit.posted[0]["markdown"] == "# x"

        scripted_unit.send(result(request_id, "<h1>x</h1>"))

        assert await task == "<h1>x</h1>"
        assert scripted_coordinator.pending_count == 0

    async def test_error_rejects_with_processing_error(self, scripted_coordinator, scripted_unit):
        task = asyncio.create_task(scripted_coordinator.render("bad"))
        await settle()
        [request_id] = scripted_unit.process_ids()

        scripted_unit.send({"outcome": "error", "id": request_id, "error": "parse stage failed: nope"})

        with pytest.raises(ProcessingError, match="nope") as info:
            await task
        assert info.value.request_id == request_id
        assert scripted_coordinator.pending_count == 0

    async def test_unknown_id_is_discarded(self, scripted_coordinator, scripted_unit):
        task = asyncio.create_task(scripted_coordinator.render("x"))
        await settle()
        [request_id] = scripted_unit.process_ids()

        scripted_unit.send(result("no-such-id", "<p>wrong</p>"))
        await settle()
        assert not task.done()
        assert scripted_coordinator.pending_count == 1

        scripted_unit.send(result(request_id, "<p>right</p>"))
        assert await task == "<p>right</p>"

    async def test_ids_are_unique(self, scripted_coordinator, scripted_unit):
        tasks = [asyncio.create_task(scripted_coordinator.render(str(i))) for i in range(50)]
        await settle()
        ids = scripted_unit.process_ids()
        assert len(ids) == len(set(ids)) == 50
        for request_id in ids:
            scripted_unit.send(result(request_id, request_id))
        assert await asyncio.gather(*tasks) == ids

    async def test_overlapping_calls_settle_independently(self, scripted_coordinator, scripted_unit):
        first = asyncio.create_task(scripted_coordinator.render("a"))
        second = asyncio.create_task(scripted_coordinator.render("b"))
        await settle()
        id_a, id_b = scripted_unit.process_ids()

        scripted_unit.send({"outcome": "error", "id": id_b, "error": "b failed"})
        with pytest.raises(ProcessingError):
            await second
        assert not first.done()
        assert scripted_coordinator.pending_count == 1

        scripted_unit.send(result(id_a, "<p>a</p>"))
        assert await first == "<p>a</p>"

    async def test_caller_cancellation_removes_entry(self, scripted_coordinator, scripted_unit):
        task = asyncio.create_task(scripted_coordinator.render("x"))
        await settle()
        assert scripted_coordinator.pending_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert scripted_coordinator.pending_count == 0


@pytest.mark.asyncio
class TestTimeouts:
    async def test_silent_unit_times_out_within_budget(self, scripted_unit):
        coordinator = RenderCoordinator(scripted_unit, process_timeout_ms=100)
        await coordinator.start()
        try:
            started = time.monotonic()
            with pytest.raises(RenderTimeoutError) as info:
                await coordinator.render("never answered")
            elapsed = time.monotonic() - started
        finally:
            coordinator.shutdown()

        assert 0.095 <= elapsed < 0.6
        assert info.value.timeout_ms == 100
        assert coordinator.pending_count == 0

    async def test_late_response_after_timeout_is_dropped(self, scripted_unit):
        coordinator = RenderCoordinator(scripted_unit, process_timeout_ms=20)
        await coordinator.start()
        try:
            with pytest.raises(RenderTimeoutError):
                await coordinator.render("slow")
            [request_id] = scripted_unit.process_ids()

            scripted_unit.send(result(request_id, "<p>late</p>"))
            await settle()
            assert coordinator.pending_count == 0
            assert coordinator.healthy
        finally:
            coordinator.shutdown()

    async def test_per_call_timeout_override(self, scripted_coordinator):
        with pytest.raises(RenderTimeoutError):
            await scripted_coordinator.render("x", timeout_ms=10)


@pytest.mark.asyncio
class TestHealthAndFaults:
    async def test_health_check_true_with_pong(self):
        unit = ScriptedUnit(auto_pong=True)
        async with RenderCoordinator(unit, ping_timeout_ms=500) as coordinator:
            assert await coordinator.health_check() is True

    async def test_health_check_false_without_pong(self, scripted_coordinator):
        started = time.monotonic()
        assert await scripted_coordinator.health_check(timeout_ms=50) is False
        assert time.monotonic() - started < 0.5

    async def test_health_check_false_when_not_ready(self):
        coordinator = RenderCoordinator(ScriptedUnit())
        assert await coordinator.health_check() is False

    async def test_unit_fault_goes_to_callback_not_pending(self):
        faults = []
        unit = ScriptedUnit()
        coordinator = RenderCoordinator(unit, on_fault=faults.append)
        await coordinator.start()
        try:
            task = asyncio.create_task(coordinator.render("x"))
            await settle()
            [request_id] = unit.process_ids()

            unit.send({"outcome": "error", "error": "worker global error"})
            await settle()

            assert len(faults) == 1
            assert isinstance(faults[0], UnitFault)
            assert "worker global error" in str(faults[0])
            assert coordinator.healthy is False
            assert not task.done()

            unit.send(result(request_id, "<p>still fine</p>"))
            assert await task == "<p>still fine</p>"
        finally:
            coordinator.shutdown()

    async def test_malformed_message_is_ignored(self, scripted_coordinator, scripted_unit):
        scripted_unit.send({"outcome": "bogus"})
        scripted_unit.send({"outcome": "result", "id": "x"})
        await settle()
        assert scripted_coordinator.healthy


@pytest.mark.asyncio
class TestLifecycle:
    async def test_init_failure_is_permanent(self):
        unit = ScriptedUnit(fail_on_start="Initialization failed: no schema")
        coordinator = RenderCoordinator(unit)

        with pytest.raises(InitializationError, match="no schema"):
            await coordinator.start()
        assert unit.state is UnitState.TERMINATED
        assert unit.released == 1

        with pytest.raises(InitializationError):
            await coordinator.start()
        with pytest.raises(NotReadyError):
            await coordinator.render("x")

    async def test_silent_unit_fails_init_after_budget(self):
        unit = ScriptedUnit(announce=False)
        coordinator = RenderCoordinator(unit, init_timeout_ms=50)

        with pytest.raises(InitializationError, match="not ready"):
            await coordinator.start()
        assert unit.state is UnitState.TERMINATED
        assert unit.released == 1

    async def test_shutdown_rejects_outstanding_and_fails_fast_after(self, scripted_coordinator, scripted_unit):
        task = asyncio.create_task(scripted_coordinator.render("x"))
        await settle()

        scripted_coordinator.shutdown()

        with pytest.raises(TerminationError):
            await task
        assert scripted_coordinator.state is UnitState.TERMINATED
        assert scripted_coordinator.pending_count == 0

        started = time.monotonic()
        with pytest.raises(NotReadyError):
            await scripted_coordinator.render("y")
        assert time.monotonic() - started < 0.1

        scripted_coordinator.shutdown()
        assert scripted_unit.released == 1

    async def test_shutdown_resolves_pending_ping_false(self, scripted_coordinator):
        check = asyncio.create_task(scripted_coordinator.health_check(timeout_ms=5000))
        await settle()
        scripted_coordinator.shutdown()
        assert await check is False

    async def test_messages_after_shutdown_are_ignored(self, scripted_coordinator, scripted_unit):
        scripted_coordinator.shutdown()
        scripted_unit.send({"outcome": "ready"})
        scripted_unit.send({"outcome": "error", "error": "late fault"})
        await settle()
        assert scripted_coordinator.state is UnitState.TERMINATED


@pytest.mark.asyncio
class TestWithThreadUnit:
    async def test_hello_heading(self, thread_coordinator):
        html = await thread_coordinator.render("# Hello")
        h1 = BeautifulSoup(html, "html.parser").find("h1")
        assert h1.get_text() == "Hello"
        assert "math" in thread_coordinator.capabilities

    async def test_health_check_on_live_unit(self, thread_coordinator):
        started = time.monotonic()
        assert await thread_coordinator.health_check() is True
        assert time.monotonic() - started < 1.0

    async def test_concurrent_renders(self, thread_coordinator):
        docs = [f"## Section {i}" for i in range(20)]
        results = await asyncio.gather(*(thread_coordinator.render(d) for d in docs))
        for i, html in enumerate(results):
            assert html.strip() == f"<h2>Section {i}</h2>"

    async def test_script_never_survives(self, thread_coordinator):
        html = await thread_coordinator.render('<script>alert(1)</script>\n\n<a href="javascript:x()">go</a>')
        soup = BeautifulSoup(html, "html.parser")
        assert soup.find("script") is None
        assert "href" not in soup.find("a").attrs

    async def test_shutdown_releases_thread(self):
        unit = ThreadUnit()
        coordinator = RenderCoordinator(unit)
        await coordinator.start()
        coordinator.shutdown()
        await asyncio.sleep(0.2)
        assert not unit._thread.is_alive()


@pytest.mark.asyncio
class TestWithProcessUnit:
    async def test_child_exit_is_a_unit_fault(self):
        faulted = asyncio.Event()
        faults = []

        def on_fault(fault):
            faults.append(fault)
            faulted.set()

        unit = ProcessUnit()
        coordinator = RenderCoordinator(unit, process_timeout_ms=300, init_timeout_ms=30000, on_fault=on_fault)
        await coordinator.start()
        try:
            assert "<h1>Up</h1>" in await coordinator.render("# Up", timeout_ms=10000)

            unit._process.kill()
            await asyncio.wait_for(faulted.wait(), timeout=10)

            assert isinstance(faults[0], UnitFault)
            assert "exited unexpectedly" in str(faults[0])
            assert coordinator.healthy is False
            with pytest.raises(RenderTimeoutError):
                await coordinator.render("# Lost")
            assert coordinator.pending_count == 0
        finally:
            coordinator.shutdown()
        assert coordinator.state is UnitState.TERMINATED
