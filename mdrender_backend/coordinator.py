"""Host-side coordinator for one isolated execution unit.

The coordinator owns the pending-request table. Entries are inserted when a
request is dispatched and removed on exactly one of: matching result, matching
error, timeout, caller cancellation, or shutdown. Responses whose id is not in
the table (late answers to timed-out requests, stray messages) are dropped.

All bookkeeping runs on the event loop thread; unit output arrives from other
threads and is handed over with ``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from pydantic import ValidationError

from . import config
from .errors import (
    InitializationError,
    NotReadyError,
    ProcessingError,
    RenderTimeoutError,
    TerminationError,
    UnitFault,
)
from .messages import RenderResponse, ping_request, process_request
from .unit import ExecutionUnit, UnitState, create_unit


logger = logging.getLogger(__name__)

FaultCallback = Callable[[UnitFault], None]


@dataclass
class PendingRequest:
    id: str
    future: "asyncio.Future[str]"
    timer: asyncio.TimerHandle
    dispatched_at: float = field(default_factory=time.monotonic)

    def resolve(self, html: str) -> None:
        self.timer.cancel()
        if not self.future.done():
            self.future.set_result(html)

    def reject(self, error: Exception) -> None:
        self.timer.cancel()
        if not self.future.done():
            self.future.set_exception(error)


class RenderCoordinator:
    """Dispatch ``render`` calls to an execution unit and match the answers.

    Usage::

        async with RenderCoordinator(ThreadUnit()) as coordinator:
            html = await coordinator.render("# Hello")
    """

    def __init__(
        self,
        unit: Optional[ExecutionUnit] = None,
        *,
        process_timeout_ms: float = config.PROCESS_TIMEOUT_MS,
        ping_timeout_ms: float = config.PING_TIMEOUT_MS,
        init_timeout_ms: float = config.INIT_TIMEOUT_MS,
        on_fault: Optional[FaultCallback] = None,
    ) -> None:
        self._unit = unit if unit is not None else create_unit(config.UNIT_KIND, config.SCHEMA_PATH)
        self.process_timeout_ms = process_timeout_ms
        self.ping_timeout_ms = ping_timeout_ms
        self.init_timeout_ms = init_timeout_ms
        self.on_fault = on_fault

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, PendingRequest] = {}
        self._pings: Deque["asyncio.Future[bool]"] = deque()
        self._ready_waiter: Optional["asyncio.Future[None]"] = None
        self._counter = itertools.count(1)
        self._started = False
        self._healthy = True
        self.capabilities: list[str] = []

    # -- properties -------------------------------------------------------

    @property
    def state(self) -> UnitState:
        return self._unit.state

    @property
    def healthy(self) -> bool:
        """False once the unit reported a fault outside any request."""
        return self._healthy and self.state is UnitState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Start the unit and wait for its ``ready`` announcement.

        Raises InitializationError if the unit fails or stays silent; the
        unit is released and this coordinator cannot be started again.
        """
        if self._started:
            raise InitializationError("Coordinator was already started; create a new one")
        self._started = True
        self._loop = asyncio.get_running_loop()
        self._ready_waiter = self._loop.create_future()

        try:
            self._unit.start(self._deliver)
        except Exception as exc:
            self.shutdown()
            raise InitializationError(f"Failed to start execution unit: {exc}") from exc

        try:
            await asyncio.wait_for(asyncio.shield(self._ready_waiter), timeout=self.init_timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self.shutdown()
            raise InitializationError(f"Execution unit not ready after {self.init_timeout_ms:g} ms") from None
        except InitializationError:
            self.shutdown()
            raise
        logger.info("Execution unit ready (%s)", self._unit.kind)

    def shutdown(self) -> None:
        """Terminate the unit and reject everything still outstanding. Idempotent.

        Runs synchronously on the calling thread. For a process unit that
        includes reaping the child, which is bounded by ``unit.JOIN_TIMEOUT``
        per signal.
        """
        if self.state is UnitState.TERMINATED and not self._pending and not self._pings:
            return
        try:
            self._unit.terminate()
        finally:
            pending = list(self._pending.values())
            self._pending.clear()
            for entry in pending:
                entry.reject(TerminationError(f"Execution unit shut down before request {entry.id} completed"))
            while self._pings:
                waiter = self._pings.popleft()
                if not waiter.done():
                    waiter.set_result(False)
            if self._ready_waiter is not None and not self._ready_waiter.done():
                self._ready_waiter.set_exception(InitializationError("Execution unit shut down during startup"))
                # Nobody may be awaiting it any more.
                self._ready_waiter.exception()
            if pending:
                logger.info("Shut down execution unit with %d pending request(s)", len(pending))

    async def __aenter__(self) -> "RenderCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -- operations -------------------------------------------------------

    def _next_id(self) -> str:
        # Counter alone keeps ids unique per coordinator; the timestamp keeps
        # them distinguishable across coordinators in logs.
        return f"{int(time.time() * 1000):x}-{next(self._counter)}"

    async def render(self, markdown: str, timeout_ms: Optional[float] = None) -> str:
        """Render ``markdown`` to sanitized HTML in the execution unit."""
        if self.state is not UnitState.READY:
            if self.state is UnitState.TERMINATED:
                raise NotReadyError("Execution unit has been shut down")
            raise NotReadyError("Execution unit is not ready")

        loop = self._loop or asyncio.get_running_loop()
        budget_ms = self.process_timeout_ms if timeout_ms is None else timeout_ms
        request_id = self._next_id()
        future: "asyncio.Future[str]" = loop.create_future()
        timer = loop.call_later(budget_ms / 1000.0, self._expire, request_id, budget_ms)
        self._pending[request_id] = PendingRequest(id=request_id, future=future, timer=timer)

        try:
            self._unit.post(process_request(request_id, markdown).to_wire())
        except Exception as exc:
            self._discard(request_id)
            raise NotReadyError(f"Execution unit rejected the request: {exc}") from exc

        try:
            return await future
        finally:
            # No-op unless the caller was cancelled while waiting.
            self._discard(request_id)

    async def health_check(self, timeout_ms: Optional[float] = None) -> bool:
        """Ping the unit; True only if a pong arrives within the budget."""
        if self.state is not UnitState.READY:
            return False
        loop = self._loop or asyncio.get_running_loop()
        budget_ms = self.ping_timeout_ms if timeout_ms is None else timeout_ms
        waiter: "asyncio.Future[bool]" = loop.create_future()
        self._pings.append(waiter)
        try:
            self._unit.post(ping_request().to_wire())
            return await asyncio.wait_for(waiter, timeout=budget_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning("Health check timed out after %g ms", budget_ms)
            return False
        except Exception as exc:
            logger.warning("Health check failed: %s", exc)
            return False
        finally:
            try:
                self._pings.remove(waiter)
            except ValueError:
                pass

    # -- message handling -------------------------------------------------

    def _discard(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()

    def _expire(self, request_id: str, budget_ms: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        logger.warning("Render %s timed out after %g ms", request_id, budget_ms)
        entry.reject(RenderTimeoutError(f"No response within {budget_ms:g} ms", request_id=request_id, timeout_ms=budget_ms))

    def _deliver(self, message: dict) -> None:
        """Thread-safe entry point for unit output."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Dropping unit message, event loop is gone: %r", message)
            return
        try:
            loop.call_soon_threadsafe(self._on_message, message)
        except RuntimeError:
            # Loop closed between the check and the call.
            logger.debug("Dropping unit message, event loop is closed: %r", message)

    def _on_message(self, message: dict) -> None:
        if self.state is UnitState.TERMINATED:
            logger.debug("Ignoring message from terminated unit: %r", message)
            return
        try:
            response = RenderResponse.model_validate(message)
        except ValidationError as exc:
            logger.warning("Discarding malformed unit message: %s", exc)
            return

        if response.outcome == "ready":
            self._on_ready(response)
        elif response.outcome == "pong":
            self._on_pong()
        elif response.id is None:
            self._on_fault(response.error or "Unknown unit fault")
        else:
            self._on_reply(response)

    def _on_ready(self, response: RenderResponse) -> None:
        if not self._unit.mark_ready():
            logger.debug("Duplicate ready message ignored")
            return
        self.capabilities = list(response.capabilities or [])
        if self._ready_waiter is not None and not self._ready_waiter.done():
            self._ready_waiter.set_result(None)

    def _on_pong(self) -> None:
        while self._pings:
            waiter = self._pings.popleft()
            if not waiter.done():
                waiter.set_result(True)
                return

    def _on_reply(self, response: RenderResponse) -> None:
        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug("Discarding response for unknown request %s", response.id)
            return
        if response.outcome == "result":
            if response.elapsed_ms is not None:
                logger.debug("Render %s completed in %.2f ms", response.id, response.elapsed_ms)
            entry.resolve(response.html or "")
        else:
            entry.reject(ProcessingError(response.error or "Processing failed", request_id=response.id))

    def _on_fault(self, error: str) -> None:
        fault = UnitFault(error)
        if self.state is UnitState.UNINITIALIZED:
            logger.error("Execution unit failed during startup: %s", error)
            if self._ready_waiter is not None and not self._ready_waiter.done():
                self._ready_waiter.set_exception(InitializationError(error))
            return

        logger.error("Execution unit fault: %s", error)
        self._healthy = False
        if self.on_fault is not None:
            try:
                self.on_fault(fault)
            except Exception:
                logger.exception("Fault callback raised")


def create_coordinator(on_fault: Optional[FaultCallback] = None) -> RenderCoordinator:
    """Build a coordinator from the environment-driven settings in ``config``."""
    if config.UNIT_KIND not in config.UNIT_KINDS:
        raise ValueError(f"MDRENDER_UNIT_KIND must be one of {sorted(config.UNIT_KINDS)}")
    return RenderCoordinator(
        create_unit(config.UNIT_KIND, config.SCHEMA_PATH),
        process_timeout_ms=config.PROCESS_TIMEOUT_MS,
        ping_timeout_ms=config.PING_TIMEOUT_MS,
        init_timeout_ms=config.INIT_TIMEOUT_MS,
        on_fault=on_fault,
    )
