"""Isolated execution unit hosting the transformation pipeline.

Two halves live here:

- the unit-side runtime (``run_unit`` / ``handle_message``), which owns a
  pipeline and answers one message at a time;
- host-side handles (``ThreadUnit``, ``ProcessUnit``) that start the runtime
  in a thread or a child process and move dict messages across.

Nothing but plain dicts crosses the boundary. Pipeline faults are converted
into structured ``error`` responses before they are sent.
"""
from __future__ import annotations

import logging
import multiprocessing
import queue
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .messages import RenderRequest, RenderResponse
from .pipeline import CAPABILITIES, MarkdownPipeline
from .policy import load_schema


logger = logging.getLogger(__name__)

# Inbox sentinel telling the runtime loop to exit.
STOP = None

# Seconds to wait for a thread/process to exit after it was told to stop.
JOIN_TIMEOUT = 1.0

# How often the host reader checks that the child process is still alive.
POLL_INTERVAL = 0.2

Deliver = Callable[[dict], None]


class UnitState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    TERMINATED = "terminated"


def _fault(message: str) -> dict:
    return RenderResponse(outcome="error", error=message).to_wire()


def handle_message(pipeline: MarkdownPipeline, message: Any) -> dict:
    """Answer one inbound message. Never raises for request-scoped problems."""
    raw_id = message.get("id") if isinstance(message, dict) else None
    request_id = raw_id if isinstance(raw_id, str) and raw_id else None

    try:
        request = RenderRequest.model_validate(message)
    except ValidationError as exc:
        detail = "; ".join(err.get("msg", "invalid") for err in exc.errors())
        return RenderResponse(outcome="error", id=request_id, error=f"Invalid request: {detail}").to_wire()

    if request.kind == "ping":
        return RenderResponse(outcome="pong").to_wire()

    started = time.perf_counter()
    try:
        html = pipeline.render(request.markdown)
    except Exception as exc:
        logger.warning("Render %s failed: %s", request.id, exc)
        return RenderResponse(outcome="error", id=request.id, error=str(exc) or type(exc).__name__).to_wire()
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    return RenderResponse(outcome="result", id=request.id, html=html, elapsed_ms=round(elapsed_ms, 3)).to_wire()


def run_unit(receive: Callable[[], Any], send: Deliver, schema_path: Optional[Path] = None) -> None:
    """Unit main loop: initialise, announce readiness, serve until STOP."""
    try:
        pipeline = MarkdownPipeline(load_schema(schema_path))
    except Exception as exc:
        logger.exception("Execution unit failed to initialise")
        send(_fault(f"Initialization failed: {exc}"))
        return

    send(RenderResponse(outcome="ready", capabilities=list(CAPABILITIES)).to_wire())

    while True:
        message = receive()
        if message is STOP:
            return
        send(handle_message(pipeline, message))


class ExecutionUnit:
    """Host-side handle for one execution unit.

    ``state`` is the single source of truth for readiness; the coordinator
    moves it to READY when the unit announces itself, ``terminate`` moves it
    to TERMINATED.
    """

    kind = "base"

    def __init__(self, schema_path: Optional[Path] = None) -> None:
        self.schema_path = schema_path
        self._state = UnitState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._deliver: Optional[Deliver] = None

    @property
    def state(self) -> UnitState:
        return self._state

    def mark_ready(self) -> bool:
        with self._state_lock:
            if self._state is not UnitState.UNINITIALIZED:
                return False
            self._state = UnitState.READY
            return True

    def start(self, deliver: Deliver) -> None:
        raise NotImplementedError

    def post(self, message: dict) -> None:
        raise NotImplementedError

    def terminate(self) -> None:
        """Stop the unit and release its thread/process. Safe to call repeatedly."""
        with self._state_lock:
            if self._state is UnitState.TERMINATED:
                return
            self._state = UnitState.TERMINATED
        self._release()

    def _release(self) -> None:
        pass


class ThreadUnit(ExecutionUnit):
    """Runs the pipeline on a daemon thread inside the host process."""

    kind = "thread"

    def __init__(self, schema_path: Optional[Path] = None) -> None:
        super().__init__(schema_path)
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self, deliver: Deliver) -> None:
        self._deliver = deliver
        self._thread = threading.Thread(target=self._run, name="mdrender-unit", daemon=True)
        self._thread.start()

    def _send(self, message: dict) -> None:
        # Output produced after terminate() has nobody left to read it.
        if self._state is UnitState.TERMINATED or self._deliver is None:
            return
        self._deliver(message)

    def _run(self) -> None:
        try:
            run_unit(self._inbox.get, self._send, self.schema_path)
        except Exception as exc:
            logger.exception("Execution unit thread crashed")
            self._send(_fault(f"Unit crashed: {exc}"))

    def post(self, message: dict) -> None:
        if self._state is UnitState.TERMINATED:
            raise RuntimeError("Execution unit is terminated")
        self._inbox.put(message)

    def _release(self) -> None:
        # Drop queued work so the stop sentinel is seen right after the current job.
        while True:
            try:
                self._inbox.get_nowait()
            except queue.Empty:
                break
        self._inbox.put(STOP)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=0.1)


def _process_main(inbox, outbox, schema_path: Optional[Path]) -> None:
    try:
        run_unit(inbox.get, outbox.put, schema_path)
    except Exception as exc:
        outbox.put(_fault(f"Unit crashed: {exc}"))


class ProcessUnit(ExecutionUnit):
    """Runs the pipeline in a child process; a host thread relays its output."""

    kind = "process"

    def __init__(self, schema_path: Optional[Path] = None, start_method: str = "spawn") -> None:
        super().__init__(schema_path)
        self._ctx = multiprocessing.get_context(start_method)
        self._inbox = None
        self._outbox = None
        self._process = None
        self._reader: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def start(self, deliver: Deliver) -> None:
        self._deliver = deliver
        self._inbox = self._ctx.Queue()
        self._outbox = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=_process_main,
            args=(self._inbox, self._outbox, self.schema_path),
            name="mdrender-unit",
            daemon=True,
        )
        self._process.start()
        self._reader = threading.Thread(target=self._read_outbox, name="mdrender-unit-reader", daemon=True)
        self._reader.start()

    def _read_outbox(self) -> None:
        while not self._stopping.is_set():
            try:
                message = self._outbox.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                if not self._process.is_alive():
                    self._deliver(_fault(f"Unit process exited unexpectedly (exit code {self._process.exitcode})"))
                    return
                continue
            except (EOFError, OSError, ValueError):
                # Queue torn down underneath us.
                if not self._stopping.is_set():
                    self._deliver(_fault("Unit message channel closed"))
                return
            if self._stopping.is_set():
                return
            self._deliver(message)

    def post(self, message: dict) -> None:
        if self._state is UnitState.TERMINATED or self._inbox is None:
            raise RuntimeError("Execution unit is terminated")
        self._inbox.put(message)

    def _release(self) -> None:
        """Stop the child process and the reader thread.

        Blocks the caller: normally for a few milliseconds, since SIGTERM ends
        an idle or busy child at once and the reader wakes every
        ``POLL_INTERVAL``. A child that ignores SIGTERM costs up to
        ``JOIN_TIMEOUT`` more before it is killed.
        """
        self._stopping.set()
        process = self._process
        if process is not None and process.is_alive():
            process.terminate()
            process.join(timeout=JOIN_TIMEOUT)
            if process.is_alive():
                process.kill()
                process.join(timeout=JOIN_TIMEOUT)
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=POLL_INTERVAL * 2)
        if process is not None and process.exitcode is not None and not (reader and reader.is_alive()):
            process.close()
        for q in (self._inbox, self._outbox):
            if q is not None:
                q.close()
                q.cancel_join_thread()


def create_unit(kind: str = "process", schema_path: Optional[Path] = None) -> ExecutionUnit:
    if kind == "thread":
        return ThreadUnit(schema_path)
    if kind == "process":
        return ProcessUnit(schema_path)
    raise ValueError(f"Unknown execution unit kind: {kind!r}")
