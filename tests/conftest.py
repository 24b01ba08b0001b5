# tests/conftest.py
import pytest
import pytest_asyncio

from mdrender_backend.coordinator import RenderCoordinator
from mdrender_backend.pipeline import MarkdownPipeline
from mdrender_backend.unit import ExecutionUnit, ThreadUnit


class ScriptedUnit(ExecutionUnit):
    """In-memory unit: records what the host posts and only answers when told.

    ``announce`` controls whether it reports ready on start; ``auto_pong``
    answers pings immediately.
    """

    kind = "scripted"

    def __init__(self, announce=True, auto_pong=False, fail_on_start=None):
        super().__init__()
        self.announce = announce
        self.auto_pong = auto_pong
        self.fail_on_start = fail_on_start
        self.posted = []
        self.released = 0

    def start(self, deliver):
        self._deliver = deliver
        if self.fail_on_start is not None:
            deliver({"outcome": "error", "error": self.fail_on_start})
        elif self.announce:
            deliver({"outcome": "ready", "capabilities": ["markdown-to-html"]})

    def post(self, message):
        self.posted.append(message)
        if self.auto_pong and message.get("kind") == "ping":
            self._deliver({"outcome": "pong"})

    def send(self, message):
        self._deliver(message)

    def process_ids(self):
        return [m["id"] for m in self.posted if m.get("kind") == "process"]

    def _release(self):
        self.released += 1


@pytest.fixture
def pipeline():
    return MarkdownPipeline()


@pytest.fixture
def scripted_unit():
    return ScriptedUnit()


@pytest_asyncio.fixture
async def scripted_coordinator(scripted_unit):
    coordinator = RenderCoordinator(scripted_unit, process_timeout_ms=2000, ping_timeout_ms=100)
    await coordinator.start()
    yield coordinator
    coordinator.shutdown()


@pytest_asyncio.fixture
async def thread_coordinator():
    coordinator = RenderCoordinator(ThreadUnit(), process_timeout_ms=5000, ping_timeout_ms=1000)
    await coordinator.start()
    yield coordinator
    coordinator.shutdown()
