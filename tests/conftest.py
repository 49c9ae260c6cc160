"""Shared test fixtures for backend tests.

Provides an in-memory sandbox provider, a temporary ProjectStore, a fresh
EventBus and LLM response factories so that tests never touch real remote
sandboxes, GitHub or LLM APIs.
"""

import sys
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.coding_agent import CodingAgentSession  # noqa: E402
from agents.utils import LLMResponse, MockLLMClient, ToolCallData, make_mock_response  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import StatusEvent, StatusEventType  # noqa: E402
from models.database import ProjectStore  # noqa: E402
from sandbox.lifecycle import SandboxLifecycleManager  # noqa: E402
from sandbox.provider import CommandResult, FileInfo  # noqa: E402

# ---------------------------------------------------------------------------
# In-memory sandbox provider
# ---------------------------------------------------------------------------


class FakeSandbox:
    """Remote sandbox double holding files in a dict keyed by absolute path."""

    def __init__(self, sandbox_id: str) -> None:
        self._id = sandbox_id
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.alive = True
        self.kill_count = 0

    @property
    def id(self) -> str:
        return self._id

    def _check_alive(self) -> None:
        if not self.alive:
            raise RuntimeError(f"Sandbox {self._id} is not running")

    async def write(self, path: str, content: str) -> None:
        self._check_alive()
        self.files[path] = content

    async def read(self, path: str) -> str:
        self._check_alive()
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def list(self, path: str) -> list[FileInfo]:
        self._check_alive()
        prefix = path.rstrip("/") + "/"
        entries: dict[str, FileInfo] = {}
        for file_path, content in self.files.items():
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            name = rest.split("/", 1)[0]
            if "/" in rest:
                entries.setdefault(name, FileInfo(name=name, path=prefix + name, is_directory=True))
            else:
                entries[name] = FileInfo(
                    name=name, path=file_path, is_directory=False, size=len(content)
                )
        return list(entries.values())

    async def run(
        self,
        command: str,
        *,
        background: bool = False,
        timeout: float = 60,
    ) -> CommandResult:
        self._check_alive()
        self.commands.append(command)
        if command.startswith("curl"):
            return CommandResult(stdout="200", stderr="", exit_code=0)
        return CommandResult(stdout="", stderr="", exit_code=0)

    def get_host(self, port: int) -> str:
        return f"{port}-{self._id}.sandbox.test"

    async def kill(self) -> None:
        self.kill_count += 1
        self.alive = False


class FakeProvider:
    """Provider double; ``connect`` fails for unknown or killed sandboxes."""

    name = "fake"
    url_scheme = "https"

    def __init__(self) -> None:
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.fail_create = False
        self._counter = 0

    async def create(self) -> FakeSandbox:
        if self.fail_create:
            raise RuntimeError("quota exceeded")
        self._counter += 1
        sandbox = FakeSandbox(f"sbx_{self._counter}")
        self.sandboxes[sandbox.id] = sandbox
        return sandbox

    async def connect(self, sandbox_id: str) -> FakeSandbox:
        sandbox = self.sandboxes.get(sandbox_id)
        if sandbox is None or not sandbox.alive:
            raise RuntimeError(f"Sandbox {sandbox_id} not found")
        return sandbox


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


# ---------------------------------------------------------------------------
# Store, lifecycle and event bus
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path) -> ProjectStore:
    """Provide an initialized ProjectStore backed by a temporary SQLite file."""
    project_store = ProjectStore(str(tmp_path / "data" / "test.db"))
    await project_store.init()
    return project_store


@pytest.fixture()
def lifecycle(fake_provider: FakeProvider, store: ProjectStore) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(
        fake_provider,
        store,
        ttl_seconds=3600.0,
        preview_settle_seconds=0,
    )


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def site_responses() -> list[LLMResponse]:
    """Two-step script: write index.html and style.css, then finish."""
    return [
        make_mock_response(
            "Writing the page.",
            tool_calls=[
                make_tool_call("write_file", {"path": "index.html", "content": "<h1>Todo</h1>"}, "tc_html"),
                make_tool_call("write_file", {"path": "style.css", "content": "h1 { color: red; }"}, "tc_css"),
            ],
        ),
        make_mock_response("Done."),
    ]


def scripted_agent_factory(responses: list[LLMResponse] | None = None):
    """Build an agent factory whose sessions replay ``responses``."""

    def _factory(scratch_dir: str) -> CodingAgentSession:
        client = MockLLMClient(responses=responses if responses is not None else site_responses())
        return CodingAgentSession(client, scratch_dir, max_iterations=5)

    return _factory


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def drain(queue) -> list[StatusEvent]:
    """Collect every queued event, excluding the channel-closed sentinel."""
    events: list[StatusEvent] = []
    while not queue.empty():
        event = queue.get_nowait()
        if event.type != StatusEventType.CHANNEL_CLOSED:
            events.append(event)
    return events
