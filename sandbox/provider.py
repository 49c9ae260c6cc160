"""Remote sandbox provider surface and shared value types.

A provider hands out ``RemoteSandbox`` connections. Every call on either side
may fail at any time, including ``connect()`` on an id that no longer exists;
callers are expected to route failures through the lifecycle manager.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass
class FileInfo:
    """Information about a file or directory in the sandbox."""

    name: str
    path: str
    is_directory: bool
    size: int = 0


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


@dataclass
class SandboxHandle:
    """A registered sandbox: live connection plus expiry bookkeeping."""

    id: str
    connection: "RemoteSandbox"
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class PreviewServer:
    """Externally reachable preview server bound to a sandbox id."""

    url: str
    sandbox_id: str


class RemoteSandbox(Protocol):
    """Live connection to one remote sandbox."""

    @property
    def id(self) -> str: ...

    async def write(self, path: str, content: str) -> None: ...

    async def read(self, path: str) -> str: ...

    async def list(self, path: str) -> list[FileInfo]: ...

    async def run(
        self,
        command: str,
        *,
        background: bool = False,
        timeout: float = 60,
    ) -> CommandResult: ...

    def get_host(self, port: int) -> str: ...

    async def kill(self) -> None: ...


class SandboxProvider(Protocol):
    """Factory for remote sandboxes."""

    name: str
    url_scheme: str

    async def create(self) -> RemoteSandbox: ...

    async def connect(self, sandbox_id: str) -> RemoteSandbox: ...
