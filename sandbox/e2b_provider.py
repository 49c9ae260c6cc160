"""E2B-backed remote sandboxes.

Wraps ``e2b.AsyncSandbox`` behind the ``RemoteSandbox`` surface used by the
lifecycle manager. Hosts follow E2B's ``{port}-{sandbox_id}.{domain}`` scheme.
"""

import structlog
from e2b import AsyncSandbox, CommandExitException, FileType, TimeoutException

from sandbox.provider import CommandResult, FileInfo
from sandbox.security import sanitize_output

logger = structlog.get_logger()


class E2BSandbox:
    """A live E2B sandbox connection."""

    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sandbox = sandbox

    @property
    def id(self) -> str:
        return self._sandbox.sandbox_id

    async def write(self, path: str, content: str) -> None:
        # E2B creates missing parent directories on write.
        await self._sandbox.files.write(path, content)

    async def read(self, path: str) -> str:
        return await self._sandbox.files.read(path)

    async def list(self, path: str) -> list[FileInfo]:
        entries = await self._sandbox.files.list(path)
        return [
            FileInfo(
                name=entry.name,
                path=entry.path,
                is_directory=entry.type == FileType.DIR,
                size=entry.size or 0,
            )
            for entry in entries
        ]

    async def run(
        self,
        command: str,
        *,
        background: bool = False,
        timeout: float = 60,
    ) -> CommandResult:
        """Run a shell command.

        Background commands return as soon as the process is spawned. A
        non-zero exit is reported through ``exit_code`` rather than raised.
        """
        try:
            if background:
                await self._sandbox.commands.run(command, background=True, timeout=0)
                return CommandResult(stdout="", stderr="", exit_code=0)

            result = await self._sandbox.commands.run(command, timeout=timeout)
            return CommandResult(
                stdout=sanitize_output(result.stdout or ""),
                stderr=sanitize_output(result.stderr or ""),
                exit_code=result.exit_code,
            )
        except CommandExitException as e:
            return CommandResult(
                stdout=sanitize_output(e.stdout or ""),
                stderr=sanitize_output(e.stderr or ""),
                exit_code=e.exit_code,
            )
        except TimeoutException:
            logger.warning("command_timeout", sandbox_id=self.id, command=command[:50])
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

    def get_host(self, port: int) -> str:
        return self._sandbox.get_host(port)

    async def kill(self) -> None:
        await self._sandbox.kill()


class E2BSandboxProvider:
    """Provision and reconnect E2B sandboxes.

    Attributes:
        api_key: E2B API key.
        template: Sandbox template name.
        timeout_seconds: Remote lifetime requested at creation. Kept in step
            with the local TTL so the remote side never outlives the registry.
    """

    name = "e2b"
    url_scheme = "https"

    def __init__(
        self,
        api_key: str,
        template: str = "base",
        timeout_seconds: int = 3600,
        domain: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.domain = domain
        self.template = template
        self.timeout_seconds = timeout_seconds

    async def create(self) -> E2BSandbox:
        sandbox = await AsyncSandbox.create(
            template=self.template,
            timeout=self.timeout_seconds,
            api_key=self.api_key or None,
            domain=self.domain,
        )
        logger.info("e2b_sandbox_created", sandbox_id=sandbox.sandbox_id, template=self.template)
        return E2BSandbox(sandbox)

    async def connect(self, sandbox_id: str) -> E2BSandbox:
        sandbox = await AsyncSandbox.connect(
            sandbox_id, api_key=self.api_key or None, domain=self.domain
        )
        logger.info("e2b_sandbox_connected", sandbox_id=sandbox_id)
        return E2BSandbox(sandbox)
