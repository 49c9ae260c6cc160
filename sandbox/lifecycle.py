"""Lifecycle management for ephemeral remote sandboxes.

The SandboxLifecycleManager owns the in-memory registry of live sandbox
connections. The registry is a cache: it is empty after a restart and its
entries may be dead remotely at any moment. Durable records only ever hold a
"last known" sandbox id, and every consumer re-resolves that id through
``reconnect_or_create`` (or ``resolve``) instead of trusting it.

State machine per sandbox: Provisioning -> Active -> {Expired | Closed}.
"""

import asyncio
import contextlib
import posixpath
import shlex
import time
from collections.abc import Callable

import structlog

from errors import NotFoundError, ProvisioningError
from models.database import ProjectStore
from models.schemas import FileChange, SandboxStatus
from sandbox.provider import (
    CommandResult,
    FileInfo,
    PreviewServer,
    RemoteSandbox,
    SandboxHandle,
    SandboxProvider,
)
from sandbox.security import validate_path

logger = structlog.get_logger()

PREVIEW_SCRIPT_PATH = "/tmp/start_server.sh"
PREVIEW_LOG_PATH = "/tmp/server.log"
HEALTH_CHECK_COMMAND = 'echo "health check"'

# Directory entries never mirrored or committed.
IGNORED_ENTRY_NAMES: set[str] = {"node_modules"}

# Failure messages that mean the remote sandbox no longer exists.
SANDBOX_GONE_MARKERS: tuple[str, ...] = ("not running", "not found", "expired", "sandbox")


def is_sandbox_gone_error(error: BaseException) -> bool:
    """Return True if an error message indicates the sandbox is gone."""
    message = str(error).lower()
    return any(marker in message for marker in SANDBOX_GONE_MARKERS)


def is_ignored_entry(name: str) -> bool:
    return name in IGNORED_ENTRY_NAMES or name.startswith(".")


class SandboxLifecycleManager:
    """Creates, registers, health-checks, reconnects and expires sandboxes.

    The manager is constructed explicitly and injected into its consumers.
    ``start()`` launches the periodic expiry sweep and ``shutdown()`` tears
    everything down; both are driven by the application lifespan.

    Thread Safety:
        Registry inserts, deletes and sweeps happen under an asyncio.Lock.
        Lookups are plain dict reads.

    Attributes:
        provider: Remote sandbox provider (E2B or Docker).
        store: Optional store used to persist sandbox ids on records.
        ttl_seconds: Lifetime of a registered sandbox.
        sweep_interval_seconds: Interval between expiry sweeps.
        workdir: Directory inside the sandbox that holds generated files.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore | None = None,
        *,
        ttl_seconds: float = 3600.0,
        sweep_interval_seconds: float = 300.0,
        workdir: str = "/home/user",
        preview_port: int = 8000,
        preview_settle_seconds: float = 3.0,
        health_check_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.workdir = workdir
        self.preview_port = preview_port
        self.preview_settle_seconds = preview_settle_seconds
        self.health_check_timeout = health_check_timeout
        self._clock = clock
        self._registry: dict[str, SandboxHandle] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task[None] | None = None

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic expiry sweep. Calling it twice is a no-op."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return

        async def _loop() -> None:
            logger.info(
                "sandbox_sweep_loop_started",
                interval_seconds=self.sweep_interval_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(self.sweep_interval_seconds)
                    await self.sweep_expired()
                except asyncio.CancelledError:
                    logger.info("sandbox_sweep_loop_stopped")
                    return
                except Exception as e:
                    logger.error("sandbox_sweep_loop_error", error=str(e))

        self._sweep_task = asyncio.create_task(_loop(), name="sandbox_expiry_sweep")

    async def shutdown(self) -> None:
        """Stop the sweep and close every registered sandbox. Never raises."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._sweep_task
            self._sweep_task = None

        async with self._lock:
            handles = list(self._registry.values())
            self._registry.clear()

        for handle in handles:
            await self._kill_quietly(handle.connection, reason="shutdown")

        logger.info("sandbox_lifecycle_shutdown", closed=len(handles))

    # -----------------------------------------------------------------
    # Registry
    # -----------------------------------------------------------------

    async def _register(self, connection: RemoteSandbox) -> SandboxHandle:
        now = self._clock()
        handle = SandboxHandle(
            id=connection.id,
            connection=connection,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        async with self._lock:
            self._registry[handle.id] = handle
        return handle

    async def _persist_sandbox_id(
        self,
        sandbox_id: str,
        project_id: str | None,
        generation_id: str | None,
    ) -> None:
        if self.store is None:
            return
        if project_id is not None:
            await self.store.update_project(
                project_id,
                sandbox_id=sandbox_id,
                sandbox_status=SandboxStatus.ACTIVE,
            )
        if generation_id is not None:
            await self.store.update_generation(generation_id, sandbox_id=sandbox_id)

    async def _kill_quietly(self, connection: RemoteSandbox, *, reason: str) -> None:
        try:
            await connection.kill()
            logger.info("sandbox_killed", sandbox_id=connection.id, reason=reason)
        except Exception as e:
            logger.error(
                "sandbox_kill_failed",
                sandbox_id=connection.id,
                reason=reason,
                error=str(e),
            )

    async def create(
        self,
        project_id: str | None = None,
        generation_id: str | None = None,
    ) -> SandboxHandle:
        """Provision a new sandbox and register it.

        Args:
            project_id: Project whose ``sandbox_id`` should point at the new sandbox.
            generation_id: Generation whose ``sandbox_id`` should point at it.

        Returns:
            The registered handle, expiring ``ttl_seconds`` from now.

        Raises:
            ProvisioningError: If the provider fails to create the sandbox.
        """
        try:
            connection = await self.provider.create()
        except Exception as e:
            logger.error(
                "sandbox_provision_failed",
                provider=self.provider.name,
                project_id=project_id,
                error=str(e),
            )
            raise ProvisioningError(f"Failed to create sandbox: {e}") from e

        handle = await self._register(connection)
        await self._persist_sandbox_id(handle.id, project_id, generation_id)
        logger.info(
            "sandbox_created",
            sandbox_id=handle.id,
            provider=self.provider.name,
            project_id=project_id,
            generation_id=generation_id,
        )
        return handle

    def get(self, sandbox_id: str) -> SandboxHandle | None:
        """Pure in-memory lookup; never touches the provider."""
        return self._registry.get(sandbox_id)

    async def _is_alive(self, connection: RemoteSandbox) -> bool:
        try:
            result = await asyncio.wait_for(
                connection.run(HEALTH_CHECK_COMMAND, timeout=self.health_check_timeout),
                timeout=self.health_check_timeout,
            )
            return result.exit_code == 0
        except Exception as e:
            logger.debug("sandbox_health_check_failed", sandbox_id=connection.id, error=str(e))
            return False

    async def reconnect_or_create(
        self,
        sandbox_id: str | None,
        project_id: str | None = None,
    ) -> SandboxHandle:
        """Return a live handle for a last-known sandbox id.

        A registered, responsive sandbox is returned as is. Otherwise the
        provider is asked to reconnect by id. If that fails too, a new
        sandbox is provisioned and every durable reference to the old id is
        rewritten to the new one.

        Raises:
            ProvisioningError: If a replacement cannot be provisioned.
        """
        if not sandbox_id:
            return await self.create(project_id=project_id)

        handle = self.get(sandbox_id)
        if handle is not None:
            if await self._is_alive(handle.connection):
                return handle
            logger.warning("sandbox_unresponsive", sandbox_id=sandbox_id)

        try:
            connection = await self.provider.connect(sandbox_id)
            if await self._is_alive(connection):
                handle = await self._register(connection)
                logger.info("sandbox_reconnected", sandbox_id=sandbox_id)
                return handle
            logger.warning("sandbox_reconnect_unresponsive", sandbox_id=sandbox_id)
        except Exception as e:
            logger.warning("sandbox_reconnect_failed", sandbox_id=sandbox_id, error=str(e))

        replacement = await self.create(project_id=project_id)

        async with self._lock:
            stale = self._registry.pop(sandbox_id, None)
        if stale is not None:
            await self._kill_quietly(stale.connection, reason="replaced")

        if self.store is not None:
            await self.store.replace_sandbox_id(sandbox_id, replacement.id, project_id)

        logger.info(
            "sandbox_replaced",
            old_sandbox_id=sandbox_id,
            new_sandbox_id=replacement.id,
            project_id=project_id,
        )
        return replacement

    async def resolve(self, sandbox_id: str | None, project_id: str | None = None) -> str:
        """Resolve a last-known sandbox id to the id of a live sandbox."""
        handle = await self.reconnect_or_create(sandbox_id, project_id)
        return handle.id

    async def close(self, sandbox_id: str, project_id: str | None = None) -> None:
        """Best-effort teardown. Errors are logged and swallowed."""
        try:
            async with self._lock:
                handle = self._registry.pop(sandbox_id, None)

            if handle is not None:
                await self._kill_quietly(handle.connection, reason="closed")
            else:
                # Unregistered ids may still be running remotely after a restart.
                connection = await self.provider.connect(sandbox_id)
                await self._kill_quietly(connection, reason="closed")
        except Exception as e:
            logger.warning("sandbox_close_failed", sandbox_id=sandbox_id, error=str(e))

        if project_id is not None and self.store is not None:
            try:
                await self.store.update_project(project_id, sandbox_status=SandboxStatus.INACTIVE)
            except Exception as e:
                logger.warning(
                    "sandbox_close_persist_failed",
                    sandbox_id=sandbox_id,
                    project_id=project_id,
                    error=str(e),
                )

    async def sweep_expired(self) -> int:
        """Close every registered sandbox past its expiry.

        Expired entries are removed from the registry before they are killed,
        so concurrent sweeps never close the same sandbox twice.

        Returns:
            Number of sandboxes closed.
        """
        now = self._clock()
        async with self._lock:
            expired = [h for h in self._registry.values() if h.is_expired(now)]
            for handle in expired:
                del self._registry[handle.id]

        for handle in expired:
            await self._kill_quietly(handle.connection, reason="expired")

        if expired:
            logger.info(
                "sandbox_sweep_complete",
                closed=len(expired),
                remaining=len(self._registry),
            )
        return len(expired)

    def get_stats(self) -> dict[str, int]:
        """Return total, active and expired registry counts."""
        now = self._clock()
        total = len(self._registry)
        expired = sum(1 for h in self._registry.values() if h.is_expired(now))
        return {"total": total, "active": total - expired, "expired": expired}

    # -----------------------------------------------------------------
    # Remote filesystem / exec primitives
    # -----------------------------------------------------------------

    def _require(self, sandbox_id: str) -> SandboxHandle:
        handle = self._registry.get(sandbox_id)
        if handle is None:
            raise NotFoundError(f"Sandbox {sandbox_id} not found")
        return handle

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        await self._require(sandbox_id).connection.write(path, content)

    async def read_file(self, sandbox_id: str, path: str) -> str:
        return await self._require(sandbox_id).connection.read(path)

    async def list_files(self, sandbox_id: str, path: str) -> list[FileInfo]:
        return await self._require(sandbox_id).connection.list(path)

    async def run_command(
        self,
        sandbox_id: str,
        command: str,
        *,
        background: bool = False,
        timeout: float = 60,
    ) -> CommandResult:
        return await self._require(sandbox_id).connection.run(
            command, background=background, timeout=timeout
        )

    async def list_files_recursive(
        self,
        sandbox_id: str,
        directory: str | None = None,
    ) -> list[str]:
        """List every file path under a directory.

        ``node_modules`` and hidden entries (and everything beneath them) are
        skipped.

        Returns:
            Sorted absolute file paths.
        """
        pending = [directory or self.workdir]
        files: list[str] = []
        while pending:
            current = pending.pop()
            for entry in await self.list_files(sandbox_id, current):
                if is_ignored_entry(entry.name):
                    continue
                if entry.is_directory:
                    pending.append(entry.path)
                else:
                    files.append(entry.path)
        return sorted(files)

    async def upload_repository(
        self,
        sandbox_id: str,
        files: list[FileChange],
        target_dir: str | None = None,
    ) -> int:
        """Seed a sandbox with repository files.

        Returns:
            Number of files written. Paths escaping ``target_dir`` are skipped.
        """
        root = target_dir or self.workdir
        written = 0
        for change in files:
            is_valid, error_msg, _ = validate_path(root, change.path)
            if not is_valid:
                logger.warning("repository_file_skipped", path=change.path, reason=error_msg)
                continue
            await self.write_file(sandbox_id, posixpath.join(root, change.path), change.content)
            written += 1
        logger.info("repository_uploaded", sandbox_id=sandbox_id, files=written)
        return written

    # -----------------------------------------------------------------
    # Preview server
    # -----------------------------------------------------------------

    async def _launch_preview(self, sandbox_id: str, directory: str, port: int) -> str:
        handle = self._require(sandbox_id)
        script = (
            "#!/bin/bash\n"
            f"cd {shlex.quote(directory)}\n"
            "while true; do\n"
            f"  python3 -m http.server {port} --bind 0.0.0.0\n"
            "  sleep 1\n"
            "done\n"
        )
        await self.write_file(sandbox_id, PREVIEW_SCRIPT_PATH, script)
        await self.run_command(sandbox_id, f"chmod +x {PREVIEW_SCRIPT_PATH}")
        await self.run_command(sandbox_id, f"pkill -f {PREVIEW_SCRIPT_PATH} || true")
        await self.run_command(
            sandbox_id,
            f"nohup {PREVIEW_SCRIPT_PATH} > {PREVIEW_LOG_PATH} 2>&1 &",
            background=True,
        )

        await asyncio.sleep(self.preview_settle_seconds)

        check = await self.run_command(
            sandbox_id,
            f'curl -s -o /dev/null -w "%{{http_code}}" http://localhost:{port}/',
            timeout=10,
        )
        if check.stdout.strip() != "200":
            logger.warning(
                "preview_server_not_ready",
                sandbox_id=sandbox_id,
                port=port,
                status=check.stdout.strip() or None,
                stderr=check.stderr[:200],
            )

        return self._url_for(handle, port)

    def _url_for(self, handle: SandboxHandle, port: int) -> str:
        return f"{self.provider.url_scheme}://{handle.connection.get_host(port)}"

    def get_sandbox_url(self, sandbox_id: str, port: int | None = None) -> str | None:
        """Public URL of a registered sandbox's preview port, or ``None`` if unregistered."""
        handle = self._registry.get(sandbox_id)
        if handle is None:
            return None
        return self._url_for(handle, port or self.preview_port)

    async def start_preview_server(
        self,
        sandbox_id: str,
        directory: str | None = None,
        port: int | None = None,
        project_id: str | None = None,
    ) -> PreviewServer:
        """Start a supervised static file server and return its public URL.

        If the sandbox turns out to be gone, one replacement is provisioned
        through ``reconnect_or_create`` and startup is retried exactly once.
        The returned ``sandbox_id`` is then the replacement's id.

        Raises:
            ProvisioningError: If the replacement cannot be provisioned.
        """
        directory = directory or self.workdir
        port = port or self.preview_port

        try:
            url = await self._launch_preview(sandbox_id, directory, port)
            logger.info("preview_server_started", sandbox_id=sandbox_id, url=url)
            return PreviewServer(url=url, sandbox_id=sandbox_id)
        except Exception as e:
            if not is_sandbox_gone_error(e):
                raise
            logger.warning(
                "preview_server_sandbox_gone",
                sandbox_id=sandbox_id,
                error=str(e),
            )

        handle = await self.reconnect_or_create(sandbox_id, project_id)
        url = await self._launch_preview(handle.id, directory, port)
        logger.info(
            "preview_server_started",
            sandbox_id=handle.id,
            url=url,
            replaced=handle.id != sandbox_id,
        )
        return PreviewServer(url=url, sandbox_id=handle.id)
