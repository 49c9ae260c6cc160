"""Docker-based sandboxes for local development.

Each sandbox is a long-running container named ``sandbox-{id}``. The docker
SDK is blocking, so every call runs in the default executor under a timeout.
"""

import asyncio
import os
import tarfile
import uuid
from io import BytesIO

import docker
import structlog
from docker.errors import APIError, NotFound

from sandbox.provider import CommandResult, FileInfo
from sandbox.security import sanitize_output

logger = structlog.get_logger()

# Container security configuration
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 50000,  # 50% of one CPU core
    "network_mode": "bridge",
    "security_opt": ["no-new-privileges"],
}

_CONTAINER_PREFIX = "sandbox-"


class DockerSandbox:
    """A running sandbox container."""

    def __init__(
        self,
        sandbox_id: str,
        container: docker.models.containers.Container,
        timeout: float = 30,
    ) -> None:
        self._id = sandbox_id
        self._container = container
        self._timeout = timeout

    @property
    def id(self) -> str:
        return self._id

    async def _call(self, func, *args, timeout: float | None = None):
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, func, *args),
            timeout=timeout or self._timeout,
        )

    async def write(self, path: str, content: str) -> None:
        await self._call(self._write_blocking, path, content)
        logger.debug("file_written", sandbox_id=self._id, path=path)

    def _write_blocking(self, path: str, content: str) -> None:
        """Write file to container using tar archive (blocking operation)."""
        parent_dir = os.path.dirname(path) or "/"
        self._container.exec_run(["mkdir", "-p", parent_dir])

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            file_data = content.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=os.path.basename(path))
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        self._container.put_archive(parent_dir, tar_stream)

    async def read(self, path: str) -> str:
        return await self._call(self._read_blocking, path)

    def _read_blocking(self, path: str) -> str:
        """Read file from container using tar archive (blocking operation)."""
        try:
            bits, _ = self._container.get_archive(path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Cannot read file: {path}")
            return extracted.read().decode("utf-8")

    async def list(self, path: str) -> list[FileInfo]:
        return await self._call(self._list_blocking, path)

    def _list_blocking(self, path: str) -> list[FileInfo]:
        """List one directory level via `find` (blocking operation)."""
        # %y=type, %p=full path, %s=size (bytes)
        result = self._container.exec_run(
            ["find", path, "-mindepth", "1", "-maxdepth", "1", "-printf", "%y\t%p\t%s\n"]
        )
        if result.exit_code != 0:
            raise FileNotFoundError(f"Directory not found: {path}")

        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        files: list[FileInfo] = []
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or not parts[1]:
                continue
            type_char, full_path, size_str = parts
            files.append(
                FileInfo(
                    name=full_path.rstrip("/").split("/")[-1],
                    path=full_path,
                    is_directory=type_char == "d",
                    size=int(size_str) if size_str.isdigit() else 0,
                )
            )
        return files

    async def run(
        self,
        command: str,
        *,
        background: bool = False,
        timeout: float = 60,
    ) -> CommandResult:
        if background:
            await self._call(self._spawn_blocking, command)
            return CommandResult(stdout="", stderr="", exit_code=0)

        try:
            return await self._call(self._execute_blocking, command, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "command_timeout",
                sandbox_id=self._id,
                command=command[:50],
                timeout=timeout,
            )
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

    def _spawn_blocking(self, command: str) -> None:
        self._container.exec_run(["/bin/bash", "-lc", command], detach=True)

    def _execute_blocking(self, command: str) -> CommandResult:
        """Execute command in container (blocking operation)."""
        result = self._container.exec_run(["/bin/bash", "-lc", command], demux=True)

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            stdout_bytes = result.output

        return CommandResult(
            stdout=sanitize_output(stdout_bytes.decode("utf-8", errors="replace")),
            stderr=sanitize_output(stderr_bytes.decode("utf-8", errors="replace")),
            exit_code=result.exit_code,
        )

    def get_host(self, port: int) -> str:
        """Return ``localhost:<published port>`` for a container port."""
        bindings = self._container.ports.get(f"{port}/tcp") or []
        if not bindings:
            raise RuntimeError(f"Port {port} is not published for sandbox {self._id}")
        return f"localhost:{bindings[0]['HostPort']}"

    async def kill(self) -> None:
        await self._call(self._kill_blocking)
        logger.info("docker_sandbox_killed", sandbox_id=self._id)

    def _kill_blocking(self) -> None:
        try:
            self._container.stop(timeout=5)
            self._container.remove(force=True)
        except NotFound:
            pass  # Already removed


class DockerSandboxProvider:
    """Provision sandbox containers on the local Docker daemon.

    Attributes:
        image_name: Image for sandbox containers; must provide bash and python3.
        exposed_ports: Container ports published to random host ports.
    """

    name = "docker"
    url_scheme = "http"

    def __init__(
        self,
        image_name: str = "python:3.12-slim",
        exposed_ports: tuple[int, ...] = (8000,),
    ) -> None:
        self.image_name = image_name
        self.exposed_ports = exposed_ports
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def create(self) -> DockerSandbox:
        sandbox_id = uuid.uuid4().hex[:12]
        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None, self._create_container, sandbox_id
                ),
                timeout=30,
            )
        except (APIError, TimeoutError) as e:
            logger.error("docker_sandbox_creation_failed", sandbox_id=sandbox_id, error=str(e))
            raise RuntimeError(f"Failed to create sandbox: {e}") from e

        logger.info(
            "docker_sandbox_created",
            sandbox_id=sandbox_id,
            container_id=container.id[:12],
        )
        return DockerSandbox(sandbox_id, container)

    def _create_container(self, sandbox_id: str) -> docker.models.containers.Container:
        """Create, start and inspect the container (blocking operation)."""
        container = self.client.containers.run(
            self.image_name,
            command=["sleep", "infinity"],
            name=f"{_CONTAINER_PREFIX}{sandbox_id}",
            detach=True,
            remove=False,
            ports={f"{port}/tcp": None for port in self.exposed_ports},
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            network_mode=CONTAINER_CONFIG["network_mode"],
            security_opt=CONTAINER_CONFIG["security_opt"],
            working_dir="/home/user",
        )
        container.reload()
        return container

    async def connect(self, sandbox_id: str) -> DockerSandbox:
        container = await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None, self.client.containers.get, f"{_CONTAINER_PREFIX}{sandbox_id}"
            ),
            timeout=30,
        )
        if container.status != "running":
            raise RuntimeError(f"Sandbox {sandbox_id} is not running ({container.status})")
        logger.info("docker_sandbox_connected", sandbox_id=sandbox_id)
        return DockerSandbox(sandbox_id, container)
