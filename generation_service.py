"""Code generation pipeline: prompt -> agent -> sandbox -> preview -> commit.

Stages of ``generate()``:

1. Validate that the project exists and owns the task.
2. Persist a ``running`` Generation so progress is observable out of process.
3. Provision a sandbox.
4. Run the coding agent against a local scratch directory, mirroring each
   completed write into the sandbox, then run the authoritative sweep.
5. Mark the Generation ``completed`` with its final file list.
6. Start the preview server.
7. Optionally branch and commit (non-fatal: failures become a warning).
8. Emit the terminal ``complete`` event.

Any failure in stages 1-6 marks the Generation (and Task) failed, closes the
sandbox best-effort, emits ``error`` and re-raises. Cancellation at any
stage (job shutdown) does the same bookkeeping, shielded, before propagating.
"""

import asyncio
import shutil
import tempfile
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from agents.coding_agent import AgentFactory, AgentMessage, create_agent_session
from config import settings
from errors import AgentExecutionError, NotFoundError, ProvisioningError
from events.bus import EventBus
from events.types import StatusEvent, StatusEventType, StatusLevel
from models.database import ProjectStore
from models.schemas import BuildStatus, GenerationStatus, Project, Task
from sandbox.lifecycle import SandboxLifecycleManager
from sync.file_sync import FileSyncBridge
from vcs.integrator import VersionControlIntegrator

logger = structlog.get_logger()

CANCELLED_MESSAGE = "Generation cancelled during shutdown"


@dataclass
class GenerationResult:
    """Terminal result of a successful generation."""

    generation_id: str
    sandbox_id: str
    sandbox_url: str
    files_created: list[str] = field(default_factory=list)
    commit_sha: str | None = None
    commit_url: str | None = None
    branch_name: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CodeGenerationPipeline:
    """Runs generations end to end and reports progress on the event bus.

    Attributes:
        store: Durable project/task/generation records.
        lifecycle: Sandbox lifecycle manager.
        event_bus: Status channel for progress and terminal events.
        agent_factory: Builds a coding-agent session for a scratch directory.
        vcs: Optional version control integrator for auto-commit.
    """

    def __init__(
        self,
        store: ProjectStore,
        lifecycle: SandboxLifecycleManager,
        event_bus: EventBus,
        agent_factory: AgentFactory = create_agent_session,
        vcs_integrator: VersionControlIntegrator | None = None,
        *,
        workdir: str | None = None,
        agent_timeout_seconds: float | None = None,
        agent_model: str | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.event_bus = event_bus
        self.agent_factory = agent_factory
        self.vcs = vcs_integrator
        self.workdir = workdir or settings.sandbox_workdir
        self.agent_timeout_seconds = agent_timeout_seconds or settings.agent_timeout_seconds
        self.agent_model = agent_model or ("mock" if settings.use_mock_llm else settings.default_model)
        self._stream_tasks: set[asyncio.Task[None]] = set()

    # -----------------------------------------------------------------
    # Status channel
    # -----------------------------------------------------------------

    async def _emit(
        self,
        channels: list[str],
        event_type: StatusEventType,
        data: dict[str, Any],
    ) -> None:
        for channel_id in channels:
            await self.event_bus.publish(
                StatusEvent(type=event_type, channel_id=channel_id, data=data)
            )

    async def _status(
        self,
        channels: list[str],
        message: str,
        level: StatusLevel = StatusLevel.INFO,
    ) -> None:
        await self._emit(channels, StatusEventType.STATUS, {"message": message, "type": level.value})

    async def _close_channels(self, channels: list[str]) -> None:
        for channel_id in channels:
            await self.event_bus.close_channel(channel_id)

    # -----------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------

    async def _validate(self, project_id: str, task_id: str | None) -> tuple[Project, Task | None]:
        project = await self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")

        task = None
        if task_id is not None:
            task = await self.store.get_task(task_id)
            if task is None or task.project_id != project.id:
                raise NotFoundError(f"Task {task_id} not found in project {project_id}")
        return project, task

    async def _handle_agent_message(
        self,
        message: AgentMessage,
        bridge: FileSyncBridge,
        channels: list[str],
        write_paths: dict[str, str],
    ) -> None:
        if message.type == "text":
            await self._emit(channels, StatusEventType.TEXT, {"content": message.text})

        elif message.type == "tool_use":
            path = message.tool_input.get("path")
            if message.is_write and isinstance(path, str) and path:
                bridge.record_write(path)
                write_paths[message.tool_call_id or ""] = path
            await self._emit(
                channels,
                StatusEventType.TOOL_START,
                {"tool": message.tool_name, "path": path},
            )

        elif message.type == "tool_result":
            path = write_paths.pop(message.tool_call_id or "", None)
            if path is not None:
                await bridge.complete_write(message.is_error)
            await self._emit(
                channels,
                StatusEventType.TOOL_COMPLETE,
                {"tool": message.tool_name, "path": path, "success": not message.is_error},
            )

    async def _drive_agent(
        self,
        prompt: str,
        bridge: FileSyncBridge,
        channels: list[str],
    ) -> None:
        session = self.agent_factory(bridge.scratch_dir)
        write_paths: dict[str, str] = {}
        async for message in session.run(prompt):
            if message.type == "turn_end":
                break
            await self._handle_agent_message(message, bridge, channels, write_paths)

    async def _run_agent(
        self,
        prompt: str,
        bridge: FileSyncBridge,
        channels: list[str],
    ) -> list[str]:
        """Stage 4: run the agent turn, then reconcile the whole scratch directory."""
        try:
            await asyncio.wait_for(
                self._drive_agent(prompt, bridge, channels),
                timeout=self.agent_timeout_seconds,
            )
        except TimeoutError as e:
            raise AgentExecutionError(
                f"Coding agent timed out after {self.agent_timeout_seconds}s"
            ) from e
        except ProvisioningError:
            raise
        except Exception as e:
            raise AgentExecutionError(f"Coding agent failed: {e}") from e

        await self._status(channels, "Syncing files to sandbox...")
        report = await bridge.finalize()
        if report.failed:
            logger.warning(
                "final_sync_incomplete",
                sandbox_id=bridge.sandbox_id,
                failed=sorted(report.failed),
            )
        return bridge.synced_files

    async def _auto_commit(
        self,
        generation_id: str,
        task: Task,
        channels: list[str],
    ) -> tuple[str | None, str | None, str | None, str | None]:
        """Stage 7. Returns ``(branch_name, commit_sha, commit_url, warning)``."""
        branch_name = None
        try:
            await self._status(channels, "Committing to GitHub...")
            branch_name = await self.vcs.ensure_task_branch(task.id)
            commit = await self.vcs.commit_generated_files(generation_id)
        except Exception as e:
            warning = f"GitHub sync failed: {e}"
            logger.warning(
                "auto_commit_failed",
                generation_id=generation_id,
                task_id=task.id,
                error=str(e),
            )
            await self._status(channels, warning, StatusLevel.WARNING)
            return branch_name, None, None, warning

        await self._status(channels, f"Committed to {branch_name}", StatusLevel.SUCCESS)
        return branch_name, commit.commit_sha, commit.commit_url, None

    async def _record_failure(
        self,
        message: str,
        generation_id: str | None,
        task_id: str | None,
        sandbox_id: str | None,
        project_id: str,
        synced_files: list[str],
    ) -> None:
        if generation_id is not None:
            fields: dict[str, Any] = {
                "status": GenerationStatus.FAILED,
                "error_message": message,
                "completed_at": time.time(),
            }
            if synced_files:
                fields["files_created"] = synced_files
            await self.store.update_generation(generation_id, **fields)
        if task_id is not None:
            await self.store.update_task(task_id, build_status=BuildStatus.FAILED)
        if sandbox_id is not None:
            await self.lifecycle.close(sandbox_id, project_id)

    async def _abort(
        self,
        message: str,
        channels: list[str],
        generation_id: str | None,
        task_id: str | None,
        sandbox_id: str | None,
        project_id: str,
        synced_files: list[str],
    ) -> None:
        await self._record_failure(
            message, generation_id, task_id, sandbox_id, project_id, synced_files
        )
        await self._emit(channels, StatusEventType.ERROR, {"message": message})
        await self._close_channels(channels)

    async def _finish(
        self,
        project: Project,
        task: Task | None,
        generation_id: str,
        sandbox_id: str,
        sandbox_url: str,
        files_created: list[str],
        auto_commit: bool,
        channels: list[str],
    ) -> GenerationResult:
        """Stages 7 and 8: optional commit, task bookkeeping and the terminal event."""
        branch_name = commit_sha = commit_url = warning = None
        if auto_commit and task is not None and project.is_vcs_linked and self.vcs is not None:
            branch_name, commit_sha, commit_url, warning = await self._auto_commit(
                generation_id, task, channels
            )

        if task is not None:
            task_fields: dict[str, Any] = {"build_status": BuildStatus.READY}
            if branch_name:
                task_fields["branch_name"] = branch_name
            await self.store.update_task(task.id, **task_fields)

        return GenerationResult(
            generation_id=generation_id,
            sandbox_id=sandbox_id,
            sandbox_url=sandbox_url,
            files_created=files_created,
            commit_sha=commit_sha,
            commit_url=commit_url,
            branch_name=branch_name,
            warning=warning,
        )

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        project_id: str,
        task_id: str | None = None,
        auto_commit: bool = True,
        channel_id: str | None = None,
    ) -> GenerationResult:
        """Run one generation end to end.

        Args:
            prompt: What to build.
            project_id: Owning project.
            task_id: Optional task; enables build status tracking and auto-commit.
            auto_commit: Commit to the task branch when the project is VCS-linked.
            channel_id: Extra status channel to publish on, besides the
                generation id.

        Returns:
            The result; ``warning`` is set when auto-commit failed.

        Raises:
            NotFoundError: If the project or task is missing.
            ProvisioningError: If no sandbox could be provisioned or replaced.
            AgentExecutionError: If the coding agent failed or timed out.
            asyncio.CancelledError: If the run was cancelled; the Generation
                and Task are marked failed first.
        """
        channels = [channel_id] if channel_id else []
        generation_id: str | None = None
        sandbox_id: str | None = None
        bridge: FileSyncBridge | None = None
        task: Task | None = None
        log = logger.bind(project_id=project_id, task_id=task_id)

        def _failure_context() -> tuple[str | None, str | None, str | None, str, list[str]]:
            return (
                generation_id,
                task.id if task is not None else None,
                bridge.sandbox_id if bridge is not None else sandbox_id,
                project_id,
                bridge.synced_files if bridge is not None else [],
            )

        try:
            # 1. Validate
            project, task = await self._validate(project_id, task_id)
            if task is not None:
                await self.store.update_task(task.id, build_status=BuildStatus.GENERATING)

            # 2. Persist
            generation = await self.store.create_generation(
                project.id, prompt, task_id=task_id, agent_model=self.agent_model
            )
            generation_id = generation.id
            channels.append(generation.id)
            log = log.bind(generation_id=generation.id)
            await self._status(channels, "Creating sandbox...")

            # 3. Provision
            handle = await self.lifecycle.create(project.id, generation.id)
            sandbox_id = handle.id

            scratch_dir = tempfile.mkdtemp(prefix="gen-")
            try:
                # 4. Agent + sync
                bridge = FileSyncBridge(
                    self.lifecycle,
                    sandbox_id,
                    scratch_dir,
                    target_dir=self.workdir,
                    project_id=project.id,
                )
                await self._status(channels, "Generating code...")
                files_created = await self._run_agent(prompt, bridge, channels)
                sandbox_id = bridge.sandbox_id

                # 5. Complete
                await self.store.update_generation(
                    generation.id,
                    status=GenerationStatus.COMPLETED,
                    files_created=files_created,
                    completed_at=time.time(),
                )

                # 6. Preview
                await self._status(channels, "Starting preview server...")
                preview = await self.lifecycle.start_preview_server(
                    sandbox_id, self.workdir, project_id=project.id
                )
                if preview.sandbox_id != sandbox_id:
                    # The replacement sandbox is empty: seed it from scratch space.
                    bridge.sandbox_id = preview.sandbox_id
                    await bridge.finalize()
                    sandbox_id = preview.sandbox_id
            finally:
                shutil.rmtree(scratch_dir, ignore_errors=True)

        except asyncio.CancelledError:
            log.warning("generation_cancelled", sandbox_id=sandbox_id)
            await asyncio.shield(self._abort(CANCELLED_MESSAGE, channels, *_failure_context()))
            raise
        except Exception as e:
            log.error("generation_failed", sandbox_id=sandbox_id, error=str(e))
            await self._abort(str(e) or type(e).__name__, channels, *_failure_context())
            raise

        # 7-8. Version control and report
        try:
            result = await self._finish(
                project,
                task,
                generation.id,
                sandbox_id,
                preview.url,
                files_created,
                auto_commit,
                channels,
            )
        except asyncio.CancelledError:
            log.warning("generation_cancelled", sandbox_id=sandbox_id)
            await asyncio.shield(self._abort(CANCELLED_MESSAGE, channels, *_failure_context()))
            raise

        log.info(
            "generation_complete",
            sandbox_id=sandbox_id,
            files=len(files_created),
            committed=result.commit_sha is not None,
        )
        await self._emit(
            channels,
            StatusEventType.COMPLETE,
            {"message": "Generation complete", **result.to_dict()},
        )
        await self._close_channels(channels)
        return result

    async def stream_generate(
        self,
        prompt: str,
        project_id: str,
        task_id: str | None = None,
        auto_commit: bool = True,
    ) -> AsyncIterator[StatusEvent]:
        """Run ``generate()`` in the background and yield its status events.

        The stream always ends with exactly one ``complete`` or ``error``
        event. Closing the iterator early does not stop the generation.
        """
        channel_id = f"stream_{uuid.uuid4().hex[:12]}"
        # Subscribe before the run starts so no event is buffered for this channel.
        queue = self.event_bus.subscribe(channel_id)
        events = self.event_bus.stream(channel_id, queue)

        async def _run() -> None:
            try:
                await self.generate(prompt, project_id, task_id, auto_commit, channel_id=channel_id)
            except Exception as e:
                # Already reported on the channel as an error event.
                logger.debug("streamed_generation_failed", channel_id=channel_id, error=str(e))

        task = asyncio.create_task(_run(), name=f"generate-{channel_id}")
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            self.event_bus.unsubscribe(channel_id, queue)
            self.event_bus.discard_channel(channel_id)
