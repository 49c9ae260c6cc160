"""HTTP API routes for the BuildBoard backend.

This module defines the endpoints for projects, tasks, generations, version
control, background jobs, sandboxes, GitHub webhooks and health checks.
Generation progress is streamed as server-sent events.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse

from errors import (
    BuildBoardError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    VCSError,
)
from models.schemas import (
    CombinedPullRequestRequest,
    CombinedPullRequestResponse,
    CreateProjectRequest,
    CreateRepositoryRequest,
    CreateTaskRequest,
    GenerateRequest,
    Generation,
    HealthResponse,
    JobResponse,
    LinkRepositoryRequest,
    MergeResponse,
    MoveTaskRequest,
    MoveTaskResponse,
    PreviewRequest,
    PreviewResponse,
    Project,
    PullRequestResponse,
    RepositorySyncResponse,
    SandboxFileEntry,
    SandboxFilesResponse,
    SandboxInfoResponse,
    SandboxStatsResponse,
    SandboxStatus,
    Task,
    WebhookHealthResponse,
    WebhookResponse,
)
from vcs.utils import verify_webhook_signature
from workflow import apply_pull_request_event

if TYPE_CHECKING:
    from generation_service import CodeGenerationPipeline
    from jobs import JobRecord, JobSupervisor
    from models.database import ProjectStore
    from sandbox.lifecycle import SandboxLifecycleManager
    from vcs.integrator import VersionControlIntegrator
    from workflow import TaskWorkflow

logger = structlog.get_logger(__name__)

router = APIRouter()


@dataclass
class Services:
    """Everything the routes need, built once by the application lifespan."""

    store: ProjectStore
    lifecycle: SandboxLifecycleManager
    pipeline: CodeGenerationPipeline
    integrator: VersionControlIntegrator
    supervisor: JobSupervisor
    workflow: TaskWorkflow
    sandbox_provider: str = "e2b"
    webhook_secret: str = ""


# Services dependency (set during application startup)
_services: Services | None = None


def set_services(services: Services | None) -> None:
    """Inject the service container; ``None`` detaches it on shutdown."""
    global _services
    _services = services
    if services is not None:
        logger.info("services_configured", sandbox_provider=services.sandbox_provider)


def get_services() -> Services:
    """Get the service container.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("services_not_configured")
        raise RuntimeError("Services not configured. Call set_services() during startup.")
    return _services


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_http_exception(error: Exception) -> HTTPException:
    """Translate a domain error into the matching HTTP status."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, VCSError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, ProvisioningError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, ValueError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))


def _job_response(record: JobRecord) -> JobResponse:
    return JobResponse(
        job_id=record.id,
        name=record.name,
        status=record.status,
        result=record.result,
        error=record.error,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


async def _require_project(project_id: str) -> Project:
    project = await get_services().store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


# -----------------------------------------------------------------------------
# Projects and tasks
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects",
    response_model=Project,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
async def create_project(request: CreateProjectRequest) -> Project:
    services = get_services()
    try:
        project = await services.store.create_project(request.name, request.description)
    except Exception as e:
        logger.error("project_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create project: {e}",
        ) from e

    if request.github_repo_url:
        try:
            project = await services.integrator.link_repository(project.id, request.github_repo_url)
        except BuildBoardError as e:
            # The project exists either way; it can be linked later.
            logger.warning("project_link_on_create_failed", project_id=project.id, error=str(e))

    return project


@router.get("/api/projects/{project_id}", response_model=Project, summary="Get a project")
async def get_project(project_id: str) -> Project:
    return await _require_project(project_id)


@router.get(
    "/api/projects/{project_id}/tasks",
    response_model=list[Task],
    summary="List a project's tasks",
)
async def list_tasks(project_id: str) -> list[Task]:
    await _require_project(project_id)
    return await get_services().store.list_tasks(project_id)


@router.post(
    "/api/projects/{project_id}/tasks",
    response_model=Task,
    status_code=status.HTTP_201_CREATED,
    summary="Create a task",
)
async def create_task(project_id: str, request: CreateTaskRequest) -> Task:
    await _require_project(project_id)
    return await get_services().store.create_task(
        project_id, request.title, request.description, request.column
    )


@router.get("/api/tasks/{task_id}", response_model=Task, summary="Get a task")
async def get_task(task_id: str) -> Task:
    task = await get_services().store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


@router.get(
    "/api/tasks/{task_id}/generations",
    response_model=list[Generation],
    summary="List a task's generations, newest first",
)
async def list_task_generations(task_id: str) -> list[Generation]:
    await get_task(task_id)
    return await get_services().store.list_generations(task_id)


@router.post(
    "/api/tasks/{task_id}/move",
    response_model=MoveTaskResponse,
    summary="Move a task to another column",
    description=(
        "Moving to building starts a background generation; moving from testing "
        "to done merges the task's pull request."
    ),
)
async def move_task(task_id: str, request: MoveTaskRequest) -> MoveTaskResponse:
    try:
        result = await get_services().workflow.move_task(task_id, request.column, request.order)
    except (BuildBoardError, ValueError) as e:
        raise _to_http_exception(e) from e

    return MoveTaskResponse(
        task=result.task,
        job_id=result.job_id,
        merged=result.merged,
        pr_url=result.pr_url,
        warning=result.warning,
    )


# -----------------------------------------------------------------------------
# Generations
# -----------------------------------------------------------------------------


@router.post(
    "/api/generate",
    summary="Run a generation and stream its progress",
    description="Server-sent events: one `event: <type>` / `data: <json>` frame per status event.",
)
async def generate(request: GenerateRequest) -> StreamingResponse:
    services = get_services()
    await _require_project(request.project_id)

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in services.pipeline.stream_generate(
                request.prompt,
                request.project_id,
                request.task_id,
                request.auto_commit,
            ):
                yield event.to_sse()
        except Exception as e:
            logger.error("generation_stream_failed", error=str(e))
            yield f"event: error\ndata: {json.dumps({'message': 'Stream error occurred'})}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/api/generations/{generation_id}", response_model=Generation, summary="Get a generation")
async def get_generation(generation_id: str) -> Generation:
    generation = await get_services().store.get_generation(generation_id)
    if generation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found")
    return generation


# -----------------------------------------------------------------------------
# Version control
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/github/link",
    response_model=Project,
    summary="Link an existing GitHub repository",
)
async def link_repository(project_id: str, request: LinkRepositoryRequest) -> Project:
    try:
        return await get_services().integrator.link_repository(project_id, request.repo_url)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e


@router.post(
    "/api/projects/{project_id}/github/create",
    response_model=Project,
    status_code=status.HTTP_201_CREATED,
    summary="Create a GitHub repository and link it",
)
async def create_repository(project_id: str, request: CreateRepositoryRequest) -> Project:
    try:
        return await get_services().integrator.create_repository(
            project_id, request.name, request.description, request.private
        )
    except BuildBoardError as e:
        raise _to_http_exception(e) from e


@router.post(
    "/api/tasks/{task_id}/pull-request",
    response_model=PullRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a pull request for a task branch",
)
async def create_pull_request(task_id: str) -> PullRequestResponse:
    try:
        info = await get_services().integrator.create_pull_request(task_id)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    return PullRequestResponse(pr_url=info.pr_url, pr_number=info.pr_number)


@router.post(
    "/api/tasks/{task_id}/merge",
    response_model=MergeResponse,
    summary="Squash-merge a task into the default branch",
)
async def merge_task(task_id: str) -> MergeResponse:
    try:
        result = await get_services().integrator.merge_task_to_main(task_id)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    return MergeResponse(merged=result.merged, pr_url=result.pr_url, pr_number=result.pr_number)


@router.post(
    "/api/projects/{project_id}/combined-pr",
    response_model=CombinedPullRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Combine several task branches into one pull request",
)
async def create_combined_pull_request(
    project_id: str,
    request: CombinedPullRequestRequest,
) -> CombinedPullRequestResponse:
    try:
        combined = await get_services().integrator.create_combined_pull_request(
            project_id, request.task_ids
        )
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    return CombinedPullRequestResponse(
        pr_url=combined.pr_url,
        pr_number=combined.pr_number,
        branch_name=combined.branch_name,
    )


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------


@router.get("/api/jobs/{job_id}", response_model=JobResponse, summary="Get a background job")
async def get_job(job_id: str) -> JobResponse:
    record = get_services().supervisor.get(job_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _job_response(record)


@router.post(
    "/api/jobs/{job_id}/retry",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed background job",
)
async def retry_job(job_id: str) -> JobResponse:
    try:
        record = await get_services().supervisor.retry(job_id)
    except (BuildBoardError, ValueError) as e:
        raise _to_http_exception(e) from e
    return _job_response(record)


# -----------------------------------------------------------------------------
# Sandboxes
# -----------------------------------------------------------------------------


@router.get(
    "/api/sandboxes/stats",
    response_model=SandboxStatsResponse,
    summary="Sandbox registry statistics",
)
async def sandbox_stats() -> SandboxStatsResponse:
    return SandboxStatsResponse(**get_services().lifecycle.get_stats())


@router.post(
    "/api/sandboxes/{sandbox_id}/preview",
    response_model=PreviewResponse,
    summary="Start (or restart) the preview server",
    description="A sandbox that no longer exists is replaced; the response carries the new id.",
)
async def start_preview(sandbox_id: str, request: PreviewRequest) -> PreviewResponse:
    try:
        preview = await get_services().lifecycle.start_preview_server(
            sandbox_id,
            directory=request.directory,
            port=request.port,
            project_id=request.project_id,
        )
    except Exception as e:
        logger.error("preview_start_failed", sandbox_id=sandbox_id, error=str(e))
        raise _to_http_exception(e) from e
    return PreviewResponse(url=preview.url, sandbox_id=preview.sandbox_id)


@router.post(
    "/api/projects/{project_id}/sandbox",
    response_model=SandboxInfoResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a sandbox for a project",
    description="Returns 200 with the current sandbox when one is already active.",
)
async def create_project_sandbox(project_id: str, response: Response) -> SandboxInfoResponse:
    services = get_services()
    project = await _require_project(project_id)

    if project.sandbox_id and project.sandbox_status == SandboxStatus.ACTIVE:
        handle = services.lifecycle.get(project.sandbox_id)
        if handle is not None:
            response.status_code = status.HTTP_200_OK
            return SandboxInfoResponse(
                status=SandboxStatus.ACTIVE,
                message="Sandbox already active",
                sandbox_id=handle.id,
                sandbox_url=services.lifecycle.get_sandbox_url(handle.id),
                expires_at=handle.expires_at,
            )

    try:
        handle = await services.lifecycle.create(project.id)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    return SandboxInfoResponse(
        status=SandboxStatus.ACTIVE,
        message="Sandbox created successfully",
        sandbox_id=handle.id,
        sandbox_url=services.lifecycle.get_sandbox_url(handle.id),
        expires_at=handle.expires_at,
    )


@router.delete(
    "/api/projects/{project_id}/sandbox",
    response_model=SandboxInfoResponse,
    summary="Close a project's sandbox",
)
async def close_project_sandbox(project_id: str) -> SandboxInfoResponse:
    services = get_services()
    project = await _require_project(project_id)
    if not project.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No sandbox found for this project"
        )

    await services.lifecycle.close(project.sandbox_id, project.id)
    return SandboxInfoResponse(
        status=SandboxStatus.INACTIVE,
        message="Sandbox closed successfully",
        sandbox_id=project.sandbox_id,
    )


@router.get(
    "/api/projects/{project_id}/sandbox",
    response_model=SandboxInfoResponse,
    summary="Get a project's sandbox",
)
async def get_project_sandbox(project_id: str) -> SandboxInfoResponse:
    services = get_services()
    project = await _require_project(project_id)
    if not project.sandbox_id:
        return SandboxInfoResponse(
            status=SandboxStatus.INACTIVE, message="No sandbox created for this project"
        )

    handle = services.lifecycle.get(project.sandbox_id)
    if handle is None:
        # Expired or closed since it was recorded on the project.
        if project.sandbox_status != SandboxStatus.INACTIVE:
            await services.store.update_project(project.id, sandbox_status=SandboxStatus.INACTIVE)
        return SandboxInfoResponse(
            status=SandboxStatus.INACTIVE,
            message="Sandbox has expired",
            sandbox_id=project.sandbox_id,
        )

    return SandboxInfoResponse(
        status=SandboxStatus.ACTIVE,
        sandbox_id=handle.id,
        sandbox_url=services.lifecycle.get_sandbox_url(handle.id),
        expires_at=handle.expires_at,
    )


@router.get(
    "/api/projects/{project_id}/sandbox/files",
    response_model=SandboxFilesResponse,
    summary="List files in a project's sandbox",
)
async def list_project_sandbox_files(project_id: str, path: str | None = None) -> SandboxFilesResponse:
    services = get_services()
    project = await _require_project(project_id)
    if not project.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No sandbox found for this project"
        )
    if services.lifecycle.get(project.sandbox_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Sandbox not active or expired"
        )

    directory = path or services.lifecycle.workdir
    try:
        files = await services.lifecycle.list_files(project.sandbox_id, directory)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    except Exception as e:
        logger.error("sandbox_list_files_failed", sandbox_id=project.sandbox_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list files: {e}",
        ) from e

    return SandboxFilesResponse(
        files=[
            SandboxFileEntry(name=f.name, path=f.path, is_directory=f.is_directory, size=f.size)
            for f in files
        ],
        path=directory,
    )


@router.post(
    "/api/projects/{project_id}/sandbox/sync-repository",
    response_model=RepositorySyncResponse,
    summary="Seed the project sandbox from its linked repository",
)
async def sync_repository_to_sandbox(project_id: str) -> RepositorySyncResponse:
    services = get_services()
    project = await _require_project(project_id)
    try:
        files = await services.integrator.download_repository(project.id)
        sandbox_id = await services.lifecycle.resolve(project.sandbox_id, project.id)
        uploaded = await services.lifecycle.upload_repository(sandbox_id, files)
    except BuildBoardError as e:
        raise _to_http_exception(e) from e
    return RepositorySyncResponse(sandbox_id=sandbox_id, files_uploaded=uploaded)


# -----------------------------------------------------------------------------
# GitHub webhooks
# -----------------------------------------------------------------------------


@router.post(
    "/api/webhooks/github",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Receive a GitHub webhook delivery",
    description=(
        "Verifies X-Hub-Signature-256 against the raw body, then mirrors pull "
        "request events onto the task that owns the branch."
    ),
)
async def github_webhook(
    request: Request,
    x_hub_signature_256: str | None = Header(default=None),
    x_github_event: str | None = Header(default=None),
    x_github_delivery: str | None = Header(default=None),
) -> WebhookResponse:
    services = get_services()
    if not services.webhook_secret:
        logger.error("webhook_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    payload = await request.body()
    if not verify_webhook_signature(payload, x_hub_signature_256, services.webhook_secret):
        logger.warning("webhook_signature_invalid", delivery_id=x_github_delivery)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    log = logger.bind(event=x_github_event, delivery_id=x_github_delivery)
    log.info("webhook_received")

    if x_github_event == "ping":
        return WebhookResponse(message="pong")
    if x_github_event != "pull_request":
        return WebhookResponse(message="Event received")

    try:
        body = json.loads(payload)
        action = body["action"]
        pull_request = body["pull_request"]
        branch_name = pull_request["head"]["ref"]
        pr_number = int(pull_request["number"])
        merged = bool(pull_request.get("merged"))
    except (ValueError, KeyError, TypeError) as e:
        log.warning("webhook_payload_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed pull_request payload"
        ) from e

    result = await apply_pull_request_event(services.store, action, branch_name, pr_number, merged)
    return WebhookResponse(
        message=result.message,
        processed=result.processed,
        action=result.action,
        task_id=result.task_id,
    )


@router.post(
    "/api/webhooks/github/ping",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Webhook connectivity check",
)
async def github_webhook_ping() -> WebhookResponse:
    logger.info("webhook_ping_received")
    return WebhookResponse(message="pong")


@router.get(
    "/api/webhooks/health",
    response_model=WebhookHealthResponse,
    summary="Webhook receiver health",
)
async def webhook_health() -> WebhookHealthResponse:
    return WebhookHealthResponse(webhook_secret_configured=bool(get_services().webhook_secret))


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with sandbox and job counts.",
)
async def health_check() -> HealthResponse:
    try:
        services = get_services()
    except RuntimeError:
        # Services not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    stats = services.lifecycle.get_stats()
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        sandbox_provider=services.sandbox_provider,
        active_sandboxes=stats.get("active", 0),
        running_jobs=services.supervisor.running_count,
    )
