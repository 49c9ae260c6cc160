"""Pydantic schemas for domain records and API request/response models.

This module defines the durable records (Project, Task, Generation) shared by
the store, the pipeline and the HTTP API, plus the request/response bodies.
All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class TaskColumn(StrEnum):
    """Kanban columns; transitions between them trigger pipeline work."""

    RESEARCH = "research"
    BUILDING = "building"
    TESTING = "testing"
    DONE = "done"


class BuildStatus(StrEnum):
    """Build progress of a task: pending -> generating -> ready | failed."""

    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class GenerationStatus(StrEnum):
    """Lifecycle status of a single generation run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SandboxStatus(StrEnum):
    """Last known state of a project's sandbox."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class JobStatus(StrEnum):
    """Status of a supervised background job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# -----------------------------------------------------------------------------
# Durable records
# -----------------------------------------------------------------------------


class Project(BaseModel):
    """A project owning tasks and generations, optionally linked to GitHub."""

    id: str = Field(description="Project identifier", examples=["proj_1a2b3c4d5e6f"])
    name: str = Field(description="Project name")
    description: str | None = Field(default=None, description="Project description")
    github_repo_url: str | None = Field(default=None, description="Linked repository URL")
    github_repo_owner: str | None = Field(default=None, description="Repository owner")
    github_repo_name: str | None = Field(default=None, description="Repository name")
    default_branch: str = Field(default="main", description="Base branch for task branches")
    sandbox_id: str | None = Field(
        default=None,
        description="Last known sandbox id; re-resolve before use",
    )
    sandbox_status: SandboxStatus | None = Field(default=None)
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last update")

    @property
    def is_vcs_linked(self) -> bool:
        return bool(self.github_repo_owner and self.github_repo_name)


class Task(BaseModel):
    """A kanban work item whose column encodes pipeline stage."""

    id: str = Field(description="Task identifier", examples=["task_1a2b3c4d5e6f"])
    project_id: str = Field(description="Owning project")
    title: str = Field(description="Task title")
    description: str | None = Field(default=None, description="Task description")
    column: TaskColumn = Field(default=TaskColumn.RESEARCH)
    order: int = Field(default=0, description="Position within the column")
    branch_name: str | None = Field(
        default=None,
        description="Task branch, e.g. task/{id}/{slug}",
    )
    pr_url: str | None = Field(default=None)
    pr_number: int | None = Field(default=None)
    build_status: BuildStatus = Field(default=BuildStatus.PENDING)
    completed_at: float | None = Field(default=None)
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last update")


class Generation(BaseModel):
    """One run of the code-generation pipeline."""

    id: str = Field(description="Generation identifier", examples=["gen_1a2b3c4d5e6f"])
    project_id: str
    task_id: str | None = None
    prompt: str
    status: GenerationStatus = GenerationStatus.RUNNING
    sandbox_id: str | None = Field(
        default=None,
        description="Last known sandbox id; rewritten when the sandbox is replaced",
    )
    files_created: list[str] = Field(default_factory=list)
    agent_model: str | None = None
    commit_sha: str | None = None
    commit_url: str | None = None
    error_message: str | None = None
    created_at: float
    completed_at: float | None = None


class FileChange(BaseModel):
    """Transient file payload carried from a sandbox into a VCS commit."""

    path: str = Field(description="Path relative to the repository root", examples=["index.html"])
    content: str


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class CreateProjectRequest(BaseModel):
    """Request body for creating a project."""

    name: str = Field(min_length=1, max_length=200, examples=["Todo App"])
    description: str | None = Field(default=None, max_length=10000)
    github_repo_url: str | None = Field(
        default=None,
        description="Optional repository to link immediately",
        examples=["https://github.com/octocat/todo-app"],
    )


class CreateTaskRequest(BaseModel):
    """Request body for creating a task on a project."""

    title: str = Field(min_length=1, max_length=200, examples=["Add dark mode toggle"])
    description: str | None = Field(default=None, max_length=10000)
    column: TaskColumn = Field(default=TaskColumn.RESEARCH)


class MoveTaskRequest(BaseModel):
    """Request body for moving a task to another column."""

    column: str = Field(
        description="Target column (research, building, testing, done)",
        examples=["building"],
    )
    order: int | None = Field(default=None, ge=0)


class GenerateRequest(BaseModel):
    """Request body for a streamed generation run."""

    prompt: str = Field(
        min_length=1,
        max_length=10000,
        examples=["Build a todo app with local storage persistence"],
    )
    project_id: str
    task_id: str | None = None
    auto_commit: bool = Field(
        default=True,
        description="Commit generated files to the task branch when the project is linked",
    )


class LinkRepositoryRequest(BaseModel):
    """Request body for linking an existing GitHub repository."""

    repo_url: str = Field(examples=["https://github.com/octocat/todo-app", "git@github.com:octocat/todo-app.git"])


class CreateRepositoryRequest(BaseModel):
    """Request body for creating and linking a new GitHub repository."""

    name: str = Field(min_length=1, max_length=100, examples=["todo-app"])
    description: str | None = None
    private: bool = True


class CombinedPullRequestRequest(BaseModel):
    """Request body for combining several task branches into one PR."""

    task_ids: list[str] = Field(min_length=1)


class PreviewRequest(BaseModel):
    """Request body for (re)starting a preview server."""

    directory: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    project_id: str | None = None


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class MoveTaskResponse(BaseModel):
    """Result of a column transition."""

    task: Task
    job_id: str | None = Field(default=None, description="Background generation job, if started")
    merged: bool = False
    pr_url: str | None = None
    warning: str | None = None


class PullRequestResponse(BaseModel):
    pr_url: str
    pr_number: int


class MergeResponse(BaseModel):
    merged: bool
    pr_url: str | None = None
    pr_number: int | None = None


class CombinedPullRequestResponse(BaseModel):
    pr_url: str
    pr_number: int
    branch_name: str


class JobResponse(BaseModel):
    """Observable state of a supervised background job."""

    job_id: str
    name: str
    status: JobStatus
    result: dict[str, object] | None = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


class SandboxStatsResponse(BaseModel):
    total: int = Field(ge=0)
    active: int = Field(ge=0)
    expired: int = Field(ge=0)


class PreviewResponse(BaseModel):
    url: str
    sandbox_id: str


class RepositorySyncResponse(BaseModel):
    """Result of seeding a project sandbox from its linked repository."""

    sandbox_id: str = Field(description="Sandbox that received the files (may be a replacement)")
    files_uploaded: int = Field(ge=0)


class SandboxInfoResponse(BaseModel):
    """State of a project's sandbox."""

    status: SandboxStatus
    message: str | None = None
    sandbox_id: str | None = None
    sandbox_url: str | None = Field(default=None, description="Preview URL on the default port")
    expires_at: float | None = Field(default=None, description="Unix timestamp of scheduled expiry")


class SandboxFileEntry(BaseModel):
    name: str
    path: str
    is_directory: bool
    size: int = 0


class SandboxFilesResponse(BaseModel):
    files: list[SandboxFileEntry]
    path: str


class WebhookResponse(BaseModel):
    """Acknowledgement returned to GitHub for a webhook delivery."""

    message: str
    processed: bool | None = None
    action: str | None = None
    task_id: str | None = None


class WebhookHealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    webhook_secret_configured: bool


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    sandbox_provider: str = Field(
        default="e2b",
        description="Configured sandbox backend",
    )
    active_sandboxes: int = Field(
        default=0,
        description="Number of sandboxes in the in-memory registry",
    )
    running_jobs: int = Field(
        default=0,
        description="Number of background jobs currently running",
    )
