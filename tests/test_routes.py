"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with mocked services.
No real sandboxes, GitHub or LLM calls are made.
"""

import json
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import Services, router, set_services
from errors import ConflictError, NotFoundError, ProvisioningError, VCSError
from events.types import StatusEvent, StatusEventType
from jobs import JobRecord
from models.schemas import JobStatus, Project, SandboxStatus, Task, TaskColumn
from sandbox.provider import FileInfo, PreviewServer, SandboxHandle
from vcs.integrator import CombinedPullRequest, PullRequestInfo
from vcs.utils import sign_webhook_payload
from workflow import MoveResult

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _project(**overrides) -> Project:
    fields = {
        "id": "proj_aabb11223344",
        "name": "Todo App",
        "sandbox_id": "sbx_1",
        "created_at": 1700000000.0,
        "updated_at": 1700000000.0,
    }
    fields.update(overrides)
    return Project(**fields)


def _task(**overrides) -> Task:
    fields = {
        "id": "task_aabb11223344",
        "project_id": "proj_aabb11223344",
        "title": "Todo list",
        "created_at": 1700000000.0,
        "updated_at": 1700000000.0,
    }
    fields.update(overrides)
    return Task(**fields)


def _handle(sandbox_id: str) -> SandboxHandle:
    return SandboxHandle(
        id=sandbox_id, connection=MagicMock(), created_at=1700000000.0, expires_at=1700003600.0
    )


WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def services() -> Services:
    store = MagicMock()
    store.create_project = AsyncMock(return_value=_project())
    store.get_project = AsyncMock(return_value=_project())
    store.list_tasks = AsyncMock(return_value=[_task()])
    store.create_task = AsyncMock(return_value=_task())
    store.get_task = AsyncMock(return_value=_task())
    store.list_generations = AsyncMock(return_value=[])
    store.get_generation = AsyncMock(return_value=None)
    store.update_project = AsyncMock()
    store.update_task = AsyncMock()
    store.find_task_by_pull_request = AsyncMock(return_value=None)

    lifecycle = MagicMock()
    lifecycle.get_stats = MagicMock(return_value={"total": 2, "active": 1, "expired": 1})
    lifecycle.start_preview_server = AsyncMock(
        return_value=PreviewServer(url="https://8000-sbx_2.sandbox.test", sandbox_id="sbx_2")
    )
    lifecycle.resolve = AsyncMock(return_value="sbx_2")
    lifecycle.upload_repository = AsyncMock(return_value=3)
    lifecycle.workdir = "/home/user"
    lifecycle.get = MagicMock(return_value=_handle("sbx_1"))
    lifecycle.create = AsyncMock(return_value=_handle("sbx_3"))
    lifecycle.close = AsyncMock()
    lifecycle.list_files = AsyncMock(
        return_value=[
            FileInfo(name="index.html", path="/home/user/index.html", is_directory=False, size=42),
            FileInfo(name="js", path="/home/user/js", is_directory=True),
        ]
    )
    lifecycle.get_sandbox_url = MagicMock(
        side_effect=lambda sandbox_id: f"https://8000-{sandbox_id}.sandbox.test"
    )

    integrator = MagicMock()
    integrator.link_repository = AsyncMock(
        return_value=_project(github_repo_owner="octocat", github_repo_name="todo")
    )
    integrator.create_pull_request = AsyncMock(
        return_value=PullRequestInfo(pr_url="https://github.com/octocat/todo/pull/7", pr_number=7)
    )
    integrator.create_combined_pull_request = AsyncMock(
        return_value=CombinedPullRequest(
            pr_url="https://github.com/octocat/todo/pull/9",
            pr_number=9,
            branch_name="combined/2-tasks-1700000000",
        )
    )
    integrator.download_repository = AsyncMock(return_value=[])

    supervisor = MagicMock()
    supervisor.get = MagicMock(return_value=None)
    supervisor.retry = AsyncMock()
    supervisor.running_count = 0

    workflow = MagicMock()
    workflow.move_task = AsyncMock(
        return_value=MoveResult(task=_task(column=TaskColumn.BUILDING), job_id="job_1")
    )

    return Services(
        store=store,
        lifecycle=lifecycle,
        pipeline=MagicMock(),
        integrator=integrator,
        supervisor=supervisor,
        workflow=workflow,
        sandbox_provider="docker",
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture()
def client(services: Services) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with mocked services."""
    app = FastAPI()
    app.include_router(router)
    set_services(services)
    with TestClient(app) as c:
        yield c
    set_services(None)


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["sandbox_provider"] == "docker"
        assert data["active_sandboxes"] == 1
        assert data["running_jobs"] == 0

    def test_health_without_services(self) -> None:
        app = FastAPI()
        app.include_router(router)
        set_services(None)
        with TestClient(app) as c:
            resp = c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "unhealthy"


# =========================================================================
# Projects and tasks
# =========================================================================


class TestProjects:
    def test_create_project(self, client: TestClient, services: Services) -> None:
        resp = client.post("/api/projects", json={"name": "Todo App"})
        assert resp.status_code == 201
        assert resp.json()["id"] == "proj_aabb11223344"
        services.integrator.link_repository.assert_not_awaited()

    def test_create_project_links_repository(self, client: TestClient, services: Services) -> None:
        resp = client.post(
            "/api/projects",
            json={"name": "Todo App", "github_repo_url": "https://github.com/octocat/todo"},
        )
        assert resp.status_code == 201
        assert resp.json()["github_repo_owner"] == "octocat"

    def test_create_project_survives_link_failure(self, client: TestClient, services: Services) -> None:
        services.integrator.link_repository.side_effect = VCSError("bad url")
        resp = client.post(
            "/api/projects",
            json={"name": "Todo App", "github_repo_url": "not-a-repo"},
        )
        assert resp.status_code == 201
        assert resp.json()["github_repo_owner"] is None

    def test_create_project_empty_name(self, client: TestClient) -> None:
        resp = client.post("/api/projects", json={"name": ""})
        assert resp.status_code == 422

    def test_get_missing_project(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = None
        resp = client.get("/api/projects/proj_missing")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Project not found"

    def test_list_tasks(self, client: TestClient) -> None:
        resp = client.get("/api/projects/proj_aabb11223344/tasks")
        assert resp.status_code == 200
        assert [t["title"] for t in resp.json()] == ["Todo list"]

    def test_create_task(self, client: TestClient, services: Services) -> None:
        resp = client.post(
            "/api/projects/proj_aabb11223344/tasks",
            json={"title": "Todo list", "column": "building"},
        )
        assert resp.status_code == 201
        services.store.create_task.assert_awaited_once_with(
            "proj_aabb11223344", "Todo list", None, TaskColumn.BUILDING
        )

    def test_get_missing_task(self, client: TestClient, services: Services) -> None:
        services.store.get_task.return_value = None
        assert client.get("/api/tasks/task_missing").status_code == 404
        assert client.get("/api/tasks/task_missing/generations").status_code == 404


class TestMoveTask:
    def test_move_starts_job(self, client: TestClient) -> None:
        resp = client.post("/api/tasks/task_aabb11223344/move", json={"column": "building"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["job_id"] == "job_1"
        assert data["task"]["column"] == "building"

    def test_invalid_column(self, client: TestClient, services: Services) -> None:
        services.workflow.move_task.side_effect = ValueError("Invalid column. Must be one of: ...")
        resp = client.post("/api/tasks/task_aabb11223344/move", json={"column": "archive"})
        assert resp.status_code == 400

    def test_missing_task(self, client: TestClient, services: Services) -> None:
        services.workflow.move_task.side_effect = NotFoundError("Task task_missing not found")
        resp = client.post("/api/tasks/task_missing/move", json={"column": "done"})
        assert resp.status_code == 404


# =========================================================================
# Generations
# =========================================================================


class TestGenerate:
    def test_streams_sse_frames(self, client: TestClient, services: Services) -> None:
        async def _stream(*args, **kwargs):
            yield StatusEvent(
                type=StatusEventType.STATUS,
                channel_id="c",
                data={"message": "Creating sandbox...", "type": "info"},
            )
            yield StatusEvent(
                type=StatusEventType.COMPLETE,
                channel_id="c",
                data={"message": "Generation complete", "generation_id": "gen_1"},
            )

        services.pipeline.stream_generate = _stream

        resp = client.post(
            "/api/generate",
            json={"prompt": "build a todo app", "project_id": "proj_aabb11223344"},
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert "event: status\n" in resp.text
        assert "event: complete\n" in resp.text
        assert '"generation_id": "gen_1"' in resp.text

    def test_stream_failure_becomes_error_frame(self, client: TestClient, services: Services) -> None:
        async def _broken(*args, **kwargs):
            raise RuntimeError("boom")
            yield  # pragma: no cover

        services.pipeline.stream_generate = _broken

        resp = client.post(
            "/api/generate",
            json={"prompt": "build a todo app", "project_id": "proj_aabb11223344"},
        )

        assert resp.text == 'event: error\ndata: {"message": "Stream error occurred"}\n\n'

    def test_generate_unknown_project(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = None
        resp = client.post("/api/generate", json={"prompt": "x", "project_id": "proj_missing"})
        assert resp.status_code == 404

    def test_generate_empty_prompt(self, client: TestClient) -> None:
        resp = client.post("/api/generate", json={"prompt": "", "project_id": "proj_aabb11223344"})
        assert resp.status_code == 422

    def test_missing_generation(self, client: TestClient) -> None:
        assert client.get("/api/generations/gen_missing").status_code == 404


# =========================================================================
# Version control
# =========================================================================


class TestVersionControl:
    def test_create_pull_request(self, client: TestClient) -> None:
        resp = client.post("/api/tasks/task_aabb11223344/pull-request")
        assert resp.status_code == 201
        assert resp.json() == {"pr_url": "https://github.com/octocat/todo/pull/7", "pr_number": 7}

    def test_github_failure_is_bad_gateway(self, client: TestClient, services: Services) -> None:
        services.integrator.create_pull_request.side_effect = VCSError("GitHub API error 422")
        resp = client.post("/api/tasks/task_aabb11223344/pull-request")
        assert resp.status_code == 502
        assert resp.json()["detail"] == "GitHub API error 422"

    def test_combined_pull_request(self, client: TestClient) -> None:
        resp = client.post(
            "/api/projects/proj_aabb11223344/combined-pr",
            json={"task_ids": ["task_1", "task_2"]},
        )
        assert resp.status_code == 201
        assert resp.json()["pr_number"] == 9

    def test_combined_conflict(self, client: TestClient, services: Services) -> None:
        services.integrator.create_combined_pull_request.side_effect = ConflictError(
            "Merge conflict when combining Signup."
        )
        resp = client.post(
            "/api/projects/proj_aabb11223344/combined-pr",
            json={"task_ids": ["task_1", "task_2"]},
        )
        assert resp.status_code == 409
        assert "Signup" in resp.json()["detail"]

    def test_combined_requires_tasks(self, client: TestClient) -> None:
        resp = client.post("/api/projects/proj_aabb11223344/combined-pr", json={"task_ids": []})
        assert resp.status_code == 422


# =========================================================================
# Jobs
# =========================================================================


class TestJobs:
    def test_get_missing_job(self, client: TestClient) -> None:
        assert client.get("/api/jobs/job_missing").status_code == 404

    def test_get_job(self, client: TestClient, services: Services) -> None:
        services.supervisor.get.return_value = JobRecord(
            id="job_1", name="generate:task_1", status=JobStatus.FAILED, error="quota exceeded"
        )
        resp = client.get("/api/jobs/job_1")
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        assert resp.json()["error"] == "quota exceeded"

    def test_retry_job(self, client: TestClient, services: Services) -> None:
        services.supervisor.retry.return_value = JobRecord(
            id="job_1", name="generate:task_1", status=JobStatus.PENDING
        )
        resp = client.post("/api/jobs/job_1/retry")
        assert resp.status_code == 202
        assert resp.json()["status"] == "pending"

    def test_retry_running_job(self, client: TestClient, services: Services) -> None:
        services.supervisor.retry.side_effect = ValueError("only failed jobs can be retried")
        assert client.post("/api/jobs/job_1/retry").status_code == 400


# =========================================================================
# Sandboxes
# =========================================================================


class TestSandboxes:
    def test_stats(self, client: TestClient) -> None:
        resp = client.get("/api/sandboxes/stats")
        assert resp.json() == {"total": 2, "active": 1, "expired": 1}

    def test_preview_returns_replacement_id(self, client: TestClient, services: Services) -> None:
        resp = client.post(
            "/api/sandboxes/sbx_1/preview",
            json={"project_id": "proj_aabb11223344"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"url": "https://8000-sbx_2.sandbox.test", "sandbox_id": "sbx_2"}
        services.lifecycle.start_preview_server.assert_awaited_once_with(
            "sbx_1", directory=None, port=None, project_id="proj_aabb11223344"
        )

    def test_preview_provisioning_failure(self, client: TestClient, services: Services) -> None:
        services.lifecycle.start_preview_server.side_effect = ProvisioningError("quota exceeded")
        resp = client.post("/api/sandboxes/sbx_1/preview", json={})
        assert resp.status_code == 503

    def test_sync_repository(self, client: TestClient, services: Services) -> None:
        resp = client.post("/api/projects/proj_aabb11223344/sandbox/sync-repository")
        assert resp.status_code == 200
        assert resp.json() == {"sandbox_id": "sbx_2", "files_uploaded": 3}
        services.lifecycle.resolve.assert_awaited_once_with("sbx_1", "proj_aabb11223344")


class TestProjectSandbox:
    def test_create(self, client: TestClient, services: Services) -> None:
        resp = client.post("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 201
        data = resp.json()
        assert data["sandbox_id"] == "sbx_3"
        assert data["status"] == "active"
        assert data["sandbox_url"] == "https://8000-sbx_3.sandbox.test"
        assert data["expires_at"] == 1700003600.0
        services.lifecycle.create.assert_awaited_once_with("proj_aabb11223344")

    def test_create_when_already_active(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = _project(sandbox_status=SandboxStatus.ACTIVE)
        resp = client.post("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Sandbox already active"
        assert resp.json()["sandbox_id"] == "sbx_1"
        services.lifecycle.create.assert_not_awaited()

    def test_create_replaces_stale_active_record(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = _project(sandbox_status=SandboxStatus.ACTIVE)
        services.lifecycle.get.return_value = None
        resp = client.post("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 201
        assert resp.json()["sandbox_id"] == "sbx_3"

    def test_create_provisioning_failure(self, client: TestClient, services: Services) -> None:
        services.lifecycle.create.side_effect = ProvisioningError("quota exceeded")
        resp = client.post("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 503

    def test_close(self, client: TestClient, services: Services) -> None:
        resp = client.delete("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 200
        assert resp.json()["status"] == "inactive"
        services.lifecycle.close.assert_awaited_once_with("sbx_1", "proj_aabb11223344")

    def test_close_without_sandbox(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = _project(sandbox_id=None)
        resp = client.delete("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 404
        services.lifecycle.close.assert_not_awaited()

    def test_get_active(self, client: TestClient) -> None:
        resp = client.get("/api/projects/proj_aabb11223344/sandbox")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "active"
        assert data["sandbox_url"] == "https://8000-sbx_1.sandbox.test"
        assert data["expires_at"] == 1700003600.0

    def test_get_without_sandbox(self, client: TestClient, services: Services) -> None:
        services.store.get_project.return_value = _project(sandbox_id=None)
        resp = client.get("/api/projects/proj_aabb11223344/sandbox")
        assert resp.json()["status"] == "inactive"
        assert resp.json()["sandbox_id"] is None

    def test_get_unregistered_marks_project_inactive(
        self, client: TestClient, services: Services
    ) -> None:
        services.store.get_project.return_value = _project(sandbox_status=SandboxStatus.ACTIVE)
        services.lifecycle.get.return_value = None
        resp = client.get("/api/projects/proj_aabb11223344/sandbox")
        assert resp.json() == {
            "status": "inactive",
            "message": "Sandbox has expired",
            "sandbox_id": "sbx_1",
            "sandbox_url": None,
            "expires_at": None,
        }
        services.store.update_project.assert_awaited_once_with(
            "proj_aabb11223344", sandbox_status=SandboxStatus.INACTIVE
        )

    def test_list_files(self, client: TestClient, services: Services) -> None:
        resp = client.get("/api/projects/proj_aabb11223344/sandbox/files", params={"path": "/home/user"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["path"] == "/home/user"
        assert [f["name"] for f in data["files"]] == ["index.html", "js"]
        assert data["files"][0]["size"] == 42
        assert data["files"][1]["is_directory"] is True
        services.lifecycle.list_files.assert_awaited_once_with("sbx_1", "/home/user")

    def test_list_files_defaults_to_workdir(self, client: TestClient, services: Services) -> None:
        resp = client.get("/api/projects/proj_aabb11223344/sandbox/files")
        assert resp.json()["path"] == "/home/user"

    def test_list_files_unregistered(self, client: TestClient, services: Services) -> None:
        services.lifecycle.get.return_value = None
        resp = client.get("/api/projects/proj_aabb11223344/sandbox/files")
        assert resp.status_code == 404
        services.lifecycle.list_files.assert_not_awaited()


# =========================================================================
# GitHub webhooks
# =========================================================================


def _pull_request_body(action: str, merged: bool = False, number: int = 7) -> bytes:
    return json.dumps({
        "action": action,
        "pull_request": {
            "number": number,
            "merged": merged,
            "head": {"ref": "task/aabb1122/todo-list"},
        },
        "repository": {"full_name": "octocat/todo"},
    }).encode()


def _deliver(client: TestClient, body: bytes, event: str = "pull_request", secret: str = WEBHOOK_SECRET):
    return client.post(
        "/api/webhooks/github",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": "delivery-1",
            "X-Hub-Signature-256": sign_webhook_payload(body, secret),
        },
    )


class TestGitHubWebhook:
    def test_merged_pull_request_finishes_task(self, client: TestClient, services: Services) -> None:
        services.store.find_task_by_pull_request.return_value = _task(column=TaskColumn.TESTING)

        resp = _deliver(client, _pull_request_body("closed", merged=True))

        assert resp.status_code == 200
        assert resp.json() == {
            "message": "Task marked as done",
            "processed": True,
            "action": "merged",
            "task_id": "task_aabb11223344",
        }
        services.store.find_task_by_pull_request.assert_awaited_once_with("task/aabb1122/todo-list", 7)
        fields = services.store.update_task.await_args.kwargs
        assert fields["column"] == TaskColumn.DONE
        assert fields["completed_at"] > 0

    def test_unknown_pull_request(self, client: TestClient, services: Services) -> None:
        resp = _deliver(client, _pull_request_body("closed", merged=True))
        assert resp.status_code == 200
        assert resp.json() == {"message": "No associated task found", "processed": False}
        services.store.update_task.assert_not_awaited()

    def test_bad_signature(self, client: TestClient, services: Services) -> None:
        resp = _deliver(client, _pull_request_body("closed", merged=True), secret="wrong")
        assert resp.status_code == 401
        services.store.find_task_by_pull_request.assert_not_awaited()

    def test_missing_signature(self, client: TestClient) -> None:
        resp = client.post(
            "/api/webhooks/github",
            content=_pull_request_body("closed"),
            headers={"X-GitHub-Event": "pull_request"},
        )
        assert resp.status_code == 401

    def test_secret_not_configured(self, client: TestClient, services: Services) -> None:
        services.webhook_secret = ""
        resp = _deliver(client, _pull_request_body("closed"))
        assert resp.status_code == 500

    def test_ping_event(self, client: TestClient) -> None:
        resp = _deliver(client, b'{"zen": "Keep it logically awesome."}', event="ping")
        assert resp.json() == {"message": "pong"}

    def test_other_events_are_acknowledged(self, client: TestClient, services: Services) -> None:
        resp = _deliver(client, b'{"ref": "refs/heads/main"}', event="push")
        assert resp.json() == {"message": "Event received"}
        services.store.find_task_by_pull_request.assert_not_awaited()

    def test_malformed_payload(self, client: TestClient) -> None:
        resp = _deliver(client, b'{"action": "closed"}')
        assert resp.status_code == 400

    def test_ping_endpoint(self, client: TestClient) -> None:
        resp = client.post("/api/webhooks/github/ping")
        assert resp.json() == {"message": "pong"}

    def test_webhook_health(self, client: TestClient, services: Services) -> None:
        assert client.get("/api/webhooks/health").json() == {
            "status": "ok",
            "webhook_secret_configured": True,
        }
        services.webhook_secret = ""
        assert client.get("/api/webhooks/health").json()["webhook_secret_configured"] is False
