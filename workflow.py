"""Kanban column transitions and the work they trigger.

- ``* -> building``: start a generation for the task as a background job.
- ``* -> testing``: open a pull request for a branched task on a linked project.
- ``testing -> done``: squash-merge the task into the default branch.

VCS failures during a move are reported as a warning; the move itself
always succeeds once the task has been updated.
"""

import time
from dataclasses import dataclass
from typing import Any

import structlog

from errors import NotFoundError
from generation_service import CodeGenerationPipeline
from jobs import JobSupervisor
from models.database import ProjectStore
from models.schemas import BuildStatus, Task, TaskColumn
from vcs.integrator import VersionControlIntegrator

logger = structlog.get_logger()


@dataclass
class MoveResult:
    task: Task
    job_id: str | None = None
    merged: bool = False
    pr_url: str | None = None
    warning: str | None = None


def parse_column(column: str) -> TaskColumn:
    """Validate a column name.

    Raises:
        ValueError: If the column is not one of the board columns.
    """
    try:
        return TaskColumn(column)
    except ValueError:
        valid = ", ".join(c.value for c in TaskColumn)
        raise ValueError(f"Invalid column. Must be one of: {valid}") from None


def build_task_prompt(task: Task) -> str:
    if task.description:
        return f"{task.title}\n\n{task.description}"
    return task.title


class TaskWorkflow:
    """Applies column moves and starts the work each transition implies.

    Concurrent moves of the same task to ``building`` each start their own
    generation; no deduplication is attempted.
    """

    def __init__(
        self,
        store: ProjectStore,
        pipeline: CodeGenerationPipeline,
        supervisor: JobSupervisor,
        vcs_integrator: VersionControlIntegrator | None = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.supervisor = supervisor
        self.vcs = vcs_integrator

    async def move_task(
        self,
        task_id: str,
        column: str,
        order: int | None = None,
    ) -> MoveResult:
        """Move a task and trigger the transition's side effects.

        Raises:
            ValueError: If ``column`` is not a board column.
            NotFoundError: If the task or its project is missing.
        """
        target = parse_column(column)
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        project = await self.store.get_project(task.project_id)
        if project is None:
            raise NotFoundError(f"Project {task.project_id} not found")

        previous = task.column
        moving_to_building = target == TaskColumn.BUILDING and previous != TaskColumn.BUILDING
        moving_to_testing = target == TaskColumn.TESTING and previous != TaskColumn.TESTING
        moving_to_done = target == TaskColumn.DONE and previous != TaskColumn.DONE

        fields: dict[str, Any] = {"column": target}
        if order is not None:
            fields["order"] = order
        if moving_to_building:
            fields["build_status"] = BuildStatus.GENERATING
        if moving_to_done:
            fields["completed_at"] = time.time()
        await self.store.update_task(task.id, **fields)

        log = logger.bind(task_id=task.id, from_column=previous.value, to_column=target.value)
        log.info("task_moved")
        result = MoveResult(task=task)

        if moving_to_building:
            prompt = build_task_prompt(task)
            project_id = task.project_id
            result.job_id = await self.supervisor.submit(
                f"generate:{task.id}",
                lambda: self.pipeline.generate(prompt, project_id, task_id, auto_commit=True),
            )
            log.info("generation_triggered", job_id=result.job_id)

        vcs_ready = self.vcs is not None and project.is_vcs_linked and bool(task.branch_name)

        if moving_to_testing and vcs_ready and not task.pr_url:
            try:
                pr = await self.vcs.create_pull_request(task.id)
                result.pr_url = pr.pr_url
            except Exception as e:
                log.warning("auto_pull_request_failed", error=str(e))
                result.warning = (
                    "Task moved to testing but PR creation failed. Please create PR "
                    "manually or ensure the task has a branch with commits."
                )

        if moving_to_done and previous == TaskColumn.TESTING and vcs_ready:
            try:
                merge = await self.vcs.merge_task_to_main(task.id)
                result.merged = merge.merged
                result.pr_url = merge.pr_url
            except Exception as e:
                log.warning("auto_merge_failed", error=str(e))
                result.warning = f"Task moved to done but merging failed: {e}"

        result.task = await self.store.get_task(task.id) or task
        return result


@dataclass
class PullRequestEventResult:
    processed: bool
    message: str
    action: str | None = None
    task_id: str | None = None


# Pull request actions that put a task back under review.
_REVIEW_ACTIONS = {"reopened", "ready_for_review"}


async def apply_pull_request_event(
    store: ProjectStore,
    action: str,
    branch_name: str,
    pr_number: int,
    merged: bool = False,
) -> PullRequestEventResult:
    """Mirror a GitHub pull request event onto the task that owns the branch.

    A merge finishes the task, closing without a merge sends it back to
    research, and reopening or leaving draft returns it to testing.
    """
    task = await store.find_task_by_pull_request(branch_name, pr_number)
    if task is None:
        logger.info("pull_request_event_unmatched", branch_name=branch_name, pr_number=pr_number)
        return PullRequestEventResult(processed=False, message="No associated task found")

    log = logger.bind(task_id=task.id, pr_number=pr_number, action=action)

    if action == "closed" and merged:
        await store.update_task(
            task.id,
            column=TaskColumn.DONE,
            build_status=BuildStatus.READY,
            completed_at=time.time(),
        )
        log.info("pull_request_merged")
        return PullRequestEventResult(True, "Task marked as done", "merged", task.id)

    if action == "closed":
        await store.update_task(task.id, column=TaskColumn.RESEARCH, build_status=BuildStatus.PENDING)
        log.info("pull_request_closed_without_merge")
        return PullRequestEventResult(True, "Task reverted to research", "closed_without_merge", task.id)

    if action == "opened":
        return PullRequestEventResult(True, "PR opened", "opened", task.id)

    if action in _REVIEW_ACTIONS:
        await store.update_task(task.id, column=TaskColumn.TESTING)
        log.info("pull_request_back_in_review")
        return PullRequestEventResult(True, "Task moved to testing", action, task.id)

    log.debug("pull_request_action_ignored")
    return PullRequestEventResult(False, "Event received but not processed", action, task.id)
