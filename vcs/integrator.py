"""Branch-per-task version control workflow on top of GitHub.

Task/VCS progression: branchless -> branched -> committed* -> PR-open -> merged.
Every remote failure surfaces as a ``VCSError`` (``ConflictError`` when a
branch merge conflicts while building a combined pull request).
"""

import asyncio
import time
import weakref
from dataclasses import dataclass

import structlog

from errors import ConflictError, NotFoundError, ProvisioningError, VCSError
from models.database import ProjectStore
from models.schemas import FileChange, Project, Task
from sandbox.lifecycle import SandboxLifecycleManager
from vcs.github_client import GitHubAPIError, GitHubClient
from vcs.utils import (
    build_combined_body,
    build_combined_title,
    build_commit_message,
    build_pull_request_body,
    parse_repo_url,
    task_branch_name,
)

logger = structlog.get_logger()


@dataclass
class CommitInfo:
    commit_sha: str
    commit_url: str


@dataclass
class PullRequestInfo:
    pr_url: str
    pr_number: int


@dataclass
class MergeResult:
    merged: bool
    pr_url: str | None = None
    pr_number: int | None = None


@dataclass
class CombinedPullRequest:
    pr_url: str
    pr_number: int
    branch_name: str


class VersionControlIntegrator:
    """Implements the branch-per-task workflow for linked projects.

    Attributes:
        store: Durable project/task/generation records.
        lifecycle: Sandbox manager used to read generated files.
        github: GitHub REST client.
        workdir: Sandbox directory whose contents are committed.
    """

    def __init__(
        self,
        store: ProjectStore,
        lifecycle: SandboxLifecycleManager,
        github: GitHubClient,
        workdir: str = "/home/user",
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.github = github
        self.workdir = workdir.rstrip("/")
        # Entries vanish once no caller holds the lock.
        self._branch_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    async def _require_project(self, project_id: str) -> Project:
        project = await self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        return project

    async def _require_task(self, task_id: str) -> tuple[Task, Project]:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task, await self._require_project(task.project_id)

    @staticmethod
    def _repo(project: Project) -> tuple[str, str]:
        if not project.is_vcs_linked:
            raise VCSError("Project not linked to GitHub repository")
        return project.github_repo_owner, project.github_repo_name

    # -----------------------------------------------------------------
    # Repositories
    # -----------------------------------------------------------------

    async def link_repository(self, project_id: str, repo_url: str) -> Project:
        """Link an existing repository given an HTTPS or SSH URL."""
        project = await self._require_project(project_id)
        owner, name = parse_repo_url(repo_url)

        try:
            repo = await self.github.get_repository(owner, name)
        except GitHubAPIError as e:
            if e.status_code == 404:
                raise VCSError("Repository not found or you do not have access") from e
            raise

        await self.store.update_project(
            project.id,
            github_repo_url=repo_url,
            github_repo_owner=owner,
            github_repo_name=name,
            default_branch=repo.get("default_branch") or "main",
        )
        logger.info("repository_linked", project_id=project.id, repo=f"{owner}/{name}")
        return await self._require_project(project.id)

    async def create_repository(
        self,
        project_id: str,
        name: str,
        description: str | None = None,
        private: bool = True,
    ) -> Project:
        """Create a repository for the authenticated user and link it."""
        project = await self._require_project(project_id)
        repo = await self.github.create_repository(
            name,
            description=description or project.description,
            private=private,
        )
        await self.store.update_project(
            project.id,
            github_repo_url=repo["html_url"],
            github_repo_owner=repo["owner"]["login"],
            github_repo_name=repo["name"],
            default_branch=repo.get("default_branch") or "main",
        )
        logger.info("repository_created", project_id=project.id, repo=repo["full_name"])
        return await self._require_project(project.id)

    async def download_repository(
        self,
        project_id: str,
        branch: str | None = None,
    ) -> list[FileChange]:
        """Fetch every file of the linked repository at ``branch`` (default branch)."""
        project = await self._require_project(project_id)
        owner, name = self._repo(project)
        return await self.github.download_tree(owner, name, branch or project.default_branch)

    # -----------------------------------------------------------------
    # Branches and commits
    # -----------------------------------------------------------------

    async def ensure_task_branch(self, task_id: str) -> str:
        """Return the task's branch, creating it from the default branch once.

        Idempotent: a stored branch name is returned as is, and a branch that
        already exists remotely is adopted instead of created again.
        """
        lock = self._branch_locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._branch_locks[task_id] = lock
        async with lock:
            task, project = await self._require_task(task_id)
            if task.branch_name:
                return task.branch_name

            owner, name = self._repo(project)
            branch = task_branch_name(task.id, task.title)

            if await self.github.branch_exists(owner, name, branch):
                logger.info("task_branch_adopted", task_id=task.id, branch=branch)
            else:
                base_sha = await self.github.get_branch_sha(owner, name, project.default_branch)
                await self.github.create_branch(owner, name, branch, base_sha)

            await self.store.update_task(task.id, branch_name=branch)
            logger.info("task_branch_ready", task_id=task.id, branch=branch)
            return branch

    async def _collect_sandbox_files(self, sandbox_id: str, project_id: str) -> list[FileChange]:
        try:
            handle = await self.lifecycle.reconnect_or_create(sandbox_id, project_id)
        except ProvisioningError:
            raise
        except Exception as e:
            raise ProvisioningError(f"Failed to reconnect to sandbox {sandbox_id}: {e}") from e

        prefix = f"{self.workdir}/"
        files: list[FileChange] = []
        for path in await self.lifecycle.list_files_recursive(handle.id, self.workdir):
            try:
                content = await self.lifecycle.read_file(handle.id, path)
            except Exception as e:
                logger.warning("sandbox_file_read_failed", sandbox_id=handle.id, path=path, error=str(e))
                continue
            files.append(FileChange(path=path.removeprefix(prefix), content=content))

        logger.info("sandbox_files_collected", sandbox_id=handle.id, files=len(files))
        return files

    async def commit_generated_files(self, generation_id: str) -> CommitInfo:
        """Commit everything under the generation's sandbox workdir to the task branch.

        Raises:
            NotFoundError: If the generation, its project or task is missing.
            ProvisioningError: If the sandbox cannot be reached or replaced.
            VCSError: If the project is unlinked, no files were found, or
                GitHub rejects a call.
        """
        generation = await self.store.get_generation(generation_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        if generation.task_id is None:
            raise VCSError("Generation not linked to a task")

        task, project = await self._require_task(generation.task_id)
        owner, name = self._repo(project)
        branch = await self.ensure_task_branch(task.id)

        if not generation.sandbox_id:
            raise ProvisioningError("Generation has no sandbox")
        files = await self._collect_sandbox_files(generation.sandbox_id, project.id)
        if not files:
            raise VCSError("No files to commit")

        message = build_commit_message(
            [f.path for f in files],
            title=task.title,
            description=task.description,
            prompt=generation.prompt,
        )
        commit = await self.github.commit_files(owner, name, branch, files, message)
        sha = commit["sha"]
        url = commit.get("html_url") or f"https://github.com/{owner}/{name}/commit/{sha}"

        await self.store.update_generation(generation.id, commit_sha=sha, commit_url=url)
        return CommitInfo(commit_sha=sha, commit_url=url)

    # -----------------------------------------------------------------
    # Pull requests
    # -----------------------------------------------------------------

    async def create_pull_request(self, task_id: str) -> PullRequestInfo:
        """Open a PR from the task branch into the default branch."""
        task, project = await self._require_task(task_id)
        owner, name = self._repo(project)
        if not task.branch_name:
            raise VCSError("Task has no branch. Generate code first.")

        generations = await self.store.list_generations(task.id)
        pr = await self.github.create_pull_request(
            owner,
            name,
            title=task.title,
            head=task.branch_name,
            base=project.default_branch,
            body=build_pull_request_body(task, generations),
        )
        info = PullRequestInfo(pr_url=pr["html_url"], pr_number=pr["number"])
        await self.store.update_task(task.id, pr_url=info.pr_url, pr_number=info.pr_number)
        logger.info("pull_request_created", task_id=task.id, pr_number=info.pr_number)
        return info

    async def merge_task_to_main(self, task_id: str) -> MergeResult:
        """Squash-merge the task's PR, opening one first if none is recorded."""
        task, project = await self._require_task(task_id)
        owner, name = self._repo(project)
        if not task.branch_name:
            raise VCSError("Task has no branch. Generate code first.")

        if task.pr_url and task.pr_number:
            info = PullRequestInfo(pr_url=task.pr_url, pr_number=task.pr_number)
        else:
            info = await self.create_pull_request(task.id)

        await self.github.merge_pull_request(
            owner,
            name,
            info.pr_number,
            merge_method="squash",
            commit_title=f"{task.title} (#{info.pr_number})",
        )
        logger.info("task_merged", task_id=task.id, pr_number=info.pr_number)
        return MergeResult(merged=True, pr_url=info.pr_url, pr_number=info.pr_number)

    async def create_combined_pull_request(
        self,
        project_id: str,
        task_ids: list[str],
    ) -> CombinedPullRequest:
        """Merge several task branches into a throwaway branch and open one PR.

        The first failing merge aborts the whole operation: the integration
        branch is deleted and no pull request is opened.

        Raises:
            ConflictError: Naming the task whose branch failed to merge.
        """
        if not task_ids:
            raise VCSError("At least one task is required")

        project = await self._require_project(project_id)
        owner, name = self._repo(project)

        tasks: list[Task] = []
        for task_id in task_ids:
            task = await self.store.get_task(task_id)
            if task is None or task.project_id != project.id:
                raise NotFoundError("Some tasks were not found")
            tasks.append(task)

        without_branches = [t.title for t in tasks if not t.branch_name]
        if without_branches:
            raise VCSError(f"Tasks without branches: {', '.join(without_branches)}")

        branch = f"combined/{int(time.time() * 1000)}-{len(tasks)}-tasks"
        base_sha = await self.github.get_branch_sha(owner, name, project.default_branch)
        await self.github.create_branch(owner, name, branch, base_sha)

        for task in tasks:
            try:
                await self.github.merge_branch(
                    owner,
                    name,
                    base=branch,
                    head=task.branch_name,
                    commit_message=f"Merge {task.branch_name} into {branch}",
                )
            except VCSError as e:
                logger.warning(
                    "combined_merge_failed",
                    project_id=project.id,
                    task_id=task.id,
                    branch=task.branch_name,
                    error=str(e),
                )
                await self._delete_branch_quietly(owner, name, branch)
                raise ConflictError(task.title) from e

        files_by_task: dict[str, list[str]] = {}
        for task in tasks:
            generations = await self.store.list_generations(task.id)
            files_by_task[task.id] = [f for g in generations for f in g.files_created]

        pr = await self.github.create_pull_request(
            owner,
            name,
            title=build_combined_title(tasks),
            head=branch,
            base=project.default_branch,
            body=build_combined_body(tasks, files_by_task),
        )
        logger.info(
            "combined_pull_request_created",
            project_id=project.id,
            branch=branch,
            tasks=len(tasks),
            pr_number=pr["number"],
        )
        return CombinedPullRequest(pr_url=pr["html_url"], pr_number=pr["number"], branch_name=branch)

    async def _delete_branch_quietly(self, owner: str, name: str, branch: str) -> None:
        try:
            await self.github.delete_branch(owner, name, branch)
        except Exception as e:
            logger.warning("combined_branch_cleanup_failed", branch=branch, error=str(e))
