"""Thin async client for the GitHub REST API.

Only the endpoints the branch-per-task workflow needs are wrapped: repository
read/create, refs, git data (blobs, trees, commits), pull requests and
branch-to-branch merges. Every failure surfaces as ``GitHubAPIError``.
"""

import base64
from typing import Any

import httpx
import structlog

from errors import VCSError
from models.schemas import FileChange

logger = structlog.get_logger()


class GitHubAPIError(VCSError):
    """A GitHub REST call failed or returned an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubClient:
    """Async GitHub REST v3 client over httpx.

    Attributes:
        api_url: Base URL of the REST API.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.error("github_request_failed", method=method, path=path, error=str(e))
            raise GitHubAPIError(f"GitHub request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.warning(
                "github_request_error",
                method=method,
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed ({response.status_code}): {detail}",
                status_code=response.status_code,
            )
        return response

    # -----------------------------------------------------------------
    # Repositories
    # -----------------------------------------------------------------

    async def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        response = await self._request("GET", f"/repos/{owner}/{repo}")
        return response.json()

    async def create_repository(
        self,
        name: str,
        description: str | None = None,
        private: bool = False,
    ) -> dict[str, Any]:
        """Create a repository for the authenticated user.

        The repository is initialized with a README so its default branch
        exists and task branches can be cut from it right away.
        """
        response = await self._request(
            "POST",
            "/user/repos",
            json={
                "name": name,
                "description": description or "",
                "private": private,
                "auto_init": True,
            },
        )
        return response.json()

    # -----------------------------------------------------------------
    # Branches and refs
    # -----------------------------------------------------------------

    async def branch_exists(self, owner: str, repo: str, branch: str) -> bool:
        try:
            await self._request("GET", f"/repos/{owner}/{repo}/branches/{branch}")
        except GitHubAPIError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def get_branch_sha(self, owner: str, repo: str, branch: str) -> str:
        response = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return response.json()["object"]["sha"]

    async def create_branch(self, owner: str, repo: str, branch: str, from_sha: str) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": from_sha},
        )
        logger.info("github_branch_created", repo=f"{owner}/{repo}", branch=branch)

    async def update_branch(self, owner: str, repo: str, branch: str, sha: str) -> None:
        await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": sha, "force": False},
        )

    async def delete_branch(self, owner: str, repo: str, branch: str) -> None:
        await self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
        logger.info("github_branch_deleted", repo=f"{owner}/{repo}", branch=branch)

    # -----------------------------------------------------------------
    # Git data
    # -----------------------------------------------------------------

    async def get_commit_tree_sha(self, owner: str, repo: str, commit_sha: str) -> str:
        response = await self._request("GET", f"/repos/{owner}/{repo}/git/commits/{commit_sha}")
        return response.json()["tree"]["sha"]

    async def create_blob(self, owner: str, repo: str, content: str) -> str:
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            json={
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "encoding": "base64",
            },
        )
        return response.json()["sha"]

    async def create_tree(
        self,
        owner: str,
        repo: str,
        base_tree: str,
        blobs: dict[str, str],
    ) -> str:
        """Create a tree on top of ``base_tree`` from ``{path: blob_sha}``."""
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            json={
                "base_tree": base_tree,
                "tree": [
                    {"path": path, "mode": "100644", "type": "blob", "sha": sha}
                    for path, sha in blobs.items()
                ],
            },
        )
        return response.json()["sha"]

    async def create_commit(
        self,
        owner: str,
        repo: str,
        message: str,
        tree_sha: str,
        parents: list[str],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return response.json()

    async def commit_files(
        self,
        owner: str,
        repo: str,
        branch: str,
        files: list[FileChange],
        message: str,
    ) -> dict[str, Any]:
        """Create one commit with ``files`` on top of ``branch`` and advance it.

        Returns:
            The created git commit object (``sha``, ``html_url``, ...).
        """
        head_sha = await self.get_branch_sha(owner, repo, branch)
        base_tree = await self.get_commit_tree_sha(owner, repo, head_sha)

        blobs: dict[str, str] = {}
        for change in files:
            blobs[change.path] = await self.create_blob(owner, repo, change.content)

        tree_sha = await self.create_tree(owner, repo, base_tree, blobs)
        commit = await self.create_commit(owner, repo, message, tree_sha, [head_sha])
        await self.update_branch(owner, repo, branch, commit["sha"])

        logger.info(
            "github_commit_created",
            repo=f"{owner}/{repo}",
            branch=branch,
            sha=commit["sha"],
            files=len(files),
        )
        return commit

    async def download_tree(self, owner: str, repo: str, branch: str) -> list[FileChange]:
        """Fetch every file on a branch through the trees and blobs endpoints.

        Files that cannot be fetched or decoded are skipped with a warning.
        """
        head_sha = await self.get_branch_sha(owner, repo, branch)
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{head_sha}",
            params={"recursive": "true"},
        )
        entries = [e for e in response.json().get("tree", []) if e.get("type") == "blob"]

        files: list[FileChange] = []
        for entry in entries:
            try:
                blob = await self._request(
                    "GET", f"/repos/{owner}/{repo}/git/blobs/{entry['sha']}"
                )
                content = base64.b64decode(blob.json()["content"]).decode("utf-8")
            except (GitHubAPIError, ValueError, KeyError) as e:
                logger.warning("github_blob_skipped", path=entry.get("path"), error=str(e))
                continue
            files.append(FileChange(path=entry["path"], content=content))

        logger.info("github_tree_downloaded", repo=f"{owner}/{repo}", branch=branch, files=len(files))
        return files

    # -----------------------------------------------------------------
    # Pull requests and merges
    # -----------------------------------------------------------------

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return response.json()

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        number: int,
        *,
        merge_method: str = "squash",
        commit_title: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"merge_method": merge_method}
        if commit_title:
            payload["commit_title"] = commit_title
        response = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            json=payload,
        )
        return response.json()

    async def merge_branch(
        self,
        owner: str,
        repo: str,
        *,
        base: str,
        head: str,
        commit_message: str,
    ) -> dict[str, Any] | None:
        """Merge ``head`` into ``base`` server-side.

        Returns:
            The merge commit, or None when ``base`` already contains ``head``.

        Raises:
            GitHubAPIError: With ``status_code`` 409 on a merge conflict.
        """
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/merges",
            json={"base": base, "head": head, "commit_message": commit_message},
        )
        if response.status_code == 204:
            return None
        return response.json()
