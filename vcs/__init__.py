"""Version control integration: GitHub client and branch-per-task workflow."""

from vcs.github_client import GitHubAPIError, GitHubClient
from vcs.integrator import (
    CombinedPullRequest,
    CommitInfo,
    MergeResult,
    PullRequestInfo,
    VersionControlIntegrator,
)

__all__ = [
    "CombinedPullRequest",
    "CommitInfo",
    "GitHubAPIError",
    "GitHubClient",
    "MergeResult",
    "PullRequestInfo",
    "VersionControlIntegrator",
]
