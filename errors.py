"""Error taxonomy for the orchestration core.

Severity is a property of where an error is caught, not of the class:
- ProvisioningError aborts a generation and triggers sandbox cleanup.
- AgentExecutionError marks the generation failed; already-synced files stay.
- SyncError is logged per file and corrected by the final reconciliation sweep.
- VCSError is downgraded to a warning inside ``generate()``.
- NotFoundError fails only the operation that referenced the missing entity.
- ConflictError aborts a combined pull request and names the offending task.
"""


class BuildBoardError(Exception):
    """Base class for all domain errors raised by the backend."""


class ProvisioningError(BuildBoardError):
    """A sandbox could not be created, reconnected or replaced."""


class AgentExecutionError(BuildBoardError):
    """The coding agent failed, timed out or produced an unusable turn."""


class SyncError(BuildBoardError):
    """A single file could not be mirrored from scratch space into a sandbox."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"Failed to sync {path}: {message}")
        self.path = path


class VCSError(BuildBoardError):
    """A version-control operation (branch, commit, PR, merge) failed."""


class NotFoundError(BuildBoardError):
    """A sandbox id, project, task or generation is unknown."""


class ConflictError(VCSError):
    """Merging a task branch into an integration branch failed."""

    def __init__(self, task_title: str, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Merge conflict when combining {task_title}. "
            "Please resolve conflicts manually."
        )
        self.task_title = task_title
