"""Mirror files written by the coding agent into a sandbox.

The agent writes into a local scratch directory. ``FileSyncBridge`` keeps the
sandbox in step with it through a single reconciliation function:

- per observed write, ``reconcile([path])`` mirrors that one file as soon as
  the tool result arrives, keeping the live preview current;
- at the end of the agent's turn, ``finalize()`` walks the whole scratch
  directory and mirrors every file found. This sweep is authoritative.

Content is always re-read from disk at sync time, so the last write wins.
"""

import hashlib
import os
import posixpath
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from errors import SyncError
from sandbox.lifecycle import SandboxLifecycleManager, is_ignored_entry
from sandbox.security import validate_path

logger = structlog.get_logger()


@dataclass
class SyncReport:
    """Outcome of one reconciliation pass (paths relative to the scratch root)."""

    synced: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def _digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class FileSyncBridge:
    """Incremental and authoritative file mirroring for one generation.

    Attributes:
        lifecycle: Lifecycle manager used for writes and id resolution.
        sandbox_id: Current sandbox id; refreshed before every full sweep.
        scratch_dir: Local directory the agent writes into.
        target_dir: Directory inside the sandbox that mirrors ``scratch_dir``.
        project_id: Project used when a replacement sandbox is provisioned.
    """

    def __init__(
        self,
        lifecycle: SandboxLifecycleManager,
        sandbox_id: str,
        scratch_dir: str,
        target_dir: str = "/home/user",
        project_id: str | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.sandbox_id = sandbox_id
        self.scratch_dir = scratch_dir
        self.target_dir = target_dir
        self.project_id = project_id
        self._pending: deque[str] = deque()
        self._synced: dict[str, str] = {}

    @property
    def synced_files(self) -> list[str]:
        """Relative paths currently mirrored into the sandbox."""
        return sorted(self._synced)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def _relative(self, path: str) -> str:
        normalized = path.replace("\\", "/")
        if os.path.isabs(normalized):
            try:
                normalized = Path(normalized).relative_to(Path(self.scratch_dir)).as_posix()
            except ValueError:
                return normalized
        return posixpath.normpath(normalized)

    def record_write(self, path: str) -> None:
        """Queue a write-file tool use until its tool result arrives."""
        self._pending.append(self._relative(path))

    async def complete_write(self, is_error: bool) -> SyncReport | None:
        """Resolve the oldest pending write.

        Successful writes are mirrored immediately; failed ones are dropped.

        Returns:
            The single-file report, or None when nothing was mirrored.
        """
        if not self._pending:
            logger.warning("file_sync_unmatched_result", sandbox_id=self.sandbox_id)
            return None

        path = self._pending.popleft()
        if is_error:
            logger.debug("file_sync_write_failed_upstream", path=path)
            return None
        return await self.reconcile([path])

    def _scan(self) -> list[str]:
        found: list[str] = []
        for root, dirs, files in os.walk(self.scratch_dir):
            dirs[:] = sorted(d for d in dirs if not is_ignored_entry(d))
            for name in sorted(files):
                if is_ignored_entry(name):
                    continue
                full_path = os.path.join(root, name)
                found.append(Path(full_path).relative_to(self.scratch_dir).as_posix())
        return found

    async def reconcile(self, paths: list[str] | None = None) -> SyncReport:
        """Mirror a set of scratch files into the sandbox.

        Args:
            paths: Files to mirror. ``None`` means every file in the scratch
                directory, mirrored regardless of the last-synced digest.

        Returns:
            A report of synced, unchanged, skipped and failed paths. Single
            file failures are recorded there and never raised.

        Raises:
            ProvisioningError: If the sandbox id cannot be re-resolved before
                a full sweep.
        """
        full_sweep = paths is None
        if full_sweep:
            self.sandbox_id = await self.lifecycle.resolve(self.sandbox_id, self.project_id)
            desired = self._scan()
        else:
            desired = [self._relative(p) for p in paths]

        report = SyncReport()
        for rel_path in desired:
            is_valid, error_msg, local_path = validate_path(self.scratch_dir, rel_path)
            if not is_valid:
                logger.warning("file_sync_path_rejected", path=rel_path, reason=error_msg)
                report.skipped.append(rel_path)
                continue

            # Deleted or renamed since it was written
            if not os.path.isfile(local_path):
                logger.debug("file_sync_source_missing", path=rel_path)
                report.skipped.append(rel_path)
                continue

            try:
                content = Path(local_path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                report.failed[rel_path] = str(SyncError(rel_path, str(e)))
                continue

            digest = _digest(content)
            if not full_sweep and self._synced.get(rel_path) == digest:
                report.unchanged.append(rel_path)
                continue

            try:
                await self.lifecycle.write_file(
                    self.sandbox_id,
                    posixpath.join(self.target_dir, rel_path),
                    content,
                )
            except Exception as e:
                error = SyncError(rel_path, str(e))
                self._synced.pop(rel_path, None)
                report.failed[rel_path] = str(error)
                logger.warning(
                    "file_sync_failed",
                    sandbox_id=self.sandbox_id,
                    path=rel_path,
                    error=str(error),
                )
                continue

            self._synced[rel_path] = digest
            report.synced.append(rel_path)

        logger.debug(
            "file_sync_reconciled",
            sandbox_id=self.sandbox_id,
            full_sweep=full_sweep,
            synced=len(report.synced),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def finalize(self) -> SyncReport:
        """Run the end-of-turn authoritative sweep."""
        report = await self.reconcile(None)
        logger.info(
            "file_sync_finalized",
            sandbox_id=self.sandbox_id,
            files=len(self._synced),
            failed=len(report.failed),
        )
        return report
