"""Naming, parsing and message helpers for the branch-per-task workflow."""

import hashlib
import hmac
import posixpath
import re
from collections.abc import Iterable

from errors import VCSError
from models.schemas import Generation, Task

MAX_SLUG_LENGTH = 50
MAX_SUBJECT_LENGTH = 72
MAX_PR_TITLE_LENGTH = 256

_HTTPS_REPO_PATTERN = re.compile(r"github\.com/([^/]+)/([^/.]+)")
_SSH_REPO_PATTERN = re.compile(r"git@github\.com:([^/]+)/(.+)\.git")

_DOC_EXTENSIONS = {".md", ".txt", ".rst"}
_STYLE_EXTENSIONS = {".css", ".scss", ".sass", ".less"}
_TEST_MARKERS = ("test", "spec")
_CONFIG_FILES = {
    "package.json",
    "package-lock.json",
    "tsconfig.json",
    "vite.config.js",
    "vite.config.ts",
    ".gitignore",
}


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to ``-`` and cap at 50 characters.

    >>> slugify("Add Dark-Mode toggle!")
    'add-dark-mode-toggle'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH]


def task_branch_name(task_id: str, title: str) -> str:
    return f"task/{task_id}/{slugify(title)}"


def parse_repo_url(url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from an HTTPS or SSH GitHub URL.

    Raises:
        VCSError: If the URL is not a GitHub repository URL.
    """
    match = _SSH_REPO_PATTERN.search(url) or _HTTPS_REPO_PATTERN.search(url)
    if match is None:
        raise VCSError(f"Invalid GitHub repository URL: {url}")
    return match.group(1), match.group(2)


def _infer_commit_type(paths: list[str]) -> str:
    names = [posixpath.basename(p).lower() for p in paths]
    extensions = {posixpath.splitext(n)[1] for n in names}
    if names and all(any(m in n for m in _TEST_MARKERS) for n in names):
        return "test"
    if extensions and extensions <= _DOC_EXTENSIONS:
        return "docs"
    if extensions and extensions <= _STYLE_EXTENSIONS:
        return "style"
    if names and all(n in _CONFIG_FILES for n in names):
        return "chore"
    return "feat"


def _infer_scope(paths: list[str]) -> str | None:
    top_levels = {p.split("/", 1)[0] for p in paths if "/" in p}
    if len(top_levels) == 1 and all("/" in p for p in paths):
        return top_levels.pop()
    return None


def build_commit_message(
    files: list[str],
    *,
    title: str | None = None,
    description: str | None = None,
    prompt: str | None = None,
) -> str:
    """Build a conventional-commit message for generated files.

    The type is inferred from the file kinds, the scope from a shared
    top-level directory, and the subject from the task title (or prompt).
    """
    commit_type = _infer_commit_type(files)
    scope = _infer_scope(files)
    subject = (title or "").strip()
    if not subject and prompt and prompt.strip():
        subject = prompt.strip().splitlines()[0].strip()
    subject = subject or "generated changes"
    subject = subject[0].lower() + subject[1:]

    header_prefix = f"{commit_type}({scope}): " if scope else f"{commit_type}: "
    max_subject = MAX_SUBJECT_LENGTH - len(header_prefix)
    if len(subject) > max_subject:
        subject = subject[: max_subject - 3].rstrip() + "..."

    lines = [f"{header_prefix}{subject}", ""]
    if description:
        lines.extend([description.strip(), ""])
    lines.append(f"Files ({len(files)}):")
    lines.extend(f"- {path}" for path in files)
    return "\n".join(lines)


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def build_pull_request_body(task: Task, generations: list[Generation]) -> str:
    generation_summary = "\n".join(
        f"- {g.prompt} ({len(g.files_created)} files created)" for g in generations
    )
    all_files = _unique(f for g in generations for f in g.files_created)
    files_section = "\n".join(f"- {f}" for f in all_files) or "- No files tracked"

    return (
        "## Summary\n\n"
        f"{task.description or 'No description provided'}\n\n"
        "## Changes\n\n"
        f"This pull request includes AI-generated code from {len(generations)} generation(s):\n\n"
        f"{generation_summary}\n\n"
        "## Files Changed\n\n"
        f"{files_section}\n\n"
        "## Task Details\n\n"
        f"- **Task ID:** `{task.id}`\n"
        f"- **Column:** {task.column}\n"
        f"- **Branch:** `{task.branch_name}`\n"
    )


def build_combined_title(tasks: list[Task]) -> str:
    return f"Combined: {' + '.join(t.title for t in tasks)}"[:MAX_PR_TITLE_LENGTH]


def build_combined_body(tasks: list[Task], files_by_task: dict[str, list[str]]) -> str:
    task_summaries = "\n\n".join(
        f"### {t.title}\n{t.description or 'No description'}\n- Branch: `{t.branch_name}`"
        for t in tasks
    )
    all_files = _unique(f for t in tasks for f in files_by_task.get(t.id, []))
    files_section = "\n".join(f"- {f}" for f in all_files) or "- No files tracked"
    task_ids = "\n".join(f"- `{t.id}`" for t in tasks)

    return (
        "## Combined Pull Request\n\n"
        f"This PR combines work from {len(tasks)} tasks:\n\n"
        f"{task_summaries}\n\n"
        "## All Files Changed\n\n"
        f"{files_section}\n\n"
        "## Task IDs\n\n"
        f"{task_ids}\n"
    )


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    """GitHub's ``X-Hub-Signature-256`` value for a raw request body."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook signature in constant time; a missing signature never verifies."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature.encode(), sign_webhook_payload(payload, secret).encode())
