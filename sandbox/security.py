"""Workspace path confinement and command-output bounds.

Three places resolve paths they did not choose: the coding agent's tools
(scratch directory), the file sync bridge (scratch directory) and repository
uploads (sandbox working directory). All of them go through
``validate_path``.
"""

from pathlib import Path, PurePosixPath

# Command output longer than this is cut before it is logged or returned.
MAX_OUTPUT_CHARS = 50_000


def _has_parent_component(relative_path: str) -> bool:
    # "file..bak" is a legal name; only a whole ".." component escapes.
    return ".." in PurePosixPath(relative_path.replace("\\", "/")).parts


def validate_path(workspace_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Check that ``relative_path`` stays inside ``workspace_root``.

    Returns:
        ``(is_valid, error_message, resolved_path)``. On success the error
        is empty and the resolved absolute path is returned; on failure the
        resolved path is empty.

    Examples:
        >>> validate_path("/home/user", "css/style.css")
        (True, "", "/home/user/css/style.css")
        >>> validate_path("/home/user", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""
    if "\x00" in relative_path:
        return False, "Path contains null byte", ""
    if relative_path.startswith("/"):
        return False, "Absolute paths not allowed", ""
    if _has_parent_component(relative_path):
        return False, "Path traversal blocked: contains '..'", ""

    try:
        root = Path(workspace_root).resolve()
        resolved = (root / relative_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    # A symlink inside the workspace can still point outside it.
    if not resolved.is_relative_to(root):
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", str(resolved)


def sanitize_output(output: str, max_length: int = MAX_OUTPUT_CHARS) -> str:
    """Cut command output to ``max_length`` characters, noting how much was dropped."""
    if not output:
        return ""
    if len(output) <= max_length:
        return output
    omitted = len(output) - max_length
    return f"{output[:max_length]}\n... [truncated, {omitted} chars omitted]"
