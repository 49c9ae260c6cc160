"""Tool definitions and scratch-workspace dispatch for the coding agent.

The agent never touches a sandbox directly: its tools operate on a local
scratch directory, and the generation pipeline mirrors successful writes into
the sandbox as the matching tool results stream out.
"""

import asyncio
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from sandbox.lifecycle import is_ignored_entry
from sandbox.security import validate_path

logger = structlog.get_logger()

WRITE_FILE_TOOL = "write_file"
READ_FILE_TOOL = "read_file"
LIST_FILES_TOOL = "list_files"
SEARCH_FILES_TOOL = "search_files"

# Bounds on what a single tool result may put back into the conversation.
MAX_READ_FILE_CHARS = 60_000
MAX_SEARCH_MATCHES = 200


def _tool(name: str, description: str, required: list[str], **properties: str) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": {
                key: {"type": "string", "description": text} for key, text in properties.items()
            },
            "required": required,
        },
    }


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _tool(
        WRITE_FILE_TOOL,
        "Create or overwrite a project file with its complete content. "
        "Missing parent directories are created.",
        ["path", "content"],
        path="Path relative to the project root, e.g. 'index.html' or 'js/app.js'",
        content="The full file content",
    ),
    _tool(
        READ_FILE_TOOL,
        "Return the content of a project file.",
        ["path"],
        path="Path relative to the project root",
    ),
    _tool(
        LIST_FILES_TOOL,
        "List one directory of the project; directory names end with '/'.",
        [],
        path="Directory relative to the project root (defaults to the root)",
    ),
    _tool(
        SEARCH_FILES_TOOL,
        "Find lines matching a regular expression in every project file, "
        "reported as 'path:line: text'.",
        ["pattern"],
        pattern="Python regular expression",
    ),
]

_DEFINITIONS_BY_NAME = {tool["name"]: tool for tool in TOOL_DEFINITIONS}


class ToolArgumentError(ValueError):
    """A tool call named an unknown tool or carried unusable arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Wrap each definition in the OpenAI function-calling envelope LiteLLM expects."""
    return [{"type": "function", "function": dict(tool)} for tool in TOOL_DEFINITIONS]


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... [truncated {len(text) - limit} characters to protect context window]"


@dataclass
class ToolResult:
    """Outcome of one tool call, fed back to the model as a ``tool`` message.

    Attributes:
        tool_call_id: ID of the tool call this result answers
        content: Text returned to the model; ``Error: ...`` on failure
        success: Whether the call did what it was asked
        error: Failure reason, if any
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None


class ScratchToolExecutor:
    """Runs the agent's file tools inside one scratch directory.

    Every path is confined to ``workspace_dir`` by ``validate_path``;
    filesystem work runs in a worker thread.
    """

    def __init__(self, workspace_dir: str) -> None:
        self.workspace_dir = workspace_dir
        self._handlers: dict[str, Callable[..., str]] = {
            WRITE_FILE_TOOL: self._write_file,
            READ_FILE_TOOL: self._read_file,
            LIST_FILES_TOOL: self._list_files,
            SEARCH_FILES_TOOL: self._search_files,
        }

    def _validate_args(self, tool_name: str, args: Any) -> dict[str, str]:
        definition = _DEFINITIONS_BY_NAME.get(tool_name)
        if definition is None:
            raise ToolArgumentError(f"Unknown tool: {tool_name}")
        if not isinstance(args, dict):
            raise ToolArgumentError(f"Invalid arguments for {tool_name}: expected an object")

        schema = definition["parameters"]
        accepted: dict[str, str] = {}
        # Extra keys the model invents are dropped rather than rejected.
        for key in schema["properties"].keys() & args.keys():
            value = args[key]
            if not isinstance(value, str):
                raise ToolArgumentError(f"Invalid type for '{key}': expected string")
            accepted[key] = value if key == "content" else value.strip()

        # File content may legitimately be empty; nothing else may.
        missing = sorted(
            key for key in schema["required"]
            if key not in accepted or (key != "content" and not accepted[key])
        )
        if missing:
            raise ToolArgumentError(f"Missing required arguments: {', '.join(missing)}")
        return accepted

    def _resolve(self, path: str) -> Path:
        is_valid, error_msg, resolved = validate_path(self.workspace_dir, path)
        if not is_valid:
            raise ToolArgumentError(error_msg)
        return Path(resolved)

    async def execute(
        self,
        tool_name: str,
        args: Any,
        tool_call_id: str | None = None,
    ) -> ToolResult:
        """Run one tool call. Failures never raise; they come back as ``Error: ...`` results."""
        started = time.monotonic()
        call_id = tool_call_id or f"tool_{int(time.time() * 1000)}"

        try:
            kwargs = self._validate_args(tool_name, args)
            content = await asyncio.to_thread(self._handlers[tool_name], **kwargs)
        except Exception as e:
            logger.warning(
                "tool_execution_failed",
                tool_name=tool_name,
                workspace=self.workspace_dir,
                error=str(e),
            )
            result = ToolResult(call_id, f"Error: {e}", success=False, error=str(e))
        else:
            result = ToolResult(call_id, content, success=True)

        logger.debug(
            "tool_executed",
            tool_name=tool_name,
            success=result.success,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    # -----------------------------------------------------------------
    # Handlers (run in a worker thread)
    # -----------------------------------------------------------------

    def _write_file(self, path: str, content: str) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"Successfully wrote {len(content)} bytes to {path}"

    def _read_file(self, path: str) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return _clip(target.read_text(encoding="utf-8", errors="replace"), MAX_READ_FILE_CHARS)

    def _list_files(self, path: str = ".") -> str:
        target = Path(self.workspace_dir) if path in ("", ".", "./") else self._resolve(path)
        if not target.is_dir():
            raise FileNotFoundError(f"Directory not found: {path}")
        names = [
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in sorted(target.iterdir(), key=lambda p: p.name)
        ]
        return "\n".join(names) or "(empty directory)"

    def _search_files(self, pattern: str) -> str:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ToolArgumentError(f"Invalid pattern: {e}") from e

        root = Path(self.workspace_dir)
        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not is_ignored_entry(d))
            for filename in sorted(filenames):
                file_path = Path(dirpath) / filename
                try:
                    text = file_path.read_text(encoding="utf-8", errors="replace")
                except OSError:
                    continue
                relative = file_path.relative_to(root).as_posix()
                for lineno, line in enumerate(text.splitlines(), start=1):
                    if not regex.search(line):
                        continue
                    matches.append(f"{relative}:{lineno}: {line.strip()}")
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        return "\n".join(matches) + "\n... [more matches omitted]"
        return "\n".join(matches) or "No matches found"
