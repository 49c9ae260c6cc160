"""SQLite-based persistence for projects, tasks and generations using aiosqlite.

This module provides the ProjectStore class. The durable records stored here
are the cross-restart source of truth for generation progress: the triggering
HTTP request returns long before a generation finishes, so every stage writes
its outcome here rather than only holding it in memory.

Tables:
    projects: Project metadata, GitHub link and last known sandbox id.
    tasks: Kanban tasks with column, branch/PR metadata and build status.
    generations: One row per pipeline run, with status, files and commit info.

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/buildboard.db")
    >>> await store.init()
    >>> project = await store.create_project(name="Todo App")
"""

import json
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    BuildStatus,
    Generation,
    GenerationStatus,
    Project,
    Task,
    TaskColumn,
)

logger = structlog.get_logger(__name__)

_PROJECT_COLUMNS = {
    "name",
    "description",
    "github_repo_url",
    "github_repo_owner",
    "github_repo_name",
    "default_branch",
    "sandbox_id",
    "sandbox_status",
}
_TASK_COLUMNS = {
    "title",
    "description",
    "column_name",
    "sort_order",
    "branch_name",
    "pr_url",
    "pr_number",
    "build_status",
    "completed_at",
}
_GENERATION_COLUMNS = {
    "status",
    "sandbox_id",
    "files_created",
    "agent_model",
    "commit_sha",
    "commit_url",
    "error_message",
    "completed_at",
}

# Task fields whose names are SQL keywords are stored under different column names.
_TASK_FIELD_ALIASES = {"column": "column_name", "order": "sort_order"}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return json.dumps(value)
    return value


class ProjectStore:
    """Async SQLite store for projects, tasks and generations.

    Inserts propagate errors to the caller since the caller needs the created
    record. Updates log errors instead of raising so that a database hiccup
    never breaks a generation that is already running. Reads return None (or
    an empty list) on failure.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS projects (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT,
                        github_repo_url TEXT,
                        github_repo_owner TEXT,
                        github_repo_name TEXT,
                        default_branch TEXT NOT NULL DEFAULT 'main',
                        sandbox_id TEXT,
                        sandbox_status TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT,
                        column_name TEXT NOT NULL DEFAULT 'research',
                        sort_order INTEGER NOT NULL DEFAULT 0,
                        branch_name TEXT,
                        pr_url TEXT,
                        pr_number INTEGER,
                        build_status TEXT NOT NULL DEFAULT 'pending',
                        completed_at REAL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        FOREIGN KEY (project_id) REFERENCES projects(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS generations (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        task_id TEXT,
                        prompt TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'running',
                        sandbox_id TEXT,
                        files_created TEXT NOT NULL DEFAULT '[]',
                        agent_model TEXT,
                        commit_sha TEXT,
                        commit_url TEXT,
                        error_message TEXT,
                        created_at REAL NOT NULL,
                        completed_at REAL,
                        FOREIGN KEY (project_id) REFERENCES projects(id),
                        FOREIGN KEY (task_id) REFERENCES tasks(id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_project
                    ON tasks(project_id, column_name, sort_order)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_generations_task
                    ON generations(task_id, created_at DESC)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_generations_sandbox
                    ON generations(sandbox_id)
                """)
                await db.commit()
            logger.info("project_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "project_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _update(
        self,
        table: str,
        record_id: str,
        allowed: set[str],
        fields: dict[str, Any],
        *,
        touch: bool = True,
    ) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = [f"{name} = ?" for name in fields]
        params = [_to_db(value) for value in fields.values()]
        if touch:
            assignments.append("updated_at = ?")
            params.append(time.time())
        params.append(record_id)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
                    params,
                )
                await db.commit()
            logger.debug(
                "record_updated",
                table=table,
                record_id=record_id,
                fields=sorted(fields),
            )
        except Exception as e:
            logger.error(
                "record_update_failed",
                table=table,
                record_id=record_id,
                error=str(e),
            )

    async def _fetch_one(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return dict(row) if row is not None else None
        except Exception as e:
            logger.error("record_fetch_failed", error=str(e))
            return None

    async def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
        except Exception as e:
            logger.error("record_list_failed", error=str(e))
            return []

    @staticmethod
    def _row_to_task(row: dict[str, Any]) -> Task:
        row["column"] = row.pop("column_name")
        row["order"] = row.pop("sort_order")
        return Task.model_validate(row)

    @staticmethod
    def _row_to_generation(row: dict[str, Any]) -> Generation:
        try:
            row["files_created"] = json.loads(row.get("files_created") or "[]")
        except json.JSONDecodeError:
            row["files_created"] = []
        return Generation.model_validate(row)

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        description: str | None = None,
    ) -> Project:
        """Insert a new project and return it."""
        now = time.time()
        project = Project(
            id=_new_id("proj"),
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO projects (id, name, description, default_branch, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project.id, name, description, project.default_branch, now, now),
            )
            await db.commit()
        logger.info("project_created", project_id=project.id)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        row = await self._fetch_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return Project.model_validate(row) if row else None

    async def update_project(self, project_id: str, **fields: Any) -> None:
        """Update project columns (see ``_PROJECT_COLUMNS``)."""
        await self._update("projects", project_id, _PROJECT_COLUMNS, fields)

    # -----------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------

    async def create_task(
        self,
        project_id: str,
        title: str,
        description: str | None = None,
        column: TaskColumn = TaskColumn.RESEARCH,
    ) -> Task:
        """Insert a new task at the end of its column and return it."""
        now = time.time()
        last = await self._fetch_one(
            "SELECT MAX(sort_order) AS max_order FROM tasks WHERE project_id = ? AND column_name = ?",
            (project_id, column.value),
        )
        order = (last["max_order"] + 1) if last and last["max_order"] is not None else 0

        task = Task(
            id=_new_id("task"),
            project_id=project_id,
            title=title,
            description=description,
            column=column,
            order=order,
            created_at=now,
            updated_at=now,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO tasks
                    (id, project_id, title, description, column_name, sort_order,
                     build_status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    project_id,
                    title,
                    description,
                    column.value,
                    order,
                    BuildStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            await db.commit()
        logger.info("task_created", task_id=task.id, project_id=project_id)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        row = await self._fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def list_tasks(self, project_id: str) -> list[Task]:
        rows = await self._fetch_all(
            "SELECT * FROM tasks WHERE project_id = ? ORDER BY column_name, sort_order",
            (project_id,),
        )
        return [self._row_to_task(row) for row in rows]

    async def find_task_by_pull_request(self, branch_name: str, pr_number: int) -> Task | None:
        row = await self._fetch_one(
            "SELECT * FROM tasks WHERE branch_name = ? AND pr_number = ? LIMIT 1",
            (branch_name, pr_number),
        )
        return self._row_to_task(row) if row else None

    async def update_task(self, task_id: str, **fields: Any) -> None:
        """Update task fields; accepts ``column`` and ``order`` by their model names."""
        mapped = {_TASK_FIELD_ALIASES.get(name, name): value for name, value in fields.items()}
        await self._update("tasks", task_id, _TASK_COLUMNS, mapped)

    # -----------------------------------------------------------------
    # Generations
    # -----------------------------------------------------------------

    async def create_generation(
        self,
        project_id: str,
        prompt: str,
        task_id: str | None = None,
        agent_model: str | None = None,
    ) -> Generation:
        """Insert a generation in ``running`` state and return it."""
        now = time.time()
        generation = Generation(
            id=_new_id("gen"),
            project_id=project_id,
            task_id=task_id,
            prompt=prompt,
            agent_model=agent_model,
            created_at=now,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO generations
                    (id, project_id, task_id, prompt, status, files_created, agent_model, created_at)
                VALUES (?, ?, ?, ?, ?, '[]', ?, ?)
                """,
                (
                    generation.id,
                    project_id,
                    task_id,
                    prompt,
                    GenerationStatus.RUNNING.value,
                    agent_model,
                    now,
                ),
            )
            await db.commit()
        logger.info("generation_created", generation_id=generation.id, task_id=task_id)
        return generation

    async def get_generation(self, generation_id: str) -> Generation | None:
        row = await self._fetch_one("SELECT * FROM generations WHERE id = ?", (generation_id,))
        return self._row_to_generation(row) if row else None

    async def list_generations(self, task_id: str) -> list[Generation]:
        """List a task's generations, newest first."""
        rows = await self._fetch_all(
            "SELECT * FROM generations WHERE task_id = ? ORDER BY created_at DESC",
            (task_id,),
        )
        return [self._row_to_generation(row) for row in rows]

    async def update_generation(self, generation_id: str, **fields: Any) -> None:
        """Update generation columns (see ``_GENERATION_COLUMNS``)."""
        await self._update(
            "generations", generation_id, _GENERATION_COLUMNS, fields, touch=False
        )

    async def replace_sandbox_id(
        self,
        old_sandbox_id: str,
        new_sandbox_id: str,
        project_id: str | None = None,
    ) -> int:
        """Rewrite every durable reference to a replaced sandbox.

        Generations naming the old id (scoped to the project when given) and
        the project's own ``sandbox_id`` are pointed at the new id.

        Returns:
            Number of generation rows rewritten.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                if project_id is not None:
                    cursor = await db.execute(
                        "UPDATE generations SET sandbox_id = ? WHERE sandbox_id = ? AND project_id = ?",
                        (new_sandbox_id, old_sandbox_id, project_id),
                    )
                else:
                    cursor = await db.execute(
                        "UPDATE generations SET sandbox_id = ? WHERE sandbox_id = ?",
                        (new_sandbox_id, old_sandbox_id),
                    )
                rewritten = cursor.rowcount
                await db.execute(
                    "UPDATE projects SET sandbox_id = ?, updated_at = ? WHERE sandbox_id = ?",
                    (new_sandbox_id, time.time(), old_sandbox_id),
                )
                await db.commit()
            logger.info(
                "sandbox_references_rewritten",
                old_sandbox_id=old_sandbox_id,
                new_sandbox_id=new_sandbox_id,
                generations=rewritten,
            )
            return rewritten
        except Exception as e:
            logger.error(
                "sandbox_reference_rewrite_failed",
                old_sandbox_id=old_sandbox_id,
                new_sandbox_id=new_sandbox_id,
                error=str(e),
            )
            return 0
