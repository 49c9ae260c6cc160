"""Models module for domain records and API schemas.

This module exposes the durable records and request/response models.
"""

from models.schemas import (
    BuildStatus,
    FileChange,
    Generation,
    GenerationStatus,
    HealthResponse,
    JobStatus,
    Project,
    SandboxStatus,
    Task,
    TaskColumn,
)

__all__ = [
    "BuildStatus",
    "FileChange",
    "Generation",
    "GenerationStatus",
    "HealthResponse",
    "JobStatus",
    "Project",
    "SandboxStatus",
    "Task",
    "TaskColumn",
]
