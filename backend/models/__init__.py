"""Models module for backend payload schemas and the durable session cache.

This module exposes the Pydantic models exchanged with the task-splitting
backend and the SQLite-backed store that keeps the engine resumable.
"""

from models.database import SessionCacheStore
from models.schemas import (
    AgentActivity,
    CodegenStatus,
    FileChange,
    JobSnapshot,
    JobStatus,
    Layer,
    LayersPage,
    PlanSlice,
    PRStatus,
    SubmitJobRequest,
    SubmitJobResponse,
    Task,
    TaskStatus,
    TaskTestResult,
    TaskTests,
    is_terminal,
)

__all__ = [
    "AgentActivity",
    "CodegenStatus",
    "FileChange",
    "JobSnapshot",
    "JobStatus",
    "Layer",
    "LayersPage",
    "PlanSlice",
    "PRStatus",
    "SessionCacheStore",
    "SubmitJobRequest",
    "SubmitJobResponse",
    "Task",
    "TaskStatus",
    "TaskTestResult",
    "TaskTests",
    "is_terminal",
]
