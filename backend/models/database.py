"""SQLite-backed durable session cache using aiosqlite.

This module provides the SessionCacheStore class that keeps the execution
tracker resumable across a full reload of the observing process. It is a
small key/value table whose logical keys are:

    completed_slices:<groupId>          -> number[]
    task_splitting:<planId>:<sliceNo>   -> jobId
    thinking_transcript:<jobId>         -> TimelineEntry[]
    layer_snapshot:<jobId>              -> Layer[]

Values are stored as JSON. All operations are async and designed to fail
gracefully: a cache that cannot be read or written degrades to "start
fresh" behaviour and never raises to the caller.

Usage:
    >>> from models.database import SessionCacheStore
    >>> store = SessionCacheStore("./data/session_cache.db")
    >>> await store.init()
    >>> await store.set_job_id("plan_1", 2, "ts_abc123")
    >>> await store.get_job_id("plan_1", 2)
    'ts_abc123'
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from pydantic import TypeAdapter, ValidationError

from config import settings
from events.types import TimelineEntry
from models.schemas import Layer

logger = structlog.get_logger(__name__)

_layers_adapter = TypeAdapter(list[Layer])
_timeline_adapter = TypeAdapter(list[TimelineEntry])


def completed_slices_key(group_id: str) -> str:
    return f"completed_slices:{group_id}"


def job_id_key(plan_id: str, slice_number: int) -> str:
    return f"task_splitting:{plan_id}:{slice_number}"


def transcript_key(job_id: str) -> str:
    return f"thinking_transcript:{job_id}"


def layer_snapshot_key(job_id: str) -> str:
    return f"layer_snapshot:{job_id}"


class SessionCacheStore:
    """Async SQLite key/value store for resumable tracker state.

    Every public method catches exceptions internally and logs them rather
    than propagating, so a missing, locked, or corrupt cache file never
    breaks an observing session.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the session cache store.

        Args:
            db_path: Filesystem path to the SQLite database file, defaulting
                     to settings.session_cache_path. Parent directories are
                     created automatically on init().
        """
        self.db_path = db_path or settings.session_cache_path

    async def init(self) -> bool:
        """Create the cache table if it does not exist.

        Returns:
            True if the cache is usable, False if initialization failed.
        """
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS session_cache (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("session_cache_initialized", db_path=self.db_path)
            return True
        except Exception as e:
            logger.error(
                "session_cache_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            return False

    # -----------------------------------------------------------------
    # Raw key/value access
    # -----------------------------------------------------------------

    async def get_value(self, key: str) -> Any | None:
        """Read and JSON-decode the value stored under ``key``.

        Returns:
            The decoded value, or None if absent or unreadable.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT value FROM session_cache WHERE key = ?",
                    (key,),
                )
                row = await cursor.fetchone()
            if row is None:
                return None
            return json.loads(row[0])
        except Exception as e:
            logger.error("session_cache_get_failed", key=key, error=str(e))
            return None

    async def set_value(self, key: str, value: Any) -> bool:
        """JSON-encode and store ``value`` under ``key``.

        Returns:
            True if the write succeeded.
        """
        try:
            payload = json.dumps(value)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO session_cache (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (key, payload, time.time()),
                )
                await db.commit()
            logger.debug("session_cache_set", key=key)
            return True
        except Exception as e:
            logger.error("session_cache_set_failed", key=key, error=str(e))
            return False

    async def delete_value(self, key: str) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM session_cache WHERE key = ?", (key,))
                await db.commit()
        except Exception as e:
            logger.error("session_cache_delete_failed", key=key, error=str(e))

    # -----------------------------------------------------------------
    # Active job per (plan, slice)
    # -----------------------------------------------------------------

    async def get_job_id(self, plan_id: str, slice_number: int) -> str | None:
        value = await self.get_value(job_id_key(plan_id, slice_number))
        return value if isinstance(value, str) and value else None

    async def set_job_id(self, plan_id: str, slice_number: int, job_id: str) -> None:
        await self.set_value(job_id_key(plan_id, slice_number), job_id)

    async def clear_job_id(self, plan_id: str, slice_number: int) -> None:
        await self.delete_value(job_id_key(plan_id, slice_number))

    # -----------------------------------------------------------------
    # Completed slices per run
    # -----------------------------------------------------------------

    async def get_completed_slices(self, group_id: str) -> set[int]:
        """Return the persisted set of completed slice numbers."""
        value = await self.get_value(completed_slices_key(group_id))
        if not isinstance(value, list):
            return set()
        return {int(n) for n in value if isinstance(n, int | float)}

    async def add_completed_slice(self, group_id: str, slice_number: int) -> set[int]:
        """Add a slice number to the completed set.

        The set only grows: the new value is the union of what is stored
        and ``slice_number``.

        Returns:
            The updated set (in-memory result even if the write failed).
        """
        completed = await self.get_completed_slices(group_id)
        completed.add(slice_number)
        await self.set_value(completed_slices_key(group_id), sorted(completed))
        return completed

    # -----------------------------------------------------------------
    # Per-job transcripts and layer snapshots
    # -----------------------------------------------------------------

    async def get_transcript(self, job_id: str) -> list[TimelineEntry]:
        value = await self.get_value(transcript_key(job_id))
        if value is None:
            return []
        try:
            return _timeline_adapter.validate_python(value)
        except ValidationError as e:
            logger.error("session_cache_transcript_invalid", job_id=job_id, error=str(e))
            return []

    async def save_transcript(self, job_id: str, entries: list[TimelineEntry]) -> None:
        await self.set_value(
            transcript_key(job_id),
            _timeline_adapter.dump_python(entries, mode="json"),
        )

    async def get_layer_snapshot(self, job_id: str) -> list[Layer]:
        value = await self.get_value(layer_snapshot_key(job_id))
        if value is None:
            return []
        try:
            return _layers_adapter.validate_python(value)
        except ValidationError as e:
            logger.error("session_cache_layers_invalid", job_id=job_id, error=str(e))
            return []

    async def save_layer_snapshot(self, job_id: str, layers: list[Layer]) -> None:
        await self.set_value(
            layer_snapshot_key(job_id),
            _layers_adapter.dump_python(layers, mode="json", by_alias=True),
        )
