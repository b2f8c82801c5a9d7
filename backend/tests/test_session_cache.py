"""Tests for models/database.py -- durable session cache.

Covers the raw key/value layer, job id persistence per (plan, slice),
the grow-only completed set, transcript and layer snapshot round trips,
and graceful degradation when the database is unusable.
"""

from pathlib import Path
from typing import get_type_hints

from events.types import TimelineEntry
from models.database import (
    SessionCacheStore,
    completed_slices_key,
    job_id_key,
    layer_snapshot_key,
    transcript_key,
)
from tests.conftest import make_layer, make_task

# =========================================================================
# Keys
# =========================================================================


class TestKeys:
    """Logical key layout."""

    def test_key_formats(self) -> None:
        assert completed_slices_key("plan_1") == "completed_slices:plan_1"
        assert job_id_key("plan_1", 3) == "task_splitting:plan_1:3"
        assert transcript_key("ts_1") == "thinking_transcript:ts_1"
        assert layer_snapshot_key("ts_1") == "layer_snapshot:ts_1"


# =========================================================================
# Raw access
# =========================================================================


class TestRawAccess:
    """JSON values under string keys."""

    def test_accessors_do_not_shadow_builtins(self) -> None:
        # Annotations in the class body are evaluated at class creation on
        # 3.11-3.13, so a method named ``set`` would break ``set[int]``.
        for name in ("get", "set", "delete"):
            assert name not in vars(SessionCacheStore)
        hints = get_type_hints(SessionCacheStore.add_completed_slice)
        assert hints["return"] == set[int]
        assert get_type_hints(SessionCacheStore.get_completed_slices)["return"] == set[int]

    async def test_get_missing_returns_none(self, store: SessionCacheStore) -> None:
        assert await store.get_value("nope") is None

    async def test_set_then_get(self, store: SessionCacheStore) -> None:
        assert await store.set_value("k", {"a": [1, 2]})
        assert await store.get_value("k") == {"a": [1, 2]}

    async def test_set_overwrites(self, store: SessionCacheStore) -> None:
        await store.set_value("k", 1)
        await store.set_value("k", 2)
        assert await store.get_value("k") == 2

    async def test_delete(self, store: SessionCacheStore) -> None:
        await store.set_value("k", 1)
        await store.delete_value("k")
        assert await store.get_value("k") is None

    async def test_init_creates_parent_dirs(self, tmp_path: Path) -> None:
        cache = SessionCacheStore(str(tmp_path / "a" / "b" / "cache.db"))
        assert await cache.init()
        assert (tmp_path / "a" / "b" / "cache.db").exists()


# =========================================================================
# Job ids
# =========================================================================


class TestJobIds:
    """Active job per (plan, slice)."""

    async def test_round_trip(self, store: SessionCacheStore) -> None:
        await store.set_job_id("plan_1", 2, "ts_abc")
        assert await store.get_job_id("plan_1", 2) == "ts_abc"
        assert await store.get_job_id("plan_1", 3) is None
        assert await store.get_job_id("plan_2", 2) is None

    async def test_clear(self, store: SessionCacheStore) -> None:
        await store.set_job_id("plan_1", 2, "ts_abc")
        await store.clear_job_id("plan_1", 2)
        assert await store.get_job_id("plan_1", 2) is None


# =========================================================================
# Completed slices
# =========================================================================


class TestCompletedSlices:
    """The completed set only grows."""

    async def test_empty_by_default(self, store: SessionCacheStore) -> None:
        assert await store.get_completed_slices("plan_1") == set()

    async def test_add_is_union(self, store: SessionCacheStore) -> None:
        assert await store.add_completed_slice("plan_1", 1) == {1}
        assert await store.add_completed_slice("plan_1", 3) == {1, 3}
        assert await store.add_completed_slice("plan_1", 1) == {1, 3}
        assert await store.get_completed_slices("plan_1") == {1, 3}

    async def test_groups_are_independent(self, store: SessionCacheStore) -> None:
        await store.add_completed_slice("plan_1", 1)
        assert await store.get_completed_slices("plan_2") == set()

    async def test_garbage_value_reads_as_empty(self, store: SessionCacheStore) -> None:
        await store.set_value(completed_slices_key("plan_1"), "not a list")
        assert await store.get_completed_slices("plan_1") == set()


# =========================================================================
# Transcripts and layer snapshots
# =========================================================================


class TestTranscripts:
    """Per-job timeline persistence."""

    async def test_round_trip(self, store: SessionCacheStore) -> None:
        entries = [
            TimelineEntry(id="chunk-1", kind="chunk", content="thinking"),
            TimelineEntry(
                id="c1", kind="tool", label="write_file", call_id="c1",
                status="done", result='{"ok": true}',
            ),
        ]
        await store.save_transcript("ts_1", entries)
        assert await store.get_transcript("ts_1") == entries

    async def test_missing_transcript(self, store: SessionCacheStore) -> None:
        assert await store.get_transcript("ts_missing") == []

    async def test_invalid_transcript_reads_as_empty(self, store: SessionCacheStore) -> None:
        await store.set_value(transcript_key("ts_1"), [{"kind": "bogus"}])
        assert await store.get_transcript("ts_1") == []


class TestLayerSnapshots:
    """Layer hierarchy persisted for completed slices."""

    async def test_round_trip_preserves_aliases(self, store: SessionCacheStore) -> None:
        task = make_task("t1", "COMPLETED", test_code="assert 1")
        layers = [make_layer(1, "COMPLETED", tasks=[task]), make_layer(2, "COMPLETED")]
        await store.save_layer_snapshot("ts_1", layers)

        restored = await store.get_layer_snapshot("ts_1")
        assert restored == layers
        raw = await store.get_value(layer_snapshot_key("ts_1"))
        assert raw[0]["tasks"][0]["testCode"] == "assert 1"


# =========================================================================
# Graceful degradation
# =========================================================================


class TestDegradation:
    """An unusable cache never raises."""

    async def test_uninitialized_store_reads_nothing(self, tmp_path: Path) -> None:
        cache = SessionCacheStore(str(tmp_path / "never_initialized.db"))
        assert await cache.get_value("k") is None
        assert await cache.get_completed_slices("plan_1") == set()

    async def test_unwritable_path(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        cache = SessionCacheStore(str(blocker / "cache.db"))
        assert await cache.init() is False
        assert await cache.set_value("k", 1) is False
        assert await cache.add_completed_slice("plan_1", 2) == {2}
