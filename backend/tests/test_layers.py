"""Tests for tracking/layers.py -- paginated fetch and merge cache."""

import asyncio

import pytest

from models.schemas import FileChange, Layer
from tracking.cancellation import CancellationToken
from tracking.layers import LayerFetcher, layers_differ, merge_layers, should_fetch
from tests.conftest import (
    DONE,
    RUNNING,
    FakeTaskSplittingClient,
    make_layer,
    make_snapshot,
    make_task,
)


def _layers(count: int, status: str = "PENDING") -> list[Layer]:
    return [
        make_layer(n, status, tasks=[make_task(f"t{n}", status)])
        for n in range(1, count + 1)
    ]


# =========================================================================
# Shallow diff
# =========================================================================


class TestLayersDiffer:
    """Positional comparison on counts and statuses."""

    def test_identical(self) -> None:
        assert not layers_differ(_layers(3), _layers(3))

    def test_length_change(self) -> None:
        assert layers_differ(_layers(2), _layers(3))

    def test_layer_status_change(self) -> None:
        fresh = _layers(2)
        fresh[1].status = "COMPLETED"
        assert layers_differ(_layers(2), fresh)

    def test_task_count_change(self) -> None:
        fresh = _layers(2)
        fresh[0].tasks.append(make_task("extra"))
        assert layers_differ(_layers(2), fresh)

    def test_task_status_change(self) -> None:
        fresh = _layers(2)
        fresh[0].tasks[0].status = "IN_PROGRESS"
        assert layers_differ(_layers(2), fresh)

    def test_change_count(self) -> None:
        fresh = _layers(1)
        fresh[0].tasks[0].changes.append(FileChange(path="a.py"))
        assert layers_differ(_layers(1), fresh)

    def test_title_only_change_ignored(self) -> None:
        fresh = _layers(1)
        fresh[0].title = "Renamed"
        assert not layers_differ(_layers(1), fresh)


class TestMergeLayers:
    """Cache replacement only on a detected difference."""

    def test_identical_keeps_cached_object(self) -> None:
        cached = _layers(3)
        assert merge_layers(cached, _layers(3)) is cached

    def test_idempotent(self) -> None:
        cached = _layers(2)
        fresh = _layers(3)
        once = merge_layers(cached, fresh)
        assert merge_layers(once, fresh) is once


# =========================================================================
# Gating
# =========================================================================


class TestShouldFetch:
    """Only fetch when a layer change is plausible."""

    def test_empty_cache(self) -> None:
        assert should_fetch([], make_snapshot(**DONE), make_snapshot(**DONE))

    def test_codegen_in_progress(self) -> None:
        snapshot = make_snapshot(**RUNNING)
        assert should_fetch(_layers(1), snapshot, snapshot)

    def test_step_changed(self) -> None:
        previous = make_snapshot(current_step=1, codegen_status="PENDING")
        snapshot = make_snapshot(current_step=2, codegen_status="PENDING")
        assert should_fetch(_layers(1), snapshot, previous)

    def test_codegen_just_completed(self) -> None:
        previous = make_snapshot(**RUNNING)
        assert should_fetch(_layers(1), make_snapshot(**DONE), previous)

    def test_quiet_tick_skips(self) -> None:
        snapshot = make_snapshot(current_step=3, **DONE)
        assert not should_fetch(_layers(1), snapshot, snapshot)

    def test_no_previous_with_cache(self) -> None:
        assert not should_fetch(_layers(1), make_snapshot(**DONE), None)


# =========================================================================
# LayerFetcher
# =========================================================================


class TestPagination:
    """Pages are followed until the cursor is null."""

    @pytest.mark.parametrize(
        ("count", "expected_requests"),
        [(0, 1), (1, 1), (10, 1), (11, 2), (25, 3)],
    )
    async def test_request_count(
        self,
        fake_client: FakeTaskSplittingClient,
        count: int,
        expected_requests: int,
    ) -> None:
        fake_client.layers["ts_1"] = _layers(count)
        fetcher = LayerFetcher(fake_client, "ts_1", page_size=10)

        layers = await fetcher.fetch_all()

        assert fetcher.requests_made == expected_requests
        assert [layer.layer_order for layer in layers] == list(range(1, count + 1))

    async def test_cursor_follows_next_layer_order(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(12)
        await LayerFetcher(fake_client, "ts_1", page_size=5).fetch_all()
        assert fake_client.items_calls == [
            ("ts_1", 0, 5),
            ("ts_1", 6, 5),
            ("ts_1", 11, 5),
        ]


class TestCache:
    """Revision bumps only on replacement."""

    async def test_unchanged_fetch_keeps_revision(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(3)
        fetcher = LayerFetcher(fake_client, "ts_1")

        first = await fetcher.fetch_all()
        second = await fetcher.fetch_all()

        assert fetcher.revision == 1
        assert second is first

    async def test_status_change_replaces_cache(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(2)
        fetcher = LayerFetcher(fake_client, "ts_1")
        await fetcher.fetch_all()

        fake_client.layers["ts_1"] = _layers(2, "COMPLETED")
        layers = await fetcher.fetch_all()

        assert fetcher.revision == 2
        assert all(layer.is_completed for layer in layers)

    async def test_failure_returns_last_good_cache(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(2)
        fetcher = LayerFetcher(fake_client, "ts_1")
        cached = await fetcher.fetch_all()

        async def broken(*args: object, **kwargs: object) -> None:
            raise RuntimeError("backend down")

        fake_client.get_items = broken  # type: ignore[assignment]
        assert await fetcher.fetch_all() is cached
        assert not fetcher.in_flight


class TestSingleFlight:
    """Concurrent calls do not start a second fetch."""

    async def test_concurrent_call_returns_cache(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(3)
        fake_client.items_gate = asyncio.Event()
        fetcher = LayerFetcher(fake_client, "ts_1")

        first = asyncio.create_task(fetcher.fetch_all())
        await asyncio.sleep(0)
        assert fetcher.in_flight

        second = await fetcher.fetch_all()
        assert second == []
        assert len(fake_client.items_calls) == 1

        fake_client.items_gate.set()
        layers = await first
        assert len(layers) == 3
        assert len(fake_client.items_calls) == 1

    async def test_cancelled_fetch_discarded(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(3)
        fake_client.items_gate = asyncio.Event()
        token = CancellationToken()
        fetcher = LayerFetcher(fake_client, "ts_1", token=token)

        task = asyncio.create_task(fetcher.fetch_all())
        await asyncio.sleep(0)
        token.cancel()
        fake_client.items_gate.set()

        assert await task == []
        assert fetcher.revision == 0


class TestRefresh:
    """refresh() applies the gating policy."""

    async def test_quiet_tick_issues_no_request(
        self, fake_client: FakeTaskSplittingClient
    ) -> None:
        fake_client.layers["ts_1"] = _layers(2, "COMPLETED")
        fetcher = LayerFetcher(fake_client, "ts_1")
        snapshot = make_snapshot(**DONE)

        await fetcher.refresh(snapshot, None)
        await fetcher.refresh(snapshot, snapshot)
        await fetcher.refresh(snapshot, snapshot)

        assert fetcher.requests_made == 1
