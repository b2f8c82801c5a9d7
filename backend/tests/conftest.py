"""Shared test fixtures for backend tests.

Provides a scripted fake of the task-splitting backend client, a fresh
EventBus, a temporary session cache, and factories for layers, tasks and
snapshots so tests never touch a real backend.
"""

import asyncio
import sys
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from tracking.poller import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import StreamEvent, TrackerEvent, TrackerEventType  # noqa: E402
from models.database import SessionCacheStore  # noqa: E402
from models.schemas import (  # noqa: E402
    JobSnapshot,
    Layer,
    LayersPage,
    PlanSlice,
    SubmitJobResponse,
    Task,
)
from services.task_splitting import TaskSplittingAPIError  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Session cache
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Any) -> SessionCacheStore:
    """Provide an initialized SessionCacheStore in a temporary directory."""
    cache = SessionCacheStore(str(tmp_path / "cache" / "session_cache.db"))
    assert await cache.init()
    return cache


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_task(task_id: str = "task_1", status: str = "PENDING", **kwargs: Any) -> Task:
    """Create a Task with sensible defaults."""
    return Task(id=task_id, title=kwargs.pop("title", task_id), status=status, **kwargs)


def make_layer(
    order: int,
    status: str = "PENDING",
    tasks: list[Task] | None = None,
    title: str | None = None,
) -> Layer:
    """Create a Layer at a given layer order."""
    return Layer(
        id=f"layer_{order}",
        title=title if title is not None else f"Layer {order}",
        status=status,
        layer_order=order,
        tasks=tasks or [],
    )


def make_snapshot(job_id: str = "ts_1", **kwargs: Any) -> JobSnapshot:
    """Create a JobSnapshot for a job."""
    return JobSnapshot(task_splitting_id=job_id, **kwargs)


def make_slices(count: int = 3) -> list[PlanSlice]:
    return [
        PlanSlice(item_number=n, plan_item_id=f"item_{n}", title=f"Slice {n}")
        for n in range(1, count + 1)
    ]


RUNNING = {"status": "IN_PROGRESS", "codegen_status": "IN_PROGRESS"}
DONE = {"status": "COMPLETED", "codegen_status": "COMPLETED"}


# ---------------------------------------------------------------------------
# Fake backend client
# ---------------------------------------------------------------------------


class FakeTaskSplittingClient:
    """Scripted stand-in for TaskSplittingClient.

    - ``statuses`` maps job id to a list of snapshots returned in order;
      the last one repeats.
    - ``layers`` maps job id to the full layer list served by get_items,
      paginated by layer order.
    - ``streams`` maps job id to a list of event scripts, one per
      connection. When ``hold_streams`` is set, a script that does not end
      with ``end``/``error`` keeps the connection open until released.

    Every call is recorded for assertions.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, list[JobSnapshot]] = {}
        self.layers: dict[str, list[Layer]] = {}
        self.streams: dict[str, list[list[StreamEvent]]] = {}
        self.hold_streams = True
        self.stream_release = asyncio.Event()
        self.items_gate: asyncio.Event | None = None

        self.next_job_ids: list[str] = ["ts_1", "ts_2", "ts_3", "ts_4"]
        self.submit_error: TaskSplittingAPIError | None = None
        self.pr_error: TaskSplittingAPIError | None = None
        self.retry_error: TaskSplittingAPIError | None = None
        self.status_error: Exception | None = None

        self.submit_calls: list[tuple[str, str | None]] = []
        self.status_calls: list[str] = []
        self.items_calls: list[tuple[str, int, int]] = []
        self.stream_calls: list[tuple[str, str | None]] = []
        self.pr_calls: list[str] = []
        self.retry_calls: list[str] = []
        self._status_index: dict[str, int] = {}

    def script_status(self, job_id: str, *snapshots: dict[str, Any]) -> None:
        self.statuses[job_id] = [make_snapshot(job_id, **s) for s in snapshots]
        self._status_index[job_id] = 0

    async def submit_job(
        self, plan_item_id: str, recipe_id: str | None = None
    ) -> SubmitJobResponse:
        self.submit_calls.append((plan_item_id, recipe_id))
        if self.submit_error is not None:
            raise self.submit_error
        job_id = self.next_job_ids.pop(0)
        return SubmitJobResponse(task_splitting_id=job_id)

    async def get_status(self, job_id: str) -> JobSnapshot:
        self.status_calls.append(job_id)
        if self.status_error is not None:
            raise self.status_error
        script = self.statuses.get(job_id) or [make_snapshot(job_id, **RUNNING)]
        index = self._status_index.get(job_id, 0)
        self._status_index[job_id] = index + 1
        return script[min(index, len(script) - 1)].model_copy(deep=True)

    async def get_items(self, job_id: str, start: int = 0, limit: int = 10) -> LayersPage:
        self.items_calls.append((job_id, start, limit))
        if self.items_gate is not None:
            await self.items_gate.wait()
        ordered = sorted(self.layers.get(job_id, []), key=lambda layer: layer.layer_order)
        remaining = [layer for layer in ordered if layer.layer_order >= start]
        page = remaining[:limit]
        rest = remaining[limit:]
        return LayersPage(
            task_splitting_id=job_id,
            layers=[layer.model_copy(deep=True) for layer in page],
            next_layer_order=rest[0].layer_order if rest else None,
        )

    async def create_pull_request(self, job_id: str) -> None:
        self.pr_calls.append(job_id)
        if self.pr_error is not None:
            raise self.pr_error

    async def retry_job(self, job_id: str) -> dict[str, Any]:
        self.retry_calls.append(job_id)
        if self.retry_error is not None:
            raise self.retry_error
        return {"task_splitting_id": job_id, "status": "PENDING"}

    async def connect_stream(
        self, job_id: str, cursor: str | None = None
    ) -> AsyncIterator[StreamEvent]:
        self.stream_calls.append((job_id, cursor))
        scripts = self.streams.get(job_id) or [[]]
        script = scripts.pop(0) if len(scripts) > 1 else scripts[0]
        for event in script:
            yield event
            if event.type in ("end", "error"):
                return
        if self.hold_streams:
            await self.stream_release.wait()

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def fake_client() -> FakeTaskSplittingClient:
    return FakeTaskSplittingClient()


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 2.0,
    interval: float = 0.005,
) -> None:
    """Yield to the loop until ``predicate`` holds or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def drain(queue: "asyncio.Queue[TrackerEvent]") -> list[TrackerEvent]:
    """Pull every event currently sitting in a subscriber queue."""
    events: list[TrackerEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def events_of(
    events: list[TrackerEvent], event_type: TrackerEventType
) -> list[TrackerEvent]:
    return [e for e in events if e.type == event_type]


def stream_event(event_type: str, event_id: str | None = None, **data: Any) -> StreamEvent:
    """Create a StreamEvent as parsed from the SSE stream."""
    return StreamEvent(type=event_type, data=data, event_id=event_id)
