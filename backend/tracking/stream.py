"""Lifecycle of the codegen push-stream connection.

LiveStreamConnection keeps at most one stream open per observing session.
sync() is called on every evaluation with the current job id and progress
condition; the connection is torn down and reopened only when either of
them changes. An ``end`` or ``error`` event closes the connection without
reconnecting.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from events.types import StreamEventType, TimelineEntry
from services.task_splitting import TaskSplittingClient
from tracking.timeline import TimelineMerger

logger = structlog.get_logger(__name__)

ChangeCallback = Callable[[], Awaitable[None]]


class LiveStreamConnection:
    """Consume the push stream of the active job into a TimelineMerger.

    Stream disconnects (transport failure or an ``error`` event) clear the
    live entries so the dashboard falls back to the reconstructed timeline.
    A normal ``end`` keeps them.

    Attributes:
        merger: Holds the live timeline entries of the current job.
        connections_opened: Number of stream connections started.
    """

    def __init__(
        self,
        client: TaskSplittingClient,
        *,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.client = client
        self.merger = TimelineMerger()
        self.connections_opened = 0
        self._on_change = on_change
        self._key: tuple[str | None, bool] = (None, False)
        self._job_id: str | None = None
        self._cursors: dict[str, str] = {}
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def entries(self) -> list[TimelineEntry]:
        return self.merger.entries

    def sync(self, job_id: str | None, active: bool) -> None:
        """Reconcile the connection with the current job and progress state."""
        if self._closed:
            return
        key = (job_id, active)
        if key == self._key:
            return
        self._key = key
        self._cancel_task()

        if job_id != self._job_id:
            if self._job_id is not None:
                self._cursors.pop(self._job_id, None)
            self._job_id = job_id
            self.merger = TimelineMerger()

        if job_id and active:
            self.connections_opened += 1
            self._task = asyncio.create_task(
                self._consume(job_id), name=f"codegen_stream_{job_id}"
            )

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change()
        except Exception as e:
            logger.error("stream_change_handler_failed", error=str(e))

    async def _consume(self, job_id: str) -> None:
        merger = self.merger
        cursor = self._cursors.get(job_id)
        logger.info("stream_connecting", job_id=job_id, cursor=cursor)
        try:
            async for event in self.client.connect_stream(job_id, cursor):
                if self._closed or merger is not self.merger:
                    return
                if event.event_id:
                    self._cursors[job_id] = event.event_id
                if event.type == StreamEventType.END:
                    logger.info("stream_ended", job_id=job_id, entries=len(merger.entries))
                    return
                if event.type == StreamEventType.ERROR:
                    logger.warning("stream_error_event", job_id=job_id, data=event.payload)
                    await self._fall_back(merger)
                    return
                if merger.apply(event):
                    await self._notify()
        except Exception as e:
            logger.warning("stream_disconnected", job_id=job_id, error=str(e))
            if not self._closed and merger is self.merger:
                await self._fall_back(merger)

    async def _fall_back(self, merger: TimelineMerger) -> None:
        if merger.entries:
            merger.clear()
            await self._notify()

    async def close(self) -> None:
        """Close the connection for good; later sync() calls are ignored."""
        self._closed = True
        task = self._task
        self._cancel_task()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("stream_closed", job_id=self._job_id)

    async def join(self) -> None:
        """Wait for the current connection to finish on its own."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
