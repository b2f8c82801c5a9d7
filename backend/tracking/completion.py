"""Slice completion detection and auto-advance.

The CompletionMachine re-evaluates the active slice on every poll tick.
Its one-time side effects (success log line, completed-set update,
advance scheduling) are guarded by membership in the completed set, so
they run exactly once per slice even though the completion condition
stays true on every later tick.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import structlog

from config import settings
from events.bus import EventBus
from events.types import TrackerEvent, TrackerEventType
from models.database import SessionCacheStore
from models.schemas import Layer, PlanSlice
from tracking.cancellation import CancellationToken
from tracking.registry import SliceRecord, SliceState

logger = structlog.get_logger(__name__)

AdvanceCallback = Callable[[int], Awaitable[None]]


def layers_complete(layers: Sequence[Layer]) -> bool:
    """True when every layer is completed at layer or task level.

    An empty hierarchy is never complete.
    """
    return bool(layers) and all(layer.is_completed for layer in layers)


class CompletionMachine:
    """Track completed slices and drive the advance to the next slice.

    Attributes:
        completed: Slice numbers completed in this run. Only ever grows.
        slices: The plan's slices ordered by item number.
    """

    def __init__(
        self,
        store: SessionCacheStore,
        event_bus: EventBus,
        *,
        session_id: str,
        group_id: str,
        slices: Sequence[PlanSlice],
        on_advance: AdvanceCallback,
        token: CancellationToken,
        advance_delay_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.session_id = session_id
        self.group_id = group_id
        self.slices = sorted(slices, key=lambda s: s.item_number)
        self.completed: set[int] = set()
        self._on_advance = on_advance
        self._token = token
        self._delay = (
            settings.auto_advance_delay_seconds
            if advance_delay_seconds is None
            else advance_delay_seconds
        )
        self._advance_task: asyncio.Task[None] | None = None

    async def load(self) -> set[int]:
        """Merge the persisted completed set into memory."""
        self.completed |= await self.store.get_completed_slices(self.group_id)
        return self.completed

    def next_slice(self, slice_number: int) -> PlanSlice | None:
        for candidate in self.slices:
            if candidate.item_number > slice_number:
                return candidate
        return None

    def is_completed(self, slice_number: int) -> bool:
        return slice_number in self.completed

    async def evaluate(self, record: SliceRecord, layers: Sequence[Layer]) -> bool:
        """Complete the slice if its job's layers are all done.

        Returns:
            True only on the tick that performed the transition.
        """
        slice_number = record.slice_number
        if slice_number in self.completed:
            return False
        if not layers_complete(layers):
            if record.job_id and record.state == SliceState.PENDING:
                record.state = SliceState.RUNNING
            return False

        # Claim membership before the first await so interleaved ticks see it
        self.completed.add(slice_number)
        record.state = SliceState.COMPLETED
        record.logs.append(f"Slice {slice_number} completed successfully.")

        self.completed |= await self.store.add_completed_slice(self.group_id, slice_number)
        if record.job_id:
            await self.store.save_layer_snapshot(record.job_id, list(layers))

        upcoming = self.next_slice(slice_number)
        logger.info(
            "slice_completed",
            session_id=self.session_id,
            slice_number=slice_number,
            job_id=record.job_id,
            next_slice=upcoming.item_number if upcoming else None,
        )
        await self.event_bus.publish(
            TrackerEvent(
                type=TrackerEventType.SLICE_COMPLETED,
                session_id=self.session_id,
                job_id=record.job_id,
                slice_number=slice_number,
                data={"next_slice": upcoming.item_number if upcoming else None},
            )
        )

        if upcoming is not None:
            self._schedule_advance(upcoming.item_number)
        else:
            record.running = False
            await self.event_bus.publish(
                TrackerEvent(
                    type=TrackerEventType.RUN_STOPPED,
                    session_id=self.session_id,
                    job_id=record.job_id,
                    slice_number=slice_number,
                    data={"reason": "all_slices_completed"},
                )
            )
        return True

    def _schedule_advance(self, target: int) -> None:
        self.cancel_pending_advance()
        self._advance_task = asyncio.create_task(
            self._advance_after_delay(target), name=f"advance_to_slice_{target}"
        )

    async def _advance_after_delay(self, target: int) -> None:
        if not await self._token.sleep(self._delay):
            return
        logger.info("slice_auto_advance", session_id=self.session_id, target=target)
        try:
            await self._on_advance(target)
        except Exception as e:
            logger.error(
                "slice_auto_advance_failed",
                session_id=self.session_id,
                target=target,
                error=str(e),
            )

    @property
    def advance_pending(self) -> bool:
        return self._advance_task is not None and not self._advance_task.done()

    def cancel_pending_advance(self) -> None:
        if self.advance_pending and self._advance_task is not asyncio.current_task():
            self._advance_task.cancel()
        self._advance_task = None

    async def wait_for_advance(self) -> None:
        """Wait until a scheduled advance has run."""
        task = self._advance_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
