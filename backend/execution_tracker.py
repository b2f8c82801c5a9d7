"""Execution tracker coordinating one observing session of a plan run.

This module provides the ExecutionTracker class that presents a single,
incrementally-updating view of a multi-slice code-generation run. For the
active slice it drives:

- StatusPoller: fixed-cadence job status polling (plus a PR poller)
- LayerFetcher: gated, single-flight layer hierarchy retrieval
- LiveStreamConnection: push-stream timeline while the job runs
- CompletionMachine: slice completion and auto-advance
- NotificationDispatcher: deduplicated user notifications
- SessionCacheStore: durable state so a reopened dashboard resumes

State changes are published as TrackerEvents on the EventBus under the
plan id.

Usage:
    >>> tracker = ExecutionTracker(
    ...     client=TaskSplittingClient(),
    ...     store=store,
    ...     event_bus=get_event_bus(),
    ...     plan_id="plan_123",
    ...     recipe_id="recipe_9",
    ...     slices=slices,
    ... )
    >>> await tracker.open(slice_number=1)
    >>> await tracker.start_slice()
    >>> queue = tracker.event_bus.subscribe("plan_123")
    >>> ...
    >>> await tracker.close()
"""

import functools
from collections.abc import Sequence

import structlog

from config import settings
from events.bus import EventBus
from events.types import (
    NotificationKind,
    Timeline,
    TimelineEntry,
    TimelineSource,
    TrackerEvent,
    TrackerEventType,
)
from models.database import SessionCacheStore
from models.schemas import (
    CodegenStatus,
    JobSnapshot,
    JobStatus,
    Layer,
    PlanSlice,
)
from services.task_splitting import TaskSplittingAPIError, TaskSplittingClient
from tracking.cancellation import CancellationToken
from tracking.completion import CompletionMachine
from tracking.layers import LayerFetcher
from tracking.notifications import NotificationDispatcher
from tracking.poller import StatusPoller, main_polling_finished, pr_polling_finished
from tracking.registry import SliceRecord, SliceRegistry, SliceState
from tracking.stream import LiveStreamConnection
from tracking.timeline import select_timeline

logger = structlog.get_logger(__name__)


def _timeline_signature(timeline: Timeline) -> tuple[object, ...]:
    # Entries are mutated in place by the merger, so the signature must be
    # built from values, never kept as a reference to the entries.
    return (
        timeline.source,
        tuple(
            (e.id, e.kind, len(e.content), e.status, e.result, e.detail)
            for e in timeline.entries
        ),
    )


class ExecutionTracker:
    """Observe and drive the slices of one plan run.

    Each component writes only its own state: the poller owns the job
    snapshot, the fetcher owns the layer cache, the stream connection owns
    the live timeline. The tracker reacts to poll ticks in receipt order
    and fans their results out to the completion machine and dispatcher.

    Every asynchronous operation of the active job is tied to a
    CancellationToken that is cancelled when the job or the active slice
    changes, or the tracker closes; results arriving afterwards are
    discarded.

    Attributes:
        session_id: EventBus session used for published events (the plan id).
        plan_id: Plan whose slices are tracked.
        recipe_id: Recipe passed along with job submissions.
    """

    def __init__(
        self,
        client: TaskSplittingClient,
        store: SessionCacheStore,
        event_bus: EventBus,
        *,
        plan_id: str,
        slices: Sequence[PlanSlice],
        recipe_id: str | None = None,
        group_id: str | None = None,
        status_poll_interval_seconds: float | None = None,
        pr_poll_interval_seconds: float | None = None,
        layer_page_size: int | None = None,
        auto_advance_delay_seconds: float | None = None,
        activity_preview_chars: int | None = None,
    ) -> None:
        if not slices:
            raise ValueError("At least one slice is required")

        self.client = client
        self.store = store
        self.event_bus = event_bus
        self.plan_id = plan_id
        self.recipe_id = recipe_id
        self.session_id = plan_id
        self.slices = {s.item_number: s for s in slices}

        self._status_interval = (
            status_poll_interval_seconds or settings.status_poll_interval_seconds
        )
        self._pr_interval = pr_poll_interval_seconds or settings.pr_poll_interval_seconds
        self._page_size = layer_page_size or settings.layer_page_size
        self._preview_chars = activity_preview_chars or settings.activity_preview_chars

        self._token = CancellationToken()
        self._job_token = CancellationToken()
        self.registry = SliceRegistry()
        self.dispatcher = NotificationDispatcher(event_bus, self.session_id)
        self.completion = CompletionMachine(
            store,
            event_bus,
            session_id=self.session_id,
            group_id=group_id or plan_id,
            slices=slices,
            on_advance=self._auto_advance,
            token=self._token,
            advance_delay_seconds=auto_advance_delay_seconds,
        )
        self.stream = LiveStreamConnection(client, on_change=self._on_stream_change)

        self._record: SliceRecord | None = None
        self._snapshot: JobSnapshot | None = None
        self._timeline = Timeline(source=TimelineSource.RECONSTRUCTED)
        self._timeline_key = _timeline_signature(self._timeline)
        self._transcript_saved = False
        self._poller: StatusPoller | None = None
        self._pr_poller: StatusPoller | None = None
        self._fetcher: LayerFetcher | None = None
        self._observed_job: str | None = None
        self._loaded = False

        logger.info(
            "execution_tracker_initialized",
            plan_id=plan_id,
            slice_count=len(self.slices),
        )

    # -----------------------------------------------------------------
    # Read-only state
    # -----------------------------------------------------------------

    @property
    def active_slice(self) -> int | None:
        return self._record.slice_number if self._record else None

    @property
    def job_id(self) -> str | None:
        return self._record.job_id if self._record else None

    @property
    def snapshot(self) -> JobSnapshot | None:
        return self._snapshot

    @property
    def layers(self) -> list[Layer]:
        return self._record.layers if self._record else []

    @property
    def logs(self) -> list[str]:
        return self._record.logs if self._record else []

    @property
    def timeline(self) -> Timeline:
        return self._timeline

    @property
    def completed_slices(self) -> frozenset[int]:
        return frozenset(self.completion.completed)

    @property
    def is_running(self) -> bool:
        return bool(self._record and self._record.running)

    @property
    def closed(self) -> bool:
        return self._token.cancelled

    @property
    def poller(self) -> StatusPoller | None:
        return self._poller

    @property
    def pr_poller(self) -> StatusPoller | None:
        return self._pr_poller

    def slice_state(self, slice_number: int) -> SliceState:
        if self.completion.is_completed(slice_number):
            return SliceState.COMPLETED
        if (self.plan_id, slice_number) in self.registry:
            return self.registry.get(self.plan_id, slice_number).state
        return SliceState.PENDING

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def open(self, slice_number: int) -> SliceRecord:
        """Initialize the tracker on a slice, resuming from the session cache.

        A job id cached for (plan, slice) is reused instead of submitting a
        new job. A slice already in the completed set is restored from its
        persisted layers and transcript without polling or streaming.
        """
        if not self._loaded:
            await self.completion.load()
            self._loaded = True
        return await self._activate(slice_number)

    async def select_slice(self, slice_number: int) -> SliceRecord:
        """Switch the active slice."""
        return await self._activate(slice_number)

    async def start_slice(self) -> str | None:
        """Submit a job for the active slice and begin observing it.

        Returns:
            The job id, or None if the slice is already completed or the
            tracker moved on while the submission was in flight.

        Raises:
            TaskSplittingAPIError: If the submission failed.
        """
        record = self._require_record()
        if self.completion.is_completed(record.slice_number):
            logger.info("start_slice_already_completed", slice_number=record.slice_number)
            return record.job_id

        record.running = True
        if record.job_id is None:
            plan_slice = self.slices[record.slice_number]
            try:
                response = await self.client.submit_job(plan_slice.plan_item_id, self.recipe_id)
            except TaskSplittingAPIError as e:
                record.running = False
                await self.dispatcher.notify(
                    NotificationKind.REQUEST_FAILED,
                    "error",
                    "Could not start code generation",
                    str(e),
                    slice_number=record.slice_number,
                )
                raise
            if self._record is not record or self.closed:
                logger.info("submission_result_discarded", job_id=response.job_id)
                return None
            record.job_id = response.job_id
            await self.store.set_job_id(self.plan_id, record.slice_number, response.job_id)

        record.state = SliceState.RUNNING
        if self._observed_job != record.job_id:
            await self._observe(record)
        return record.job_id

    async def create_pull_request(self) -> None:
        """Request a pull request for the active job and poll its outcome.

        Raises:
            ValueError: If there is no active job.
            TaskSplittingAPIError: If the request was rejected.
        """
        record = self._require_record()
        job_id = record.job_id
        if job_id is None:
            raise ValueError("No active job to create a pull request for")

        self.dispatcher.begin_pull_request()
        try:
            await self.client.create_pull_request(job_id)
        except TaskSplittingAPIError as e:
            await self.dispatcher.on_pull_request_error(
                str(e), job_id=job_id, slice_number=record.slice_number
            )
            raise
        if self._record is not record or self.closed:
            return

        if self._pr_poller is not None:
            self._pr_poller.stop()
        self._pr_poller = StatusPoller(
            job_id,
            functools.partial(self.client.get_status, job_id),
            functools.partial(self._on_pull_request_tick, record, self._job_token),
            interval_seconds=self._pr_interval,
            is_finished=pr_polling_finished,
            token=self._job_token,
            name="pull_request",
            initial=self._snapshot,
        )
        await self._pr_poller.start()

    async def retry_job(self) -> str | None:
        """Retry the active slice's failed job and resume observing it.

        Raises:
            ValueError: If there is no active job.
            TaskSplittingAPIError: If the retry was rejected.
        """
        record = self._require_record()
        job_id = record.job_id
        if job_id is None:
            raise ValueError("No active job to retry")

        try:
            response = await self.client.retry_job(job_id)
        except TaskSplittingAPIError as e:
            await self.dispatcher.notify(
                NotificationKind.REQUEST_FAILED,
                "error",
                "Could not retry code generation",
                str(e),
                job_id=job_id,
                slice_number=record.slice_number,
            )
            raise
        if self._record is not record or self.closed:
            return None

        new_job_id = response.get("task_splitting_id")
        if isinstance(new_job_id, str) and new_job_id and new_job_id != job_id:
            record.job_id = new_job_id
            await self.store.set_job_id(self.plan_id, record.slice_number, new_job_id)

        await self._activate(record.slice_number, continue_run=True)
        return self.job_id

    async def close(self) -> None:
        """Tear down every async operation and release observers."""
        if self.closed:
            return
        self._token.cancel()
        self._stop_observation()
        self.completion.cancel_pending_advance()
        await self.stream.close()
        for poller in (self._poller, self._pr_poller):
            if poller is not None:
                await poller.join()
        await self.event_bus.close_session(self.session_id)
        logger.info("execution_tracker_closed", plan_id=self.plan_id)

    # -----------------------------------------------------------------
    # Slice activation
    # -----------------------------------------------------------------

    def _require_record(self) -> SliceRecord:
        if self._record is None:
            raise RuntimeError("Tracker has no active slice; call open() first")
        if self.closed:
            raise RuntimeError("Tracker is closed")
        return self._record

    def _stop_observation(self) -> None:
        self._job_token.cancel()
        for poller in (self._poller, self._pr_poller):
            if poller is not None:
                poller.stop()
        self._fetcher = None
        self._observed_job = None
        self.stream.sync(None, False)

    async def _activate(self, slice_number: int, *, continue_run: bool = False) -> SliceRecord:
        if slice_number not in self.slices:
            raise ValueError(f"Unknown slice: {slice_number}")
        if self.closed:
            raise RuntimeError("Tracker is closed")

        self._stop_observation()
        self.completion.cancel_pending_advance()
        self._job_token = CancellationToken()

        completed = self.completion.is_completed(slice_number)
        record = self.registry.reset(self.plan_id, slice_number, completed=completed)
        self._record = record
        self._snapshot = None
        self._set_timeline(Timeline(source=TimelineSource.RECONSTRUCTED))
        self._transcript_saved = completed
        self.dispatcher.reset()

        if record.job_id is None:
            record.job_id = await self.store.get_job_id(self.plan_id, slice_number)
            if self._record is not record:
                return record

        logger.info(
            "slice_activated",
            plan_id=self.plan_id,
            slice_number=slice_number,
            job_id=record.job_id,
            completed=completed,
        )

        if completed:
            await self._restore_completed(record)
            await self._publish(
                TrackerEventType.SLICE_ACTIVATED, record, {"restored": True}
            )
            return record

        await self._publish(TrackerEventType.SLICE_ACTIVATED, record, {"restored": False})

        if record.job_id is not None:
            record.running = continue_run
            record.state = SliceState.RUNNING
            await self._observe(record)
        elif continue_run:
            await self.start_slice()
        return record

    async def _restore_completed(self, record: SliceRecord) -> None:
        if record.job_id is not None:
            if not record.layers:
                record.layers = await self.store.get_layer_snapshot(record.job_id)
            if not record.timeline:
                record.timeline = await self.store.get_transcript(record.job_id)
        if self._record is not record:
            return
        self._set_timeline(
            Timeline(source=TimelineSource.RESTORED, entries=list(record.timeline))
        )
        if record.layers:
            await self._publish(
                TrackerEventType.LAYERS_UPDATED, record, {"layer_count": len(record.layers)}
            )
        if record.timeline:
            await self._publish_timeline(record)

    async def _auto_advance(self, target: int) -> None:
        if self.closed:
            return
        continue_run = bool(self._record and self._record.running)
        await self._activate(target, continue_run=continue_run)

    # -----------------------------------------------------------------
    # Observation of the active job
    # -----------------------------------------------------------------

    async def _observe(self, record: SliceRecord) -> None:
        job_id = record.job_id
        if job_id is None:
            return
        token = self._job_token
        self._observed_job = job_id
        self._fetcher = LayerFetcher(
            self.client,
            job_id,
            page_size=self._page_size,
            token=token,
            layers=record.layers or None,
        )
        self._poller = StatusPoller(
            job_id,
            functools.partial(self.client.get_status, job_id),
            functools.partial(self._on_status_tick, record, token),
            interval_seconds=self._status_interval,
            is_finished=main_polling_finished,
            token=token,
            name="status",
        )
        logger.info("job_observation_started", job_id=job_id, slice_number=record.slice_number)
        await self._poller.start()

    def _is_stale(self, record: SliceRecord, token: CancellationToken) -> bool:
        return token.cancelled or self._record is not record

    async def _on_status_tick(
        self,
        record: SliceRecord,
        token: CancellationToken,
        snapshot: JobSnapshot,
        changed: bool,
    ) -> None:
        """React to one poll result, in receipt order."""
        if self._is_stale(record, token) or self._fetcher is None:
            return
        fetcher = self._fetcher
        job_id = record.job_id

        previous = self._snapshot
        await self._apply_snapshot(record, snapshot, changed)
        if self._is_stale(record, token):
            return

        revision = fetcher.revision
        layers = await fetcher.refresh(snapshot, previous)
        if self._is_stale(record, token):
            return
        record.layers = layers
        if fetcher.revision != revision:
            await self._publish(
                TrackerEventType.LAYERS_UPDATED, record, {"layer_count": len(layers)}
            )
        await self.dispatcher.on_layers(
            layers, job_id=job_id, slice_number=record.slice_number
        )

        self.stream.sync(job_id, snapshot.is_in_progress)
        await self._refresh_timeline(record)
        await self._persist_transcript(record, snapshot)
        if self._is_stale(record, token):
            return

        await self.completion.evaluate(record, layers)

    async def _on_pull_request_tick(
        self,
        record: SliceRecord,
        token: CancellationToken,
        snapshot: JobSnapshot,
        changed: bool,
    ) -> None:
        """React to one PR poll result.

        A slice restored as completed has no layer fetcher, so only the
        snapshot and its notifications are updated for it.
        """
        if self._is_stale(record, token):
            return
        if self._fetcher is not None:
            await self._on_status_tick(record, token, snapshot, changed)
            return
        await self._apply_snapshot(record, snapshot, changed)

    async def _apply_snapshot(
        self, record: SliceRecord, snapshot: JobSnapshot, changed: bool
    ) -> None:
        self._snapshot = snapshot
        if changed:
            await self._publish(
                TrackerEventType.SNAPSHOT_UPDATED,
                record,
                {"snapshot": snapshot.model_dump(mode="json")},
            )

        await self.dispatcher.on_snapshot(
            snapshot, job_id=record.job_id, slice_number=record.slice_number
        )
        failed = (
            snapshot.status == JobStatus.FAILED
            or snapshot.codegen_status == CodegenStatus.FAILED
        )
        if failed and record.running:
            record.running = False
            logger.info(
                "run_stopped_on_failure",
                job_id=record.job_id,
                slice_number=record.slice_number,
            )
            await self._publish(
                TrackerEventType.RUN_STOPPED, record, {"reason": "job_failed"}
            )

    async def _on_stream_change(self) -> None:
        record = self._record
        if record is None or self.closed:
            return
        await self._refresh_timeline(record)

    async def _refresh_timeline(self, record: SliceRecord) -> None:
        activity = self._snapshot.agent_activity if self._snapshot else []
        timeline = select_timeline(
            self.stream.entries, activity, preview_chars=self._preview_chars
        )
        if _timeline_signature(timeline) == self._timeline_key:
            return
        self._set_timeline(timeline)
        await self._publish_timeline(record)

    def _set_timeline(self, timeline: Timeline) -> None:
        self._timeline = timeline
        self._timeline_key = _timeline_signature(timeline)

    async def _persist_transcript(self, record: SliceRecord, snapshot: JobSnapshot) -> None:
        if self._transcript_saved or snapshot.codegen_status != CodegenStatus.COMPLETED:
            return
        if record.job_id is None or self._timeline.is_empty:
            return
        entries: list[TimelineEntry] = [e.model_copy() for e in self._timeline.entries]
        self._transcript_saved = True
        record.timeline = entries
        await self.store.save_transcript(record.job_id, entries)
        logger.info(
            "transcript_persisted",
            job_id=record.job_id,
            source=self._timeline.source.value,
            entries=len(entries),
        )

    # -----------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------

    async def _publish_timeline(self, record: SliceRecord) -> None:
        await self._publish(
            TrackerEventType.TIMELINE_UPDATED,
            record,
            {
                "source": self._timeline.source.value,
                "entry_count": len(self._timeline.entries),
            },
        )

    async def _publish(
        self,
        event_type: TrackerEventType,
        record: SliceRecord,
        data: dict[str, object],
    ) -> None:
        await self.event_bus.publish(
            TrackerEvent(
                type=event_type,
                session_id=self.session_id,
                job_id=record.job_id,
                slice_number=record.slice_number,
                data=data,
            )
        )
