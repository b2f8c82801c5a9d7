"""At-most-once user notifications derived from job state.

The NotificationDispatcher turns snapshot and layer transitions into
``notification`` events on the EventBus. Each condition has a guard flag
that is set when the notification fires and cleared only when the
condition itself goes away, so a condition that holds across many poll
ticks produces a single notification per episode.
"""

from collections.abc import Sequence

import structlog

from events.bus import EventBus
from events.types import NotificationKind, TrackerEvent, TrackerEventType
from models.schemas import CodegenStatus, JobSnapshot, JobStatus, Layer, PRStatus

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Publish deduplicated notifications for one observing session.

    Attributes:
        session_id: EventBus session the notifications are published to.
    """

    def __init__(self, event_bus: EventBus, session_id: str) -> None:
        self.event_bus = event_bus
        self.session_id = session_id
        self.failure_shown = False
        self.warning_shown = False
        self.pr_notified = False
        self._pr_attempt_active = False
        self._known_layer_count: int | None = None

    def reset(self) -> None:
        """Forget all episode state, e.g. when a different job is observed."""
        self.failure_shown = False
        self.warning_shown = False
        self.pr_notified = False
        self._pr_attempt_active = False
        self._known_layer_count = None

    def begin_pull_request(self) -> None:
        """Start a new PR-creation attempt, re-arming its notifications."""
        self._pr_attempt_active = True
        self.pr_notified = False

    async def notify(
        self,
        kind: NotificationKind,
        level: str,
        title: str,
        message: str | None = None,
        *,
        job_id: str | None = None,
        slice_number: int | None = None,
    ) -> None:
        logger.info(
            "notification_dispatched",
            session_id=self.session_id,
            kind=kind.value,
            job_id=job_id,
        )
        await self.event_bus.publish(
            TrackerEvent(
                type=TrackerEventType.NOTIFICATION,
                session_id=self.session_id,
                job_id=job_id,
                slice_number=slice_number,
                data={
                    "kind": kind.value,
                    "level": level,
                    "title": title,
                    "message": message,
                },
            )
        )

    async def on_snapshot(
        self,
        snapshot: JobSnapshot,
        *,
        job_id: str | None = None,
        slice_number: int | None = None,
    ) -> None:
        """Evaluate failure, warning and pull-request conditions."""
        failed = (
            snapshot.status == JobStatus.FAILED
            or snapshot.codegen_status == CodegenStatus.FAILED
        )
        if failed and not self.failure_shown:
            self.failure_shown = True
            await self.notify(
                NotificationKind.JOB_FAILED,
                "error",
                "Code generation failed",
                snapshot.error_message,
                job_id=job_id,
                slice_number=slice_number,
            )
        elif not failed and not snapshot.error_message:
            self.failure_shown = False

        warned = (
            snapshot.codegen_status == CodegenStatus.COMPLETED
            and bool(snapshot.error_message)
        )
        if warned and not self.warning_shown:
            self.warning_shown = True
            await self.notify(
                NotificationKind.JOB_COMPLETED_WITH_WARNINGS,
                "warning",
                "Code generation completed with warnings",
                snapshot.error_message,
                job_id=job_id,
                slice_number=slice_number,
            )
        elif not snapshot.error_message:
            self.warning_shown = False

        if not self._pr_attempt_active or self.pr_notified:
            return
        if snapshot.pr_url:
            self.pr_notified = True
            await self.notify(
                NotificationKind.PULL_REQUEST_CREATED,
                "success",
                "Pull request created",
                snapshot.pr_url,
                job_id=job_id,
                slice_number=slice_number,
            )
        elif snapshot.pr_status == PRStatus.FAILED:
            self.pr_notified = True
            await self.notify(
                NotificationKind.PULL_REQUEST_FAILED,
                "error",
                "Pull request creation failed",
                snapshot.pr_error_message,
                job_id=job_id,
                slice_number=slice_number,
            )

    async def on_layers(
        self,
        layers: Sequence[Layer],
        *,
        job_id: str | None = None,
        slice_number: int | None = None,
    ) -> None:
        """Announce layers that appeared since the previous observation.

        The first non-empty layer set seen establishes the baseline and is
        not announced.
        """
        if not layers:
            return
        if self._known_layer_count is None:
            self._known_layer_count = len(layers)
            return
        if len(layers) <= self._known_layer_count:
            return

        new_layers = list(layers[self._known_layer_count:])
        self._known_layer_count = len(layers)
        for layer in new_layers:
            await self.notify(
                NotificationKind.LAYER_ADDED,
                "info",
                "New phase started",
                layer.title or f"Phase {layer.layer_order}",
                job_id=job_id,
                slice_number=slice_number,
            )

    async def on_pull_request_error(
        self,
        message: str | None,
        *,
        job_id: str | None = None,
        slice_number: int | None = None,
    ) -> None:
        """Report a PR-creation request the backend rejected outright."""
        if self.pr_notified:
            return
        self.pr_notified = True
        self._pr_attempt_active = False
        await self.notify(
            NotificationKind.PULL_REQUEST_FAILED,
            "error",
            "Pull request creation failed",
            message,
            job_id=job_id,
            slice_number=slice_number,
        )
