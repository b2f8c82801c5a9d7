"""Event type definitions for the execution tracking engine.

This module defines two families of events:

- Stream events arrive from the backend's push connection (SSE) and are
  merged into a job's timeline.
- Tracker events flow from the engine to its observers (the dashboard UI)
  through the EventBus. Every meaningful state change produces one.

It also defines the timeline entries that both the live merger and the
activity reconstruction produce.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class StreamEventType(StrEnum):
    """Event types delivered by the codegen push stream."""

    CHUNK = "chunk"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_END = "tool_call_end"
    END = "end"
    ERROR = "error"

    # Informational; not materialized in the timeline
    PROGRESS = "progress"
    MESSAGE = "message"


class StreamEvent(BaseModel):
    """A transient event from the push stream.

    Payload schemas by event type:

    CHUNK:
        - content: str - Incremental text

    TOOL_CALL_START:
        - tool: str - Tool label
        - call_id: Optional[str] - Identifier pairing start and end

    TOOL_CALL_END:
        - tool: str - Tool label
        - call_id: Optional[str] - Identifier pairing start and end
        - result: Any - Tool result (structured or plain)

    END / ERROR:
        - message: Optional[str]
    """

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = None

    @property
    def payload(self) -> dict[str, Any]:
        """Event payload, unwrapping a nested ``data`` envelope if present."""
        inner = self.data.get("data")
        if isinstance(inner, dict):
            return inner
        return self.data


class TimelineSource(StrEnum):
    """Where the entries of a timeline came from."""

    LIVE = "live"
    RECONSTRUCTED = "reconstructed"
    # Transcript persisted when a completed slice's job finished
    RESTORED = "restored"


class TimelineEntry(BaseModel):
    """A materialized, user-visible timeline entry.

    ``kind == "chunk"`` entries carry coalesced streamed text in ``content``.
    ``kind == "tool"`` entries describe one tool invocation, either running
    or done, with an optional formatted ``result``.
    """

    id: str
    kind: Literal["chunk", "tool"]
    content: str = ""
    label: str = ""
    call_id: str | None = None
    status: Literal["running", "done"] | None = None
    result: str | None = None
    detail: str | None = None


class Timeline(BaseModel):
    """A job's timeline together with its authoritative source.

    Exactly one source is authoritative at a time; the entries are never a
    mix of live and reconstructed records.
    """

    source: TimelineSource
    entries: list[TimelineEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries


class TrackerEventType(StrEnum):
    """Events published by the tracker to its observers.

    - Job state: snapshot, layer and timeline changes
    - Slice progression: activation, completion, run stop
    - Notifications: user-visible toasts from the dispatcher
    - Lifecycle: sentinel emitted when the observing session closes
    """

    SNAPSHOT_UPDATED = "snapshot_updated"
    LAYERS_UPDATED = "layers_updated"
    TIMELINE_UPDATED = "timeline_updated"

    SLICE_ACTIVATED = "slice_activated"
    SLICE_COMPLETED = "slice_completed"
    RUN_STOPPED = "run_stopped"

    NOTIFICATION = "notification"

    TRACKER_CLOSED = "tracker_closed"


class NotificationKind(StrEnum):
    """Kinds of user-visible notifications."""

    JOB_FAILED = "job_failed"
    JOB_COMPLETED_WITH_WARNINGS = "job_completed_with_warnings"
    LAYER_ADDED = "layer_added"
    PULL_REQUEST_CREATED = "pull_request_created"
    PULL_REQUEST_FAILED = "pull_request_failed"
    REQUEST_FAILED = "request_failed"


class TrackerEvent(BaseModel):
    """An event emitted by the tracker to its observers.

    Payload schemas by event type:

    SNAPSHOT_UPDATED:
        - snapshot: dict - The new job snapshot

    LAYERS_UPDATED:
        - layer_count: int - Number of cached layers

    TIMELINE_UPDATED:
        - source: str - "live", "reconstructed" or "restored"
        - entry_count: int

    SLICE_ACTIVATED:
        - restored: bool - Whether completed state was restored from cache

    SLICE_COMPLETED:
        - next_slice: Optional[int] - Slice the tracker will advance to

    NOTIFICATION:
        - kind: str - NotificationKind value
        - level: str - "success", "info", "warning" or "error"
        - title: str
        - message: Optional[str]
    """

    type: TrackerEventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    job_id: str | None = None
    slice_number: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
