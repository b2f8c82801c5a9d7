"""Timeline materialization from live stream events or polled activity.

Two sources can describe what a job's agent is doing:

- live: events from the push stream, merged by TimelineMerger
- reconstructed: the ``agent_activity`` records of the polled snapshot

select_timeline() picks exactly one of them, so entries are never
duplicated or interleaved out of order.
"""

import json
from collections.abc import Sequence
from typing import Any

import structlog

from config import settings
from events.types import StreamEvent, StreamEventType, Timeline, TimelineEntry, TimelineSource
from models.schemas import AgentActivity

logger = structlog.get_logger(__name__)


def format_result(result: Any) -> str | None:
    """Render a tool result for display.

    Structured results are pretty-printed as JSON; anything else is shown
    in its literal string form.
    """
    if result is None:
        return None
    if isinstance(result, dict | list):
        try:
            return json.dumps(result, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(result)
    return str(result)


class TimelineMerger:
    """Fold stream events into an ordered list of timeline entries.

    Events must be applied in arrival order; chunk coalescing depends on it.

    - ``chunk`` text is appended to the last entry when that entry is a
      chunk, otherwise it starts a new chunk entry.
    - ``tool_call_start`` appends a running tool entry.
    - ``tool_call_end`` marks the matching running entry as done. Matching
      is by call id, falling back to the most recent running entry with
      the same label. An end with no match is ignored.

    Attributes:
        entries: The materialized entries, oldest first.
    """

    def __init__(self, entries: list[TimelineEntry] | None = None) -> None:
        self.entries: list[TimelineEntry] = list(entries or [])
        self._counter = len(self.entries)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def clear(self) -> None:
        self.entries = []

    def apply(self, event: StreamEvent) -> bool:
        """Apply one event.

        Returns:
            True if the entries changed.
        """
        payload = event.payload
        if event.type == StreamEventType.CHUNK:
            return self._apply_chunk(payload)
        if event.type == StreamEventType.TOOL_CALL_START:
            return self._apply_tool_start(payload)
        if event.type == StreamEventType.TOOL_CALL_END:
            return self._apply_tool_end(payload)
        return False

    def _apply_chunk(self, payload: dict[str, Any]) -> bool:
        content = payload.get("content")
        if content is None or content == "":
            return False
        text = str(content)
        if self.entries and self.entries[-1].kind == "chunk":
            self.entries[-1].content += text
        else:
            self.entries.append(
                TimelineEntry(id=self._next_id("chunk"), kind="chunk", content=text)
            )
        return True

    def _apply_tool_start(self, payload: dict[str, Any]) -> bool:
        label = str(payload.get("tool") or "tool")
        call_id = payload.get("call_id")
        entry_id = str(call_id) if call_id else self._next_id("tool")
        self.entries.append(
            TimelineEntry(
                id=entry_id,
                kind="tool",
                label=label,
                call_id=str(call_id) if call_id else None,
                status="running",
            )
        )
        return True

    def _find_running(self, call_id: str | None, label: str | None) -> TimelineEntry | None:
        running = [e for e in reversed(self.entries) if e.kind == "tool" and e.status == "running"]
        if call_id:
            for entry in running:
                if entry.call_id == call_id:
                    return entry
        if label:
            for entry in running:
                if entry.label == label:
                    return entry
        return None

    def _apply_tool_end(self, payload: dict[str, Any]) -> bool:
        call_id = payload.get("call_id")
        label = payload.get("tool")
        entry = self._find_running(
            str(call_id) if call_id else None,
            str(label) if label else None,
        )
        if entry is None:
            logger.debug("tool_call_end_unmatched", call_id=call_id, tool=label)
            return False
        entry.status = "done"
        entry.result = format_result(payload.get("result"))
        return True


def _preview_params(params: dict[str, Any] | str | None, limit: int) -> str:
    if params is None:
        return ""
    if isinstance(params, dict):
        text = ", ".join(f"{key}={value}" for key, value in params.items())
    else:
        text = str(params)
    text = " ".join(text.split())
    if len(text) > limit:
        return text[: max(limit - 3, 0)] + "..."
    return text


def _coordinate(activity: AgentActivity) -> str | None:
    parts = []
    if activity.phase is not None:
        parts.append(f"Phase {activity.phase}")
    if activity.task is not None:
        parts.append(f"Task {activity.task}")
    return ", ".join(parts) or None


def reconstruct_timeline(
    activity: Sequence[AgentActivity],
    *,
    preview_chars: int | None = None,
) -> list[TimelineEntry]:
    """Build one completed tool entry per polled activity record."""
    limit = preview_chars or settings.activity_preview_chars
    return [
        TimelineEntry(
            id=f"activity-{index}",
            kind="tool",
            label=record.tool,
            content=_preview_params(record.params, limit),
            status="done",
            detail=_coordinate(record),
        )
        for index, record in enumerate(activity)
    ]


def select_timeline(
    live_entries: Sequence[TimelineEntry],
    activity: Sequence[AgentActivity],
    *,
    preview_chars: int | None = None,
) -> Timeline:
    """Pick the authoritative timeline source.

    The live timeline wins whenever it has entries; otherwise the timeline
    is reconstructed from polled activity.
    """
    if live_entries:
        return Timeline(source=TimelineSource.LIVE, entries=list(live_entries))
    return Timeline(
        source=TimelineSource.RECONSTRUCTED,
        entries=reconstruct_timeline(activity, preview_chars=preview_chars),
    )
