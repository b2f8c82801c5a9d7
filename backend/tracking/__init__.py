"""Execution tracking components.

Each component owns one piece of the observing session's state:

- StatusPoller: the job snapshot
- LayerFetcher: the cached layer hierarchy
- LiveStreamConnection / TimelineMerger: the live timeline
- CompletionMachine: slice completion and auto-advance
- NotificationDispatcher: deduplicated user notifications
- SliceRegistry: per-slice working state
"""

from tracking.cancellation import CancellationToken
from tracking.completion import CompletionMachine, layers_complete
from tracking.layers import LayerFetcher, layers_differ, merge_layers, should_fetch
from tracking.notifications import NotificationDispatcher
from tracking.poller import StatusPoller, main_polling_finished, pr_polling_finished
from tracking.registry import SliceRecord, SliceRegistry, SliceState
from tracking.stream import LiveStreamConnection
from tracking.timeline import (
    TimelineMerger,
    format_result,
    reconstruct_timeline,
    select_timeline,
)

__all__ = [
    "CancellationToken",
    "CompletionMachine",
    "LayerFetcher",
    "LiveStreamConnection",
    "NotificationDispatcher",
    "SliceRecord",
    "SliceRegistry",
    "SliceState",
    "StatusPoller",
    "TimelineMerger",
    "format_result",
    "layers_complete",
    "layers_differ",
    "main_polling_finished",
    "merge_layers",
    "pr_polling_finished",
    "reconstruct_timeline",
    "select_timeline",
    "should_fetch",
]
