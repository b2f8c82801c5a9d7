"""Event system for the execution tracking engine.

This package provides the event infrastructure between the tracking engine
and the dashboard that observes it. The observer side is an async pub/sub
bus built on asyncio.Queue; the backend side is the push stream whose
events are merged into a job timeline.

Key Components:
    - StreamEvent / StreamEventType: Events arriving from the push stream
    - TimelineEntry / Timeline: Materialized, user-visible activity
    - TrackerEvent / TrackerEventType: State changes published to observers
    - EventBus: Async pub/sub implementation for tracker event distribution

Usage:
    >>> from events import TrackerEvent, TrackerEventType, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("plan_123")
    >>> await bus.publish(TrackerEvent(
    ...     type=TrackerEventType.SLICE_COMPLETED,
    ...     session_id="plan_123",
    ...     slice_number=2,
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    NotificationKind,
    StreamEvent,
    StreamEventType,
    Timeline,
    TimelineEntry,
    TimelineSource,
    TrackerEvent,
    TrackerEventType,
)

__all__ = [
    # Event types
    "NotificationKind",
    "StreamEvent",
    "StreamEventType",
    "Timeline",
    "TimelineEntry",
    "TimelineSource",
    "TrackerEvent",
    "TrackerEventType",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
