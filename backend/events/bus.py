"""Async event bus for publishing tracker state to observers.

This module provides an EventBus class that delivers TrackerEvents from
the execution tracker to any number of observers (dashboard views, tests).

The bus supports:
- Multiple subscribers per observing session
- Async event delivery via asyncio.Queue
- Buffering of events published before the first subscriber connects
- Session close, which terminates every subscriber with a sentinel

All callers share one event loop, so the bus holds no locks.
"""

import asyncio
from collections import defaultdict

import structlog

from events.types import TrackerEvent, TrackerEventType

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus for tracker events.

    The EventBus manages subscriptions per observing session, so several
    views can follow the same tracker. Events are delivered via
    asyncio.Queue for non-blocking consumption.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("plan_123")
        >>> await bus.publish(TrackerEvent(
        ...     type=TrackerEventType.LAYERS_UPDATED,
        ...     session_id="plan_123",
        ...     data={"layer_count": 3},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("plan_123", queue)
        >>> await bus.close_session("plan_123")

    Attributes:
        _subscribers: Dict mapping session_id to list of subscriber queues
        _event_buffer: Dict mapping session_id to list of buffered events
        _event_history: Dict mapping session_id to recent events for replay
    """

    # Maximum number of events to retain per session for replay.
    MAX_HISTORY_PER_SESSION = 1000
    # Oldest buffered events are dropped once a session has no subscriber
    # for this many publishes.
    MAX_BUFFER_PER_SESSION = 1000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[TrackerEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[TrackerEvent]] = defaultdict(list)
        self._event_history: dict[str, list[TrackerEvent]] = defaultdict(list)
        logger.info("event_bus_initialized")

    def subscribe(self, session_id: str) -> asyncio.Queue[TrackerEvent]:
        """Subscribe to events for an observing session.

        If there are buffered events for this session (events that were
        published before any subscriber connected), they are delivered
        immediately to the new subscriber.

        Args:
            session_id: The session to subscribe to

        Returns:
            An asyncio.Queue that will receive TrackerEvent objects
        """
        queue: asyncio.Queue[TrackerEvent] = asyncio.Queue()
        self._subscribers[session_id].append(queue)

        buffered_events = self._event_buffer.pop(session_id, [])
        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=len(self._subscribers[session_id]),
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[TrackerEvent]) -> None:
        """Unsubscribe a queue from session events.

        If the queue is not registered, this is a no-op.
        """
        if session_id not in self._subscribers:
            return
        try:
            self._subscribers[session_id].remove(queue)
        except ValueError:
            logger.warning("unsubscribe_queue_not_found", session_id=session_id)
            return

        logger.info(
            "subscriber_removed",
            session_id=session_id,
            subscriber_count=len(self._subscribers[session_id]),
        )
        if not self._subscribers[session_id]:
            del self._subscribers[session_id]

    async def publish(self, event: TrackerEvent) -> None:
        """Publish an event to all subscribers for its session.

        If there are no subscribers, the event is buffered until a
        subscriber connects. Every event is also kept in a bounded
        per-session history.

        Args:
            event: The TrackerEvent to publish
        """
        if event.type != TrackerEventType.TRACKER_CLOSED:
            history = self._event_history[event.session_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_SESSION:
                del history[: len(history) - self.MAX_HISTORY_PER_SESSION]

        subscribers = list(self._subscribers.get(event.session_id, []))
        if not subscribers:
            buffer = self._event_buffer[event.session_id]
            buffer.append(event)
            if len(buffer) > self.MAX_BUFFER_PER_SESSION:
                del buffer[: len(buffer) - self.MAX_BUFFER_PER_SESSION]
            logger.debug(
                "event_buffered",
                session_id=event.session_id,
                event_type=event.type.value,
                buffer_size=len(buffer),
            )
            return

        # Queues are unbounded; put_nowait never blocks the publisher
        for queue in subscribers:
            queue.put_nowait(event)

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            job_id=event.job_id,
        )

    def get_event_history(self, session_id: str) -> list[TrackerEvent]:
        """Get the retained events for a session in chronological order."""
        return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Close a session and notify all subscribers.

        Puts a TRACKER_CLOSED sentinel into each subscriber queue so that
        consumers can leave their read loops, then removes all subscribers
        and clears buffered events. History is preserved.
        """
        queues_to_signal = self._subscribers.pop(session_id, [])
        buffer_count = len(self._event_buffer.pop(session_id, []))

        for queue in queues_to_signal:
            queue.put_nowait(
                TrackerEvent(
                    type=TrackerEventType.TRACKER_CLOSED,
                    session_id=session_id,
                    data={"reason": "tracker_closed"},
                )
            )

        if queues_to_signal or buffer_count:
            logger.info(
                "session_closed",
                session_id=session_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=buffer_count,
            )
        else:
            logger.debug("close_session_not_found", session_id=session_id)

    def get_subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        self._event_history.pop(session_id, None)


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    _event_bus = None
    logger.info("event_bus_reset")
