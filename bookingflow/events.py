"""Event emitter and subscriber system — the side-effect sink of the booking core.

Async pub/sub for SystemEvents. Every committed booking change emits events
that are consumed by the notification log, analytics and email dispatchers.
Emitting only enqueues, so a slow or failing subscriber can never delay or
fail the transition that produced the event.

Usage:
    # Emit an event from anywhere:
    from bookingflow.events import emit

    await emit(SystemEvent(
        event_type=EventType.BOOKING_CONFIRMED,
        booking_id=booking.booking_id,
        data={"event": "payment_succeeded"},
    ))

    # Register a subscriber at startup:
    from bookingflow.events import subscribe

    subscribe(my_handler)  # async def my_handler(event: SystemEvent) -> None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from bookingflow.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]

# ── Internal state ───────────────────────────────────────────────────

_subscribers: list[EventHandler] = []
_type_subscribers: dict[EventType, list[EventHandler]] = {}
_queue: asyncio.Queue[SystemEvent] | None = None
_worker_task: asyncio.Task[None] | None = None


# ── Public API ───────────────────────────────────────────────────────


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    """Register an event handler.

    Args:
        handler: Async function that accepts a SystemEvent.
        event_types: If provided, handler only receives these event types.
                     If None, handler receives ALL events.
    """
    if event_types is None:
        _subscribers.append(handler)
        logger.info("Registered global event subscriber: %s", handler.__name__)
    else:
        for et in event_types:
            _type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for types: %s",
            handler.__name__,
            [t.value for t in event_types],
        )


async def emit(event: SystemEvent) -> None:
    """Publish a SystemEvent to all subscribers.

    Events are placed on an async queue and processed by a background worker
    so the emitter is never blocked by slow subscribers.
    """
    global _queue
    if _queue is None:
        _queue = asyncio.Queue()
        _ensure_worker()

    _queue.put_nowait(event)
    logger.debug("Event emitted: %s (booking=%s)", event.event_type.value, event.booking_id)


# ── Background worker ────────────────────────────────────────────────
# One worker drains the queue, so the events of a booking reach subscribers
# in the order their transitions were committed.


def _ensure_worker() -> None:
    """Start the background event worker if not already running."""
    global _worker_task
    if _worker_task is None or _worker_task.done():
        _worker_task = asyncio.create_task(_event_worker())
        logger.info("Event worker started")


async def _event_worker() -> None:
    """Drain the queue until cancelled."""
    queue = _queue
    if queue is None:
        return

    while True:
        try:
            event = await queue.get()
        except asyncio.CancelledError:
            logger.info("Event worker shutting down")
            break
        try:
            await _dispatch(event)
        except Exception:
            logger.exception("Error dispatching %s (booking=%s)", event.event_type.value, event.booking_id)
        finally:
            queue.task_done()


def _handlers_for(event: SystemEvent) -> list[EventHandler]:
    return [*_subscribers, *_type_subscribers.get(event.event_type, ())]


async def _dispatch(event: SystemEvent) -> None:
    """Run every matching subscriber concurrently; one failure never reaches the others."""
    handlers = _handlers_for(event)
    if not handlers:
        return

    results = await asyncio.gather(*(handler(event) for handler in handlers), return_exceptions=True)
    for handler, result in zip(handlers, results):
        if isinstance(result, Exception):
            logger.error(
                "Subscriber %s failed for %s (booking=%s): %s",
                getattr(handler, "__name__", repr(handler)),
                event.event_type.value,
                event.booking_id,
                result,
            )


# ── Lifecycle ────────────────────────────────────────────────────────


async def start_event_system() -> None:
    """Initialize the event system. Call during FastAPI lifespan startup."""
    global _queue
    if _queue is None:
        _queue = asyncio.Queue()
    _ensure_worker()
    logger.info(
        "Event system started with %d global + %d typed subscribers",
        len(_subscribers),
        sum(len(v) for v in _type_subscribers.values()),
    )


async def stop_event_system() -> None:
    """Gracefully stop the event system. Call during FastAPI lifespan shutdown."""
    global _worker_task, _queue

    if _queue is not None:
        # Drain remaining events
        await _queue.join()

    if _worker_task is not None and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass

    _worker_task = None
    _queue = None
    logger.info("Event system stopped")
