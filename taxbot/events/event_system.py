import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from loguru import logger

RECENT_EVENTS = 100


class Event:
    """Base event class for the event system."""

    def __init__(self, event_type: str, data: Dict[str, Any]):
        """
        Initialize a new event.

        Args:
            event_type: Type of event
            data: Event data
        """
        self.event_type = event_type
        self.data = data
        self.timestamp = time.time()

    def __str__(self) -> str:
        return f"Event(type={self.event_type}, data={self.data})"


class CycleStartedEvent(Event):
    """Event emitted when a reward cycle starts."""

    def __init__(self, sequence: int, retry_of: Optional[int] = None):
        super().__init__("cycle_started", {
            "sequence": sequence,
            "retry_of": retry_of
        })


class CycleCommittedEvent(Event):
    """Event emitted when every payout of a cycle is settled."""

    def __init__(self, sequence: int, swapped_amount: int, confirmed: int, failed: int, carried_amount: int):
        """
        Initialize a cycle committed event.

        Args:
            sequence: Cycle sequence number
            swapped_amount: Reward units the swap produced
            confirmed: Number of confirmed payouts
            failed: Number of failed payouts
            carried_amount: Reward units left for the next cycle
        """
        super().__init__("cycle_committed", {
            "sequence": sequence,
            "swapped_amount": swapped_amount,
            "confirmed": confirmed,
            "failed": failed,
            "carried_amount": carried_amount,
            "status": "committed"
        })


class CycleFailedEvent(Event):
    """Event emitted when a cycle is marked Failed."""

    def __init__(self, sequence: int, reason: str, stage: str):
        """
        Initialize a cycle failed event.

        Args:
            sequence: Cycle sequence number
            reason: Failure reason
            stage: Status the cycle was in when it failed
        """
        super().__init__("cycle_failed", {
            "sequence": sequence,
            "reason": reason,
            "stage": stage,
            "status": "failed"
        })


class PayoutFailedEvent(Event):
    """Event emitted when a payout has used all of its attempts."""

    def __init__(self, sequence: int, address: str, amount: int, error: Optional[str]):
        super().__init__("payout_failed", {
            "sequence": sequence,
            "address": address,
            "amount": amount,
            "error": error,
            "status": "failed"
        })


class CancelAcknowledgedEvent(Event):
    """Event emitted when a cancel request arrives after the swap was broadcast."""

    def __init__(self, sequence: int, status: str):
        super().__init__("cancel_acknowledged", {
            "sequence": sequence,
            "status": status
        })


class EventSystem:
    """
    System for subscribing to and publishing events.

    Events are queued by publish() and dispatched to subscribers by a
    background task, so a slow alert handler never holds up a cycle.
    """

    def __init__(self):
        """Initialize the event system."""
        self._subscribers: Dict[str, List[Callable[[Event], Awaitable[None]]]] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = False
        self._background_task = None
        # Most recent events only
        self.published: Deque[Event] = deque(maxlen=RECENT_EVENTS)

    async def subscribe(self, event_type: str, callback: Callable[[Event], Awaitable[None]]):
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            callback: Async callback function to call when event occurs
        """
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []

        self._subscribers[event_type].append(callback)
        logger.debug(f"Subscribed to {event_type} events")

    async def publish(self, event: Event):
        """
        Publish an event to subscribers.

        Args:
            event: Event to publish
        """
        self.published.append(event)
        await self._queue.put(event)
        logger.debug(f"Published {event.event_type} event")

    async def _dispatch(self, event: Event):
        subscribers = self._subscribers.get(event.event_type, [])
        if subscribers:
            results = await asyncio.gather(*(sub(event) for sub in subscribers), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Error processing {event.event_type} event: {str(result)}")

    async def _process_events(self):
        """Process events from the queue and dispatch to subscribers."""
        while self._running:
            try:
                event = await self._queue.get()
            except asyncio.CancelledError:
                logger.debug("Event processing task cancelled")
                break

            try:
                logger.debug(f"Processing {event.event_type} event")
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def drain(self):
        """
        Deliver every queued event.

        Dispatches inline when the background task is not running.
        """
        if self._running:
            await self._queue.join()
            return

        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def start(self):
        """Start the event processing task."""
        if self._running:
            return

        self._running = True
        self._background_task = asyncio.create_task(self._process_events())
        logger.info("Event system started")

    async def stop(self):
        """Stop the event processing task after delivering queued events."""
        if not self._running:
            return

        await self._queue.join()
        self._running = False
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass

        logger.info("Event system stopped")
