from taxbot.events.event_system import (
    CancelAcknowledgedEvent,
    CycleCommittedEvent,
    CycleFailedEvent,
    CycleStartedEvent,
    Event,
    EventSystem,
    PayoutFailedEvent,
)

__all__ = [
    "CancelAcknowledgedEvent",
    "CycleCommittedEvent",
    "CycleFailedEvent",
    "CycleStartedEvent",
    "Event",
    "EventSystem",
    "PayoutFailedEvent",
]
