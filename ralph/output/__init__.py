"""Output module - loop events and their renderers."""

from ralph.output.events import Event, EventEmitter, EventRecorder, EventType, LoggingSubscriber

__all__ = ["Event", "EventEmitter", "EventRecorder", "EventType", "LoggingSubscriber"]
