"""Engine events: in-process bus and stream sink."""
from .bus import EngineEvent, EventBus, EventRecorder, EventType
from .kinesis import KinesisEventSink

__all__ = [
    "EngineEvent",
    "EventBus",
    "EventRecorder",
    "EventType",
    "KinesisEventSink",
]
