"""
Lifecycle event model for the stream orchestrator.

The ingest server reports each publishing connection through three events,
always in the order prePublish -> postPublish -> donePublish for a given
connection. The encoder process manager adds a fourth, EncoderExited, when
an FFmpeg process ends on its own.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class EventType(str, Enum):
    PRE_PUBLISH = "prePublish"
    POST_PUBLISH = "postPublish"
    DONE_PUBLISH = "donePublish"
    ENCODER_EXITED = "encoderExited"


class ConnectionState(str, Enum):
    """Per-connection state as seen by the orchestrator."""
    IDLE = "idle"
    PUBLISHING = "publishing"
    TRANSCODING = "transcoding"
    ENDED = "ended"


@dataclass(frozen=True)
class PrePublish:
    connection_id: str
    stream_key: str
    event_type: EventType = EventType.PRE_PUBLISH


@dataclass(frozen=True)
class PostPublish:
    connection_id: str
    stream_key: str
    event_type: EventType = EventType.POST_PUBLISH


@dataclass(frozen=True)
class DonePublish:
    connection_id: str
    # Informational only, sessions are looked up by connection_id
    stream_key: Optional[str] = None
    event_type: EventType = EventType.DONE_PUBLISH


@dataclass(frozen=True)
class EncoderExited:
    connection_id: str
    return_code: Optional[int]
    event_type: EventType = EventType.ENCODER_EXITED


LifecycleEvent = Union[PrePublish, PostPublish, DonePublish, EncoderExited]


def build_ingest_event(event: str, connection_id: str, stream_key: str) -> LifecycleEvent:
    """Map an ingest event name onto its event variant.

    Raises ValueError for names the ingest server is not expected to send.
    """
    try:
        event_type = EventType(event)
    except ValueError:
        raise ValueError(f"Unknown ingest event: {event}")

    if event_type == EventType.PRE_PUBLISH:
        return PrePublish(connection_id, stream_key)
    if event_type == EventType.POST_PUBLISH:
        return PostPublish(connection_id, stream_key)
    if event_type == EventType.DONE_PUBLISH:
        return DonePublish(connection_id, stream_key)
    raise ValueError(f"{event} cannot be sent by the ingest server")
