from __future__ import annotations

from dcpermit.core.event_stream import EventStream, StateSnapshot, StreamEvent

__all__ = [
    "EventStream",
    "StateSnapshot",
    "StreamEvent",
]
