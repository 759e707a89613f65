from __future__ import annotations

import logging
from collections import deque
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Mapping


_DEFAULT_HISTORY_LIMIT = 500


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True, slots=True)
class StreamEvent:
    sequence: int
    timestamp: str
    event_type: str
    source: str
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    sequence: int
    timestamp: str
    state_key: str
    data: dict[str, Any]


class EventStream:
    """Bounded, thread-safe record of lifecycle events with subscribers."""

    def __init__(
        self,
        *,
        history_limit: int = _DEFAULT_HISTORY_LIMIT,
        logger: logging.Logger | None = None,
    ) -> None:
        limit = max(1, int(history_limit))
        self._sequence = 0
        self._events: deque[StreamEvent] = deque(maxlen=limit)
        self._snapshots: dict[str, StateSnapshot] = {}
        self._subscribers: list[Callable[[StreamEvent], None]] = []
        self._lock = RLock()
        self._logger = logger or logging.getLogger("dcpermit.events")

    def record(
        self,
        event_type: str,
        *,
        source: str,
        payload: Mapping[str, Any] | None = None,
    ) -> StreamEvent:
        with self._lock:
            self._sequence += 1
            event = StreamEvent(
                sequence=self._sequence,
                timestamp=_utc_iso_now(),
                event_type=event_type,
                source=source,
                payload=deepcopy(dict(payload or {})),
            )
            self._events.append(event)
            subscribers = tuple(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:
                self._logger.warning("Event subscriber failed for %s: %s", event_type, exc)
        return event

    def snapshot(self, state_key: str, data: Mapping[str, Any] | None = None) -> StateSnapshot:
        """Store the latest state for ``state_key``, replacing the previous one."""
        with self._lock:
            snapshot = StateSnapshot(
                sequence=self._sequence,
                timestamp=_utc_iso_now(),
                state_key=state_key,
                data=deepcopy(dict(data or {})),
            )
            self._snapshots[state_key] = snapshot
            return snapshot

    def latest_snapshot(self, state_key: str) -> StateSnapshot | None:
        with self._lock:
            return self._snapshots.get(state_key)

    def tail(self, *, limit: int = 100, event_type: str = "") -> tuple[StreamEvent, ...]:
        safe_limit = max(1, int(limit))
        with self._lock:
            events = [
                event
                for event in self._events
                if not event_type or event.event_type == event_type
            ]
        return tuple(events[-safe_limit:])

    def subscribe(self, callback: Callable[[StreamEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(callback)
                except ValueError:
                    return

        return _unsubscribe
