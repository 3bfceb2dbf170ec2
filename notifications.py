from __future__ import annotations

import json
import logging
from collections import deque
from threading import RLock
from typing import Any, Callable

from device_clock import Clock

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class NotificationEmitter:
    """
    Builds `{type, time_ms, ...}` events and pushes them to every connected sink.

    Delivery is best effort: a sink that raises is logged and skipped, and a
    client that is not connected simply misses the event. The last
    `buffer_size` events are kept with a sequence number for polling clients.
    """

    def __init__(self, clock: Clock, *, buffer_size: int = 100) -> None:
        self._clock = clock
        self._lock = RLock()
        self._sinks: list[EventSink] = []
        self._recent: deque[tuple[int, dict[str, Any]]] = deque(maxlen=max(1, int(buffer_size)))
        self._seq = 0

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        event: dict[str, Any] = {"type": event_type}
        event.update({k: v for k, v in fields.items() if v is not None})
        event["time_ms"] = self._clock.now_ms()

        with self._lock:
            self._seq += 1
            self._recent.append((self._seq, event))
            sinks = list(self._sinks)

        logger.info("NOTIFY -> %s", encode_event(event).decode("utf-8"))
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                logger.warning("Notification sink %r failed; dropping event %s.", sink, event_type, exc_info=True)
        return event

    def emit_detail(self, event_type: str, detail: str | None = None) -> dict[str, Any]:
        return self.emit(event_type, detail=detail)

    def recent(self, since: int = 0, limit: int | None = None) -> dict[str, Any]:
        with self._lock:
            items = [{"seq": seq, **event} for seq, event in self._recent if seq > since]
            last_seq = self._seq
        if limit is not None:
            items = items[-max(0, int(limit)):] if limit else []
        return {"last_seq": last_seq, "events": items}
