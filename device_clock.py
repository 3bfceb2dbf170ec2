from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int: ...

    def sleep_ms(self, duration_ms: int) -> None: ...


class MonotonicClock:
    """
    Device-local time in milliseconds since the clock was created.
    Mirrors a microcontroller's millis(): never jumps, unrelated to wall time.
    """

    def __init__(self) -> None:
        self._origin = time.monotonic()

    def now_ms(self) -> int:
        return int((time.monotonic() - self._origin) * 1000)

    def sleep_ms(self, duration_ms: int) -> None:
        if duration_ms > 0:
            time.sleep(duration_ms / 1000.0)
