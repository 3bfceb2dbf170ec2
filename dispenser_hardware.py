from __future__ import annotations

import json
import logging
from collections import deque
from threading import RLock
from typing import Any, Protocol

import serial

logger = logging.getLogger(__name__)

DISPLAY_COLUMNS = 16


def fit_display_line(text: Any) -> str:
    return str(text or "")[:DISPLAY_COLUMNS]


class DispenserHardware(Protocol):
    """Capabilities the dispense/verify cycle needs from the device."""

    def actuate_dispense_pulse(self, duration_ms: int) -> None: ...

    def read_dispense_sensor(self) -> bool: ...

    def read_hand_sensor(self) -> bool: ...

    def sound_cue(self, on: bool) -> None: ...

    def set_failure_indicator(self, on: bool) -> None: ...

    def show_text(self, line1: str, line2: str = "") -> None: ...


class UartDispenserHardware:
    """
    Motor, IR sensors, buzzer, LED and 16x2 display behind a co-processor on a
    USB UART. One JSON object per line in each direction:

      -> {"op": "pulse", "ms": 50}                 <- {"ok": true}
      -> {"op": "read", "sensor": "dispense"}      <- {"ok": true, "value": false}
      -> {"op": "buzzer", "on": true}              <- {"ok": true}
      -> {"op": "led", "on": true}                 <- {"ok": true}
      -> {"op": "lcd", "lines": ["Taken", ""]}     <- {"ok": true}

    A port that cannot be opened, a missing reply or a malformed reply is
    logged; sensor reads then count as "not detected" so the bounded retry loops still terminate.
    """

    def __init__(
        self,
        port: str = "/dev/ttyUSB0",
        baud: int = 115200,
        *,
        timeout_s: float = 0.5,
        connection: Any = None,
    ) -> None:
        self._port = port
        self._baud = baud
        self._timeout_s = max(0.05, float(timeout_s))
        self._serial = connection
        self._lock = RLock()
        self.last_result: dict[str, Any] = {}

    def open(self) -> None:
        with self._lock:
            if self._serial is None:
                self._serial = serial.Serial(self._port, self._baud, timeout=self._timeout_s)
            try:
                self._serial.reset_input_buffer()
                self._serial.reset_output_buffer()
            except (serial.SerialException, OSError):
                pass

    def close(self) -> None:
        with self._lock:
            if self._serial is not None:
                try:
                    self._serial.close()
                finally:
                    self._serial = None

    def actuate_dispense_pulse(self, duration_ms: int) -> None:
        self._request({"op": "pulse", "ms": int(duration_ms)})

    def read_dispense_sensor(self) -> bool:
        return self._read_sensor("dispense")

    def read_hand_sensor(self) -> bool:
        return self._read_sensor("hand")

    def sound_cue(self, on: bool) -> None:
        self._request({"op": "buzzer", "on": bool(on)})

    def set_failure_indicator(self, on: bool) -> None:
        self._request({"op": "led", "on": bool(on)})

    def show_text(self, line1: str, line2: str = "") -> None:
        self._request({"op": "lcd", "lines": [fit_display_line(line1), fit_display_line(line2)]})

    def _read_sensor(self, sensor: str) -> bool:
        reply = self._request({"op": "read", "sensor": sensor})
        return bool(reply.get("value", False))

    def _request(self, command: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            try:
                if self._serial is None:
                    self.open()
                self._serial.write((json.dumps(command) + "\n").encode("utf-8"))
                self._serial.flush()
                raw = self._serial.readline()
            except (serial.SerialException, OSError) as exc:
                logger.warning("UART %s failed for %s: %s", self._port, command.get("op"), exc)
                self.last_result = {"ok": False, "status": "UART_ERROR", "message": str(exc)}
                return self.last_result

        if not raw:
            logger.warning("No UART reply within %.2fs for %s.", self._timeout_s, command.get("op"))
            self.last_result = {"ok": False, "status": "TIMEOUT"}
            return self.last_result

        text = raw.decode("utf-8", errors="replace").strip()
        try:
            reply = json.loads(text)
        except json.JSONDecodeError:
            reply = None
        if not isinstance(reply, dict):
            logger.warning("Malformed UART reply for %s: %r", command.get("op"), text)
            self.last_result = {"ok": False, "status": "BAD_REPLY", "raw": text}
            return self.last_result
        self.last_result = reply
        return reply


class SimulatedDispenserHardware:
    """
    Stand-in for bench runs without the co-processor.

    The dispense sensor trips after `drop_after_pulses` pulses and the hand
    sensor after `hand_after_reads` reads; `None` means never.
    """

    def __init__(self, *, drop_after_pulses: int | None = 1, hand_after_reads: int | None = 3) -> None:
        self.drop_after_pulses = drop_after_pulses
        self.hand_after_reads = hand_after_reads
        self.pulses = 0
        self.hand_reads = 0
        self.cue_on = False
        self.failure_indicator = False
        self.display: tuple[str, str] = ("", "")
        self.calls: deque[tuple[str, Any]] = deque(maxlen=500)

    def actuate_dispense_pulse(self, duration_ms: int) -> None:
        self.pulses += 1
        self.calls.append(("pulse", duration_ms))

    def read_dispense_sensor(self) -> bool:
        if self.drop_after_pulses is None:
            return False
        detected = self.pulses >= self.drop_after_pulses
        if detected:
            self.pulses = 0
        return detected

    def read_hand_sensor(self) -> bool:
        self.hand_reads += 1
        if self.hand_after_reads is None:
            return False
        detected = self.hand_reads >= self.hand_after_reads
        if detected:
            self.hand_reads = 0
        return detected

    def sound_cue(self, on: bool) -> None:
        self.cue_on = bool(on)
        self.calls.append(("cue", self.cue_on))

    def set_failure_indicator(self, on: bool) -> None:
        self.failure_indicator = bool(on)
        self.calls.append(("led", self.failure_indicator))

    def show_text(self, line1: str, line2: str = "") -> None:
        self.display = (fit_display_line(line1), fit_display_line(line2))
        self.calls.append(("lcd", self.display))
        logger.debug("LCD | %s | %s", *self.display)
