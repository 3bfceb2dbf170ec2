from __future__ import annotations

import logging
import time
from threading import Event, Lock, Thread, current_thread
from typing import Any

import serial

from device_config import DeviceConfig, configure_logging
from notifications import encode_event
from smartmed_device import SmartMedDevice

logger = logging.getLogger(__name__)


class SerialCommandLink:
    """
    Command channel over a serial port (USB CDC or a BLE-UART bridge).

    Inbound: one JSON command per line. Outbound: every notification the
    device emits, one compact JSON object per line. The link counts as a
    connected client from `start()` until `stop()` or a port error.
    """

    def __init__(
        self,
        device: SmartMedDevice,
        port: str,
        baud: int = 115200,
        *,
        timeout_s: float = 0.2,
        connection: Any = None,
    ) -> None:
        self._device = device
        self._port = port
        self._baud = baud
        self._timeout_s = max(0.05, float(timeout_s))
        self._serial = connection
        self._write_lock = Lock()
        self._stop_event = Event()
        self._thread: Thread | None = None
        self.connected = False

    def start(self) -> None:
        if self.connected:
            return
        if self._serial is None:
            self._serial = serial.Serial(self._port, self._baud, timeout=self._timeout_s)
        try:
            self._serial.reset_input_buffer()
        except (serial.SerialException, OSError):
            pass
        self.connected = True
        self._device.emitter.add_sink(self.send_event)
        self._device.on_connect()
        self._stop_event.clear()
        self._thread = Thread(target=self._read_loop, name=f"smartmed-serial-{self._port}", daemon=True)
        self._thread.start()
        logger.info("Serial command link open on %s @ %s baud.", self._port, self._baud)

    def stop(self, timeout_s: float | None = 1.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not current_thread():
            thread.join(timeout_s)
        self._disconnect()

    def process_line(self, raw: bytes) -> list[dict[str, Any]]:
        line = raw.strip()
        if not line:
            return []
        # Replies go out through send_event via the emitter fan-out.
        return self._device.on_command(line)

    def send_event(self, event: dict[str, Any]) -> None:
        if not self.connected or self._serial is None:
            return
        with self._write_lock:
            self._serial.write(encode_event(event) + b"\n")
            self._serial.flush()

    def _read_loop(self) -> None:
        while not self._stop_event.is_set():
            conn = self._serial
            if conn is None:
                return
            try:
                raw = conn.readline()
            except (serial.SerialException, OSError) as exc:
                logger.error("Serial link %s lost: %s", self._port, exc)
                self._disconnect()
                return
            if raw:
                self.process_line(raw)

    def _disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self._device.emitter.remove_sink(self.send_event)
        self._device.on_disconnect()
        with self._write_lock:
            if self._serial is not None:
                try:
                    self._serial.close()
                except (serial.SerialException, OSError):
                    pass
                self._serial = None


if __name__ == "__main__":
    config = DeviceConfig.from_env()
    configure_logging(config.log_level)
    if not config.cmd_port:
        raise SystemExit("SMARTMED_CMD_PORT is not set.")

    smartmed = SmartMedDevice(config)
    smartmed.start()
    link = SerialCommandLink(smartmed, config.cmd_port, config.cmd_baud)
    link.start()
    try:
        while link.connected:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        link.stop()
        smartmed.stop(timeout_s=2.0)
