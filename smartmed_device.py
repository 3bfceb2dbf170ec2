from __future__ import annotations

import logging
from threading import Event, RLock, Thread
from typing import Any, Mapping

from command_interpreter import CommandInterpreter
from device_clock import Clock, MonotonicClock
from device_config import DeviceConfig
from dispense_machine import DispenseTiming, DispenseVerifyMachine
from dispenser_hardware import DispenserHardware, SimulatedDispenserHardware, UartDispenserHardware
from notifications import NotificationEmitter
from reminder_repository import ReminderRepository, ReminderStatus
from reminder_scheduler import ReminderScheduler
from slot_store import SlotStore

logger = logging.getLogger(__name__)


def build_hardware(config: DeviceConfig) -> DispenserHardware:
    if config.hardware == "uart":
        return UartDispenserHardware(config.hw_port, config.hw_baud, timeout_s=config.hw_timeout_s)
    return SimulatedDispenserHardware()


class SmartMedDevice:
    """
    Central controller for the dispenser: one store, one repository, one
    scheduler thread, and any number of command transports.

    Transports call `on_connect` / `on_disconnect` / `on_command` from their
    own threads. All reminder mutations funnel through the repository
    transaction lock, so the scheduler and the transports never interleave a
    read-modify-write of the reminders slot.
    """

    def __init__(
        self,
        config: DeviceConfig | None = None,
        *,
        hardware: DispenserHardware | None = None,
        clock: Clock | None = None,
        timing: DispenseTiming | None = None,
    ) -> None:
        self.config = config or DeviceConfig()
        self.clock = clock or MonotonicClock()
        self.hardware = hardware or build_hardware(self.config)

        self.store = SlotStore(self.config.data_dir)
        self.repository = ReminderRepository(self.store)
        self.emitter = NotificationEmitter(self.clock, buffer_size=self.config.event_buffer)

        if timing is None:
            timing = DispenseTiming(
                max_bursts=self.config.max_bursts,
                hand_cycles=self.config.hand_cycles,
                hand_cycle_ms=self.config.hand_cycle_ms,
            )
        self.machine = DispenseVerifyMachine(self.hardware, self.repository, self.emitter, self.clock, timing)
        self.scheduler = ReminderScheduler(
            self.repository,
            self.machine,
            self.emitter,
            self.clock,
            tick_interval_ms=self.config.tick_interval_ms,
        )
        self.interpreter = CommandInterpreter(
            self.repository,
            self.emitter,
            self.clock,
            on_manual_start=self.scheduler.request_start,
        )

        self._lock = RLock()
        self._connected_clients = 0
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._started = False

    def start(self, *, run_scheduler: bool = True) -> None:
        with self._lock:
            if self._started:
                return
            self.store.initialize()
            self.hardware.set_failure_indicator(False)
            self.hardware.show_text("SmartMed", "Ready...")

            stale = [r.id for r in self.repository.load_reminders() if r.status == ReminderStatus.RUNNING]
            if stale:
                logger.warning(
                    "Reminders left running by a previous boot: %s; dispensing them again.", ", ".join(stale)
                )
                for reminder_id in stale:
                    self.scheduler.request_start(reminder_id)

            self._started = True
            self.emitter.emit_detail("ready")
            if run_scheduler:
                self._stop_event.clear()
                self._thread = Thread(
                    target=self.scheduler.run_forever,
                    args=(self._stop_event,),
                    name="smartmed-scheduler",
                    daemon=True,
                )
                self._thread.start()

    def stop(self, timeout_s: float | None = None) -> None:
        with self._lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._started = False
        if thread is not None:
            thread.join(timeout_s)

    def on_connect(self) -> None:
        with self._lock:
            self._connected_clients += 1
        logger.info("Client connected.")
        self.emitter.emit_detail("client_connected")

    def on_disconnect(self) -> None:
        with self._lock:
            self._connected_clients = max(0, self._connected_clients - 1)
        logger.info("Client disconnected.")
        self.emitter.emit_detail("client_disconnected")

    def on_command(self, data: bytes | str | Mapping[str, Any]) -> list[dict[str, Any]]:
        return self.interpreter.handle(data)

    def status(self) -> dict[str, Any]:
        reminders = self.repository.load_reminders()
        counts = {status.value: 0 for status in ReminderStatus}
        for reminder in reminders:
            counts[reminder.status.value] += 1
        with self._lock:
            connected = self._connected_clients
            running = self._thread is not None and self._thread.is_alive()
        return {
            "time_ms": self.clock.now_ms(),
            "started": self._started,
            "scheduler_running": running,
            "connected_clients": connected,
            "hardware": type(self.hardware).__name__,
            "data_dir": str(self.config.data_dir),
            "reminder_count": len(reminders),
            "reminders_by_status": counts,
            "history_count": len(self.repository.load_history()),
            "scheduler": self.scheduler.snapshot(),
            "commands": self.interpreter.commands,
        }
