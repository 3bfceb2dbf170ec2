from __future__ import annotations

import logging
from collections import deque
from threading import Event, Lock
from typing import Any

from device_clock import Clock
from dispense_machine import DispenseOutcome, DispenseVerifyMachine
from notifications import NotificationEmitter
from reminder_repository import Reminder, ReminderRepository, ReminderStatus
from slot_store import StoreFault

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """
    Rate-limited scan of the reminders slot.

    Each qualifying tick walks the reminders in stored order and, for every
    pending reminder whose `dueAtLocalMs` has passed, marks it running,
    persists, announces it and runs the full dispense/verify cycle before
    looking at the next one. Reminders without `dueAtLocalMs` never fire.
    """

    def __init__(
        self,
        repository: ReminderRepository,
        machine: DispenseVerifyMachine,
        emitter: NotificationEmitter,
        clock: Clock,
        *,
        tick_interval_ms: int = 1500,
        loop_idle_ms: int = 10,
    ) -> None:
        self._repository = repository
        self._machine = machine
        self._emitter = emitter
        self._clock = clock
        self.tick_interval_ms = max(0, int(tick_interval_ms))
        self.loop_idle_ms = max(1, int(loop_idle_ms))

        self._last_tick_ms: int | None = None
        self._manual_starts: deque[str] = deque()
        self._queue_lock = Lock()

        self.ticks = 0
        self.dispensed = 0
        self.last_outcome: DispenseOutcome | None = None
        self.last_error = ""

    def request_start(self, reminder_id: str) -> None:
        with self._queue_lock:
            if reminder_id not in self._manual_starts:
                self._manual_starts.append(reminder_id)

    def tick(self) -> int:
        now = self._clock.now_ms()
        if self._last_tick_ms is not None and now - self._last_tick_ms < self.tick_interval_ms:
            return 0
        self._last_tick_ms = now
        self.ticks += 1

        dispensed = 0
        for reminder_id in self._drain_manual_starts():
            reminder = self._claim_manual(reminder_id)
            if reminder is not None:
                self._dispense(reminder)
                dispensed += 1

        for reminder_id in self._candidate_ids():
            reminder = self._claim_due(reminder_id)
            if reminder is not None:
                self._dispense(reminder)
                dispensed += 1
        return dispensed

    def run_forever(self, stop_event: Event) -> None:
        logger.info("Scheduler loop started (tick every %sms).", self.tick_interval_ms)
        while not stop_event.is_set():
            try:
                self.tick()
            except StoreFault as exc:
                self.last_error = str(exc)
                logger.error("Scheduler tick aborted by store fault: %s", exc)
            except Exception as exc:
                self.last_error = f"{type(exc).__name__}: {exc}"
                logger.exception("Scheduler tick failed; continuing.")
            stop_event.wait(self.loop_idle_ms / 1000.0)
        logger.info("Scheduler loop stopped.")

    def pending_manual_starts(self) -> list[str]:
        with self._queue_lock:
            return list(self._manual_starts)

    def snapshot(self) -> dict[str, Any]:
        last = self.last_outcome
        return {
            "tick_interval_ms": self.tick_interval_ms,
            "ticks": self.ticks,
            "dispensed": self.dispensed,
            "machine_state": self._machine.state.value,
            "manual_starts": self.pending_manual_starts(),
            "last_outcome": None if last is None else {
                "id": last.reminder_id,
                "state": last.state.value,
                "result": last.result.value,
                "bursts": last.bursts,
                "hand_cycles": last.hand_cycles,
            },
            "last_error": self.last_error,
        }

    def _drain_manual_starts(self) -> list[str]:
        with self._queue_lock:
            ids = list(self._manual_starts)
            self._manual_starts.clear()
        return ids

    def _candidate_ids(self) -> list[str]:
        return [
            r.id
            for r in self._repository.load_reminders()
            if r.status == ReminderStatus.PENDING and r.due_at_local_ms is not None
        ]

    def _claim_due(self, reminder_id: str) -> Reminder | None:
        with self._repository.transaction() as repo:
            reminders = repo.load_reminders()
            reminder = repo.find(reminders, reminder_id)
            # Re-checked under the lock: a command may have canceled or deleted it.
            if reminder is None or not reminder.is_due(self._clock.now_ms()):
                return None
            reminder.transition(ReminderStatus.RUNNING)
            repo.save_reminders(reminders)
        self._announce(reminder)
        return reminder

    def _claim_manual(self, reminder_id: str) -> Reminder | None:
        reminder = self._repository.get_reminder(reminder_id)
        if reminder is None or reminder.status != ReminderStatus.RUNNING:
            logger.info("Manual start %s skipped; reminder no longer running.", reminder_id)
            return None
        self._announce(reminder)
        return reminder

    def _announce(self, reminder: Reminder) -> None:
        self._emitter.emit("reminder_started", id=reminder.id, patient=reminder.patient, med=reminder.med)

    def _dispense(self, reminder: Reminder) -> None:
        outcome = self._machine.run(reminder)
        self.last_outcome = outcome
        self.dispensed += 1
        logger.info(
            "Reminder %s finished %s (bursts=%s, hand_cycles=%s).",
            reminder.id,
            outcome.state.value,
            outcome.bursts,
            outcome.hand_cycles,
        )
