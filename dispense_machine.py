from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from device_clock import Clock
from dispenser_hardware import DispenserHardware
from notifications import NotificationEmitter
from reminder_repository import (
    HistoryEntry,
    HistoryResult,
    InvalidTransition,
    Reminder,
    ReminderRepository,
    ReminderStatus,
)
from slot_store import StoreFault

logger = logging.getLogger(__name__)


class DispenseState(str, Enum):
    IDLE = "IDLE"
    DISPENSING = "DISPENSING"
    DROPPED = "DROPPED"
    DISPENSE_FAILED = "DISPENSE_FAILED"
    HAND_CHECKING = "HAND_CHECKING"
    TAKEN = "TAKEN"
    MISSED = "MISSED"
    DONE = "DONE"


@dataclass
class DispenseTiming:
    pulse_ms: int = 50
    post_pulse_window_ms: int = 30
    post_pulse_poll_ms: int = 5
    pause_ms: int = 150
    pause_poll_ms: int = 10
    max_bursts: int = 20

    hand_cycles: int = 2
    hand_cycle_ms: int = 30000
    cue_on_ms: int = 300
    cue_off_ms: int = 700
    hand_poll_ms: int = 50

    fail_settle_ms: int = 1500
    outcome_settle_ms: int = 1200


@dataclass
class DispenseOutcome:
    reminder_id: str
    state: DispenseState
    result: HistoryResult
    bursts: int
    hand_cycles: int
    history: HistoryEntry
    transitions: list[DispenseState] = field(default_factory=list)


class DispenseVerifyMachine:
    """
    Drives one reminder through dispense -> drop check -> hand check.

    Blocks the calling thread for the whole bounded cycle. The repository
    lock is only taken for the terminal write, so commands arriving during
    the physical wait are applied and kept.
    """

    def __init__(
        self,
        hardware: DispenserHardware,
        repository: ReminderRepository,
        emitter: NotificationEmitter,
        clock: Clock,
        timing: DispenseTiming | None = None,
    ) -> None:
        self._hw = hardware
        self._repository = repository
        self._emitter = emitter
        self._clock = clock
        self.timing = timing or DispenseTiming()
        self._state = DispenseState.IDLE
        self._transitions: list[DispenseState] = []
        self._recorded: HistoryEntry | None = None

    @property
    def state(self) -> DispenseState:
        return self._state

    def run(self, reminder: Reminder) -> DispenseOutcome:
        try:
            return self._cycle(reminder)
        except StoreFault:
            raise
        except Exception:
            logger.exception("Reminder %s: dispense cycle aborted by a hardware fault.", reminder.id)
            return self._abort(reminder)
        finally:
            if self._state != DispenseState.IDLE:
                self._transition(DispenseState.IDLE)

    def _cycle(self, reminder: Reminder) -> DispenseOutcome:
        self._transitions = []
        self._recorded = None
        self._transition(DispenseState.DISPENSING)
        self._hw.show_text("Dispensing...", reminder.med)
        self._emitter.emit("dispense_attempt", id=reminder.id)

        dropped, bursts = self._dispense()
        if not dropped:
            self._transition(DispenseState.DISPENSE_FAILED)
            logger.warning("Reminder %s: no pill detected after %s bursts.", reminder.id, bursts)
            return self._finish(
                reminder,
                DispenseState.DISPENSE_FAILED,
                HistoryResult.MISSED,
                bursts=bursts,
                hand_cycles=0,
                detail="no_pill",
                display="DROP FAIL",
                settle_ms=self.timing.fail_settle_ms,
            )

        self._transition(DispenseState.DROPPED)
        self._emitter.emit("dispensed", id=reminder.id, bursts=bursts)

        self._transition(DispenseState.HAND_CHECKING)
        self._hw.show_text("Check hand...", reminder.med)
        taken, cycles = self._wait_for_hand()
        if taken:
            self._transition(DispenseState.TAKEN)
            return self._finish(
                reminder,
                DispenseState.TAKEN,
                HistoryResult.TAKEN,
                bursts=bursts,
                hand_cycles=cycles,
                detail=None,
                display="Taken",
                settle_ms=self.timing.outcome_settle_ms,
            )

        self._transition(DispenseState.MISSED)
        return self._finish(
            reminder,
            DispenseState.MISSED,
            HistoryResult.MISSED,
            bursts=bursts,
            hand_cycles=cycles,
            detail="not_taken",
            display="MISSED",
            settle_ms=self.timing.outcome_settle_ms,
        )

    def _dispense(self) -> tuple[bool, int]:
        t = self.timing
        read = self._hw.read_dispense_sensor
        for burst in range(1, t.max_bursts + 1):
            self._hw.actuate_dispense_pulse(t.pulse_ms)
            if self._poll(read, t.post_pulse_window_ms, t.post_pulse_poll_ms):
                return True, burst
            if self._poll(read, t.pause_ms, t.pause_poll_ms):
                return True, burst
        return False, t.max_bursts

    def _wait_for_hand(self) -> tuple[bool, int]:
        t = self.timing
        read = self._hw.read_hand_sensor
        try:
            for cycle in range(1, t.hand_cycles + 1):
                start = self._clock.now_ms()
                while self._clock.now_ms() - start < t.hand_cycle_ms:
                    self._hw.sound_cue(True)
                    self._clock.sleep_ms(t.cue_on_ms)
                    self._hw.sound_cue(False)
                    if read():
                        return True, cycle
                    if self._poll(read, t.cue_off_ms, t.hand_poll_ms):
                        return True, cycle
            return False, t.hand_cycles
        finally:
            self._hw.sound_cue(False)

    def _poll(self, read: Callable[[], bool], window_ms: int, poll_ms: int) -> bool:
        start = self._clock.now_ms()
        while self._clock.now_ms() - start < window_ms:
            if read():
                return True
            self._clock.sleep_ms(max(1, poll_ms))
        return False

    def _finish(
        self,
        reminder: Reminder,
        state: DispenseState,
        result: HistoryResult,
        *,
        bursts: int,
        hand_cycles: int,
        detail: str | None,
        display: str,
        settle_ms: int,
    ) -> DispenseOutcome:
        entry = self._record(reminder, result, detail)
        self._hw.set_failure_indicator(result == HistoryResult.MISSED)
        self._hw.show_text(display, reminder.med)
        self._clock.sleep_ms(settle_ms)
        self._hw.show_text("Waiting...")

        self._transition(DispenseState.DONE)
        outcome = DispenseOutcome(
            reminder_id=reminder.id,
            state=state,
            result=result,
            bursts=bursts,
            hand_cycles=hand_cycles,
            history=entry,
            transitions=list(self._transitions),
        )
        self._transition(DispenseState.IDLE)
        return outcome

    def _abort(self, reminder: Reminder) -> DispenseOutcome:
        # Hardware is not touched again; an outcome already persisted is kept.
        entry = self._recorded
        if entry is None:
            self._transition(DispenseState.MISSED)
            entry = self._record(reminder, HistoryResult.MISSED, "hardware_fault")
        self._transition(DispenseState.DONE)
        return DispenseOutcome(
            reminder_id=reminder.id,
            state=DispenseState.MISSED if entry.result == HistoryResult.MISSED else DispenseState.TAKEN,
            result=entry.result,
            bursts=0,
            hand_cycles=0,
            history=entry,
            transitions=list(self._transitions),
        )

    def _record(self, reminder: Reminder, result: HistoryResult, detail: str | None) -> HistoryEntry:
        entry = HistoryEntry.for_reminder(reminder, result, self._clock.now_ms())

        with self._repository.transaction() as repo:
            updated = repo.update_reminder(reminder.id, self._mark_done)
            if updated is None:
                logger.info("Reminder %s was deleted while dispensing; recording history only.", reminder.id)
            repo.append_history(entry)
        if updated is not None:
            reminder.status = updated.status

        self._emitter.emit(
            result.value,
            id=reminder.id,
            patient=reminder.patient,
            med=reminder.med,
            detail=detail,
        )
        self._recorded = entry
        return entry

    def _mark_done(self, stored: Reminder) -> None:
        try:
            stored.transition(ReminderStatus.DONE)
        except InvalidTransition as exc:
            logger.warning("Reminder %s left as %s: %s", stored.id, stored.status.value, exc)

    def _transition(self, state: DispenseState) -> None:
        logger.debug("Dispense %s -> %s", self._state.value, state.value)
        self._state = state
        self._transitions.append(state)
