import pytest

from conftest import EventRecorder, FakeClock, FakeHardware
from dispense_machine import DispenseState, DispenseTiming, DispenseVerifyMachine
from dispenser_hardware import UartDispenserHardware
from notifications import NotificationEmitter
from reminder_repository import HistoryResult, Reminder, ReminderRepository, ReminderStatus
from slot_store import SlotStore


@pytest.fixture
def repo(tmp_path):
    store = SlotStore(tmp_path)
    store.initialize()
    return ReminderRepository(store)


@pytest.fixture
def events():
    return EventRecorder()


def _machine(repo, events, hardware, clock=None, **timing):
    clock = clock or FakeClock()
    emitter = NotificationEmitter(clock)
    emitter.add_sink(events)
    return DispenseVerifyMachine(hardware, repo, emitter, clock, DispenseTiming(**timing))


def _running(repo, reminder_id="1"):
    reminder = Reminder(
        id=reminder_id,
        patient="Ada",
        med="Metformin",
        timestamp_ms=1234,
        status=ReminderStatus.RUNNING,
        due_at_local_ms=0,
    )
    repo.save_reminders([reminder])
    return reminder


def test_pill_taken_on_first_cue(repo, events):
    hardware = FakeHardware(drop_on_burst=1, hand_on_read=1)
    machine = _machine(repo, events, hardware)

    outcome = machine.run(_running(repo))

    assert outcome.state == DispenseState.TAKEN
    assert outcome.result == HistoryResult.TAKEN
    assert outcome.bursts == 1
    assert outcome.hand_cycles == 1
    assert outcome.transitions == [
        DispenseState.DISPENSING,
        DispenseState.DROPPED,
        DispenseState.HAND_CHECKING,
        DispenseState.TAKEN,
        DispenseState.DONE,
    ]
    assert machine.state == DispenseState.IDLE
    assert events.types() == ["dispense_attempt", "dispensed", "taken"]
    assert events.of_type("taken")[0]["med"] == "Metformin"
    assert "detail" not in events.of_type("taken")[0]

    assert repo.get_reminder("1").status == ReminderStatus.DONE
    [entry] = repo.load_history()
    assert (entry.id, entry.result, entry.timestamp_ms) == ("1", HistoryResult.TAKEN, 1234)
    assert hardware.failure_indicator is False
    assert hardware.cue_on is False
    assert hardware.display[-1] == ("Waiting...", "")


def test_pill_drops_on_later_burst(repo, events):
    hardware = FakeHardware(drop_on_burst=3, hand_on_read=1)
    outcome = _machine(repo, events, hardware).run(_running(repo))
    assert outcome.bursts == 3
    assert hardware.pulses == 3
    assert events.of_type("dispensed")[0]["bursts"] == 3


def test_no_pill_after_max_bursts_is_missed(repo, events):
    hardware = FakeHardware(drop_on_burst=None)
    clock = FakeClock()
    outcome = _machine(repo, events, hardware, clock).run(_running(repo))

    assert outcome.state == DispenseState.DISPENSE_FAILED
    assert outcome.result == HistoryResult.MISSED
    assert outcome.bursts == 20
    assert hardware.pulses == 20
    assert hardware.hand_reads == 0
    assert outcome.transitions == [DispenseState.DISPENSING, DispenseState.DISPENSE_FAILED, DispenseState.DONE]
    assert events.types() == ["dispense_attempt", "missed"]
    assert events.of_type("missed")[0]["detail"] == "no_pill"
    assert hardware.failure_indicator is True
    assert ("DROP FAIL", "Metformin") in hardware.display
    assert repo.load_history()[0].result == HistoryResult.MISSED
    assert repo.get_reminder("1").status == ReminderStatus.DONE


def test_max_bursts_is_configurable(repo, events):
    hardware = FakeHardware(drop_on_burst=None)
    outcome = _machine(repo, events, hardware, max_bursts=4).run(_running(repo))
    assert outcome.bursts == 4
    assert hardware.pulses == 4


def test_hand_never_seen_is_missed_after_two_cycles(repo, events):
    hardware = FakeHardware(drop_on_burst=1, hand_on_read=None)
    clock = FakeClock()
    machine = _machine(repo, events, hardware, clock)
    start = clock.now

    outcome = machine.run(_running(repo))

    assert outcome.state == DispenseState.MISSED
    assert outcome.hand_cycles == 2
    assert hardware.hand_reads == 900
    assert hardware.cue_toggles == 60
    assert hardware.cue_on is False
    assert clock.now - start >= 60_000
    assert events.types() == ["dispense_attempt", "dispensed", "missed"]
    assert events.of_type("missed")[0]["detail"] == "not_taken"
    assert hardware.failure_indicator is True
    [entry] = repo.load_history()
    assert entry.result == HistoryResult.MISSED


def test_hand_seen_in_second_cycle(repo, events):
    hardware = FakeHardware(drop_on_burst=1, hand_on_read=16)
    outcome = _machine(repo, events, hardware, hand_cycle_ms=1000).run(_running(repo))
    assert outcome.result == HistoryResult.TAKEN
    assert outcome.hand_cycles == 2


def test_reminder_deleted_mid_cycle_still_records_history(repo, events):
    hardware = FakeHardware()
    reminder = _running(repo)
    repo.save_reminders([])

    outcome = _machine(repo, events, hardware).run(reminder)

    assert outcome.result == HistoryResult.TAKEN
    assert repo.load_reminders() == []
    assert [h.id for h in repo.load_history()] == ["1"]


def test_terminal_write_keeps_concurrent_changes(repo, events):
    hardware = FakeHardware()
    reminder = _running(repo)
    other = Reminder(id="2", patient="Bo", med="Aspirin", timestamp_ms=0)
    repo.save_reminders([*repo.load_reminders(), other])

    _machine(repo, events, hardware).run(reminder)

    stored = {r.id: r.status for r in repo.load_reminders()}
    assert stored == {"1": ReminderStatus.DONE, "2": ReminderStatus.PENDING}


class BrokenHandSensor(FakeHardware):
    def read_hand_sensor(self):
        raise RuntimeError("sensor bus stuck")


def test_unreachable_uart_ends_as_missed(repo, events, tmp_path):
    hardware = UartDispenserHardware(str(tmp_path / "no-such-tty"), timeout_s=0.05)
    machine = _machine(repo, events, hardware, max_bursts=2)

    outcome = machine.run(_running(repo))

    assert outcome.state == DispenseState.DISPENSE_FAILED
    assert events.of_type("missed")[0]["detail"] == "no_pill"
    assert repo.get_reminder("1").status == ReminderStatus.DONE
    assert machine.state == DispenseState.IDLE


def test_hardware_exception_still_records_an_outcome(repo, events):
    hardware = BrokenHandSensor()
    machine = _machine(repo, events, hardware)

    outcome = machine.run(_running(repo))

    assert outcome.result == HistoryResult.MISSED
    assert outcome.transitions[-2:] == [DispenseState.MISSED, DispenseState.DONE]
    assert events.types() == ["dispense_attempt", "dispensed", "missed"]
    assert events.of_type("missed")[0]["detail"] == "hardware_fault"
    assert repo.get_reminder("1").status == ReminderStatus.DONE
    assert [h.result for h in repo.load_history()] == [HistoryResult.MISSED]
    assert machine.state == DispenseState.IDLE


class BrokenDisplay(FakeHardware):
    def show_text(self, line1, line2=""):
        if line1 == "Taken":
            raise OSError("display unplugged")
        super().show_text(line1, line2)


def test_fault_after_outcome_keeps_the_single_outcome(repo, events):
    machine = _machine(repo, events, BrokenDisplay())

    outcome = machine.run(_running(repo))

    assert outcome.result == HistoryResult.TAKEN
    assert events.types() == ["dispense_attempt", "dispensed", "taken"]
    assert [h.result for h in repo.load_history()] == [HistoryResult.TAKEN]
    assert machine.state == DispenseState.IDLE
