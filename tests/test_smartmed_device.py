import logging

from conftest import FakeClock, FakeHardware
from device_config import DeviceConfig
from dispenser_hardware import SimulatedDispenserHardware, UartDispenserHardware
from reminder_repository import Reminder, ReminderRepository, ReminderStatus
from slot_store import SlotStore
from smartmed_device import SmartMedDevice, build_hardware


def test_build_hardware_follows_config():
    assert isinstance(build_hardware(DeviceConfig(hardware="sim")), SimulatedDispenserHardware)
    assert isinstance(build_hardware(DeviceConfig(hardware="uart")), UartDispenserHardware)


def test_start_prepares_store_and_display(device, hardware):
    assert (device.config.data_dir / "reminders.json").exists()
    assert hardware.failure_indicator is False
    assert hardware.display[0] == ("SmartMed", "Ready...")
    assert device.emitter.recent()["events"][0]["type"] == "ready"


def test_start_twice_is_a_no_op(device):
    device.start(run_scheduler=False)
    assert [e["type"] for e in device.emitter.recent()["events"]] == ["ready"]


def test_leftover_running_reminder_is_dispensed_after_restart(tmp_path, caplog):
    data_dir = tmp_path / "nvs"
    store = SlotStore(data_dir)
    store.initialize()
    ReminderRepository(store).save_reminders(
        [Reminder(id="8", patient="P", med="M", timestamp_ms=0, status=ReminderStatus.RUNNING)]
    )

    device = SmartMedDevice(DeviceConfig(data_dir=data_dir), hardware=FakeHardware(), clock=FakeClock())
    with caplog.at_level(logging.WARNING, logger="smartmed_device"):
        device.start(run_scheduler=False)

    assert "8" in caplog.text
    assert device.scheduler.pending_manual_starts() == ["8"]

    assert device.scheduler.tick() == 1
    assert device.repository.get_reminder("8").status == ReminderStatus.DONE
    assert [h.id for h in device.repository.load_history()] == ["8"]


def test_scheduler_thread_starts_and_stops(tmp_path):
    device = SmartMedDevice(DeviceConfig(data_dir=tmp_path), hardware=FakeHardware(), clock=FakeClock())
    device.start()
    assert device.status()["scheduler_running"] is True
    device.stop(timeout_s=2.0)
    assert device.status()["scheduler_running"] is False


def test_status_counts_reminders_by_status(device):
    device.on_command({"cmd": "schedule", "timestamp": 1, "patient": "P", "med": "A"})
    device.on_command({"cmd": "schedule", "timestamp": 1, "patient": "P", "med": "B"})
    device.on_command({"cmd": "cancel", "id": "2"})
    status = device.status()
    assert status["reminder_count"] == 2
    assert status["reminders_by_status"] == {"pending": 1, "running": 0, "done": 0, "canceled": 1}
    assert status["hardware"] == "FakeHardware"


def test_uart_device_without_a_port_still_boots(tmp_path):
    config = DeviceConfig(data_dir=tmp_path, hardware="uart", hw_port=str(tmp_path / "no-such-tty"))
    device = SmartMedDevice(config, clock=FakeClock())
    device.start(run_scheduler=False)
    assert device.status()["started"] is True
    assert device.hardware.last_result["status"] == "UART_ERROR"
