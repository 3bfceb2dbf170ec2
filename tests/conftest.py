from __future__ import annotations

from typing import Any

import pytest

from device_config import DeviceConfig
from smartmed_device import SmartMedDevice


class FakeClock:
    """Manual clock: time only moves when a test advances it or code sleeps."""

    def __init__(self, start_ms: int = 10_000) -> None:
        self.now = start_ms
        self.sleeps: list[int] = []

    def now_ms(self) -> int:
        return self.now

    def sleep_ms(self, duration_ms: int) -> None:
        self.sleeps.append(duration_ms)
        self.now += max(0, int(duration_ms))

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeHardware:
    """
    Scripted sensors. The pill is seen once `drop_on_burst` pulses have fired;
    the hand is seen on the `hand_on_read`-th hand sensor read. None = never.
    """

    def __init__(self, *, drop_on_burst: int | None = 1, hand_on_read: int | None = 1) -> None:
        self.drop_on_burst = drop_on_burst
        self.hand_on_read = hand_on_read
        self.pulses = 0
        self.dispense_reads = 0
        self.hand_reads = 0
        self.cue_on = False
        self.cue_toggles = 0
        self.failure_indicator: bool | None = None
        self.display: list[tuple[str, str]] = []

    def actuate_dispense_pulse(self, duration_ms: int) -> None:
        self.pulses += 1

    def read_dispense_sensor(self) -> bool:
        self.dispense_reads += 1
        return self.drop_on_burst is not None and self.pulses >= self.drop_on_burst

    def read_hand_sensor(self) -> bool:
        self.hand_reads += 1
        return self.hand_on_read is not None and self.hand_reads >= self.hand_on_read

    def sound_cue(self, on: bool) -> None:
        if on and not self.cue_on:
            self.cue_toggles += 1
        self.cue_on = bool(on)

    def set_failure_indicator(self, on: bool) -> None:
        self.failure_indicator = bool(on)

    def show_text(self, line1: str, line2: str = "") -> None:
        self.display.append((line1, line2))


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hardware() -> FakeHardware:
    return FakeHardware()


@pytest.fixture
def device(tmp_path, clock, hardware) -> SmartMedDevice:
    config = DeviceConfig(data_dir=tmp_path / "nvs", tick_interval_ms=0)
    smartmed = SmartMedDevice(config, hardware=hardware, clock=clock)
    smartmed.start(run_scheduler=False)
    return smartmed


@pytest.fixture
def recorder(device) -> EventRecorder:
    rec = EventRecorder()
    device.emitter.add_sink(rec)
    return rec
