import json

from conftest import EventRecorder, FakeClock
from notifications import NotificationEmitter, encode_event


def test_emit_stamps_time_and_drops_empty_fields():
    clock = FakeClock(start_ms=777)
    emitter = NotificationEmitter(clock)
    event = emitter.emit("canceled", id="3", detail=None)
    assert event == {"type": "canceled", "id": "3", "time_ms": 777}


def test_every_sink_receives_the_event():
    emitter = NotificationEmitter(FakeClock())
    first, second = EventRecorder(), EventRecorder()
    emitter.add_sink(first)
    emitter.add_sink(second)
    emitter.add_sink(first)
    emitter.emit("ready")
    assert first.types() == ["ready"]
    assert second.types() == ["ready"]


def test_failing_sink_does_not_block_others():
    emitter = NotificationEmitter(FakeClock())
    good = EventRecorder()

    def broken(event):
        raise OSError("client went away")

    emitter.add_sink(broken)
    emitter.add_sink(good)
    emitter.emit("list", count=0, reminders=[])
    assert good.types() == ["list"]


def test_removed_sink_misses_later_events():
    emitter = NotificationEmitter(FakeClock())
    rec = EventRecorder()
    emitter.add_sink(rec)
    emitter.emit("ready")
    emitter.remove_sink(rec)
    emitter.emit("list")
    assert rec.types() == ["ready"]


def test_recent_is_bounded_and_sequenced():
    emitter = NotificationEmitter(FakeClock(), buffer_size=3)
    for i in range(5):
        emitter.emit("deleted", id=str(i))
    recent = emitter.recent()
    assert recent["last_seq"] == 5
    assert [e["seq"] for e in recent["events"]] == [3, 4, 5]
    assert [e["seq"] for e in emitter.recent(since=4)["events"]] == [5]
    assert [e["seq"] for e in emitter.recent(limit=1)["events"]] == [5]


def test_encode_event_is_compact_json():
    raw = encode_event({"type": "taken", "med": "Ibuprofène"})
    assert b" " not in raw
    assert json.loads(raw) == {"type": "taken", "med": "Ibuprofène"}
