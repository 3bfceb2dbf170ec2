from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from enum import Enum
from threading import RLock
from typing import Any, Callable, Iterator

from slot_store import HISTORY_KEY, REMINDERS_KEY, SlotStore

logger = logging.getLogger(__name__)


class ReminderStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELED = "canceled"


class HistoryResult(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"


ALLOWED_TRANSITIONS: dict[ReminderStatus, set[ReminderStatus]] = {
    ReminderStatus.PENDING: {ReminderStatus.RUNNING, ReminderStatus.CANCELED},
    ReminderStatus.RUNNING: {ReminderStatus.DONE},
    ReminderStatus.DONE: set(),
    ReminderStatus.CANCELED: set(),
}


class InvalidTransition(ValueError):
    def __init__(self, reminder_id: str, current: ReminderStatus, target: ReminderStatus) -> None:
        super().__init__(f"Reminder {reminder_id}: {current.value} -> {target.value} is not allowed.")
        self.reminder_id = reminder_id
        self.current = current
        self.target = target


class RecordError(ValueError):
    """A stored record could not be converted to its typed form."""


# Wire key for every dataclass field whose name differs.
_WIRE_KEYS = {
    "timestamp_ms": "timestampMs",
    "due_at_local_ms": "dueAtLocalMs",
    "now_sent_ms": "nowSentMs",
    "created_at": "createdAt",
    "when_ms": "whenMs",
}


def _wire_key(name: str) -> str:
    return _WIRE_KEYS.get(name, name)


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise RecordError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RecordError(f"{key} must be an integer") from exc


class _Record:
    """Generic wire codec: every dataclass field is (de)serialized, unknown keys ride along in `extra`."""

    _INT_FIELDS: frozenset[str] = frozenset()
    _OPTIONAL_FIELDS: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(getattr(self, "extra", {}))
        for f in fields(self):  # type: ignore[arg-type]
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None and f.name in self._OPTIONAL_FIELDS:
                continue
            if isinstance(value, Enum):
                value = value.value
            out[_wire_key(f.name)] = value
        return out

    @classmethod
    def from_dict(cls, data: Any):
        if not isinstance(data, dict):
            raise RecordError(f"{cls.__name__} must be an object")
        kwargs: dict[str, Any] = {}
        known: set[str] = set()
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name == "extra":
                continue
            key = _wire_key(f.name)
            known.add(key)
            if key not in data or data[key] is None:
                if f.name in cls._OPTIONAL_FIELDS:
                    continue
                raise RecordError(f"{cls.__name__} is missing {key}")
            value = data[key]
            if f.name in cls._INT_FIELDS:
                value = _as_int(value, key)
            elif f.name in ("status", "result"):
                value = cls._coerce_enum(f.name, value)
            else:
                value = str(value)
            kwargs[f.name] = value
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs)

    @classmethod
    def _coerce_enum(cls, name: str, value: Any) -> Enum:
        raise RecordError(f"Unexpected enum field {name}")


@dataclass
class Reminder(_Record):
    id: str
    patient: str
    med: str
    timestamp_ms: int
    status: ReminderStatus = ReminderStatus.PENDING
    created_at: int = 0
    dosage: str = ""
    due_at_local_ms: int | None = None
    now_sent_ms: int | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    _INT_FIELDS = frozenset({"timestamp_ms", "created_at", "due_at_local_ms", "now_sent_ms"})
    _OPTIONAL_FIELDS = frozenset({"dosage", "due_at_local_ms", "now_sent_ms", "created_at"})

    @classmethod
    def _coerce_enum(cls, name: str, value: Any) -> Enum:
        try:
            return ReminderStatus(str(value))
        except ValueError as exc:
            raise RecordError(f"Unknown reminder status {value!r}") from exc

    def transition(self, target: ReminderStatus) -> None:
        if target == self.status:
            return
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status, target)
        self.status = target

    def is_due(self, now_ms: int) -> bool:
        # No local deadline: the scheduler can never pick this reminder up.
        if self.due_at_local_ms is None:
            return False
        return self.status == ReminderStatus.PENDING and now_ms >= self.due_at_local_ms


@dataclass
class HistoryEntry(_Record):
    id: str
    patient: str
    med: str
    timestamp_ms: int
    result: HistoryResult
    when_ms: int
    extra: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    _INT_FIELDS = frozenset({"timestamp_ms", "when_ms"})

    @classmethod
    def _coerce_enum(cls, name: str, value: Any) -> Enum:
        try:
            return HistoryResult(str(value))
        except ValueError as exc:
            raise RecordError(f"Unknown history result {value!r}") from exc

    @classmethod
    def for_reminder(cls, reminder: Reminder, result: HistoryResult, when_ms: int) -> "HistoryEntry":
        return cls(
            id=reminder.id,
            patient=reminder.patient,
            med=reminder.med,
            timestamp_ms=reminder.timestamp_ms,
            result=result,
            when_ms=when_ms,
        )


def encode_records(records: list[Any]) -> bytes:
    return json.dumps([r.to_dict() for r in records], separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class ReminderRepository:
    """
    Typed access to the reminders/history/seqid slots.

    Callers that read-modify-write must hold `transaction()`; the lock is
    re-entrant so repository helpers can be nested inside a caller's transaction.
    """

    def __init__(self, store: SlotStore) -> None:
        self._store = store
        self._lock = RLock()

    @contextmanager
    def transaction(self) -> Iterator["ReminderRepository"]:
        with self._lock:
            yield self

    def load_reminders(self) -> list[Reminder]:
        with self._lock:
            return self._load(REMINDERS_KEY, Reminder)

    def save_reminders(self, reminders: list[Reminder]) -> None:
        with self._lock:
            self._store.write_slot(REMINDERS_KEY, encode_records(reminders))

    def load_history(self) -> list[HistoryEntry]:
        with self._lock:
            return self._load(HISTORY_KEY, HistoryEntry)

    def save_history(self, history: list[HistoryEntry]) -> None:
        with self._lock:
            self._store.write_slot(HISTORY_KEY, encode_records(history))

    def append_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            history = self.load_history()
            history.append(entry)
            self.save_history(history)

    def clear_history(self) -> None:
        self.save_history([])

    def next_id(self) -> str:
        with self._lock:
            seq = self._store.read_counter()
            # A reset counter must not hand out an id that is still on record.
            floor = self._highest_issued_id() + 1
            if seq < floor:
                logger.warning("Id counter %s is behind issued ids; advancing to %s.", seq, floor)
                seq = floor
            self._store.write_counter(seq + 1)
            return str(seq)

    def find(self, reminders: list[Reminder], reminder_id: str) -> Reminder | None:
        for reminder in reminders:
            if reminder.id == reminder_id:
                return reminder
        return None

    def get_reminder(self, reminder_id: str) -> Reminder | None:
        return self.find(self.load_reminders(), reminder_id)

    def update_reminder(self, reminder_id: str, mutate: Callable[[Reminder], None]) -> Reminder | None:
        with self._lock:
            reminders = self.load_reminders()
            target = self.find(reminders, reminder_id)
            if target is None:
                return None
            mutate(target)
            self.save_reminders(reminders)
            return target

    def _highest_issued_id(self) -> int:
        highest = 0
        for record in [*self.load_reminders(), *self.load_history()]:
            try:
                highest = max(highest, int(record.id))
            except ValueError:
                continue
        return highest

    def _load(self, key: str, record_type: type) -> list:
        raw = self._store.read_slot(key)
        try:
            payload = json.loads(raw.decode("utf-8"))
            if not isinstance(payload, list):
                raise RecordError(f"{key} slot is not an array")
            return [record_type.from_dict(item) for item in payload]
        except (UnicodeDecodeError, json.JSONDecodeError, RecordError) as exc:
            logger.warning("Slot %s is corrupt (%s); resetting to an empty array.", key, exc)
            self._store.write_slot(key, b"[]")
            return []
