from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping

from device_clock import Clock
from notifications import NotificationEmitter
from reminder_repository import (
    InvalidTransition,
    Reminder,
    ReminderRepository,
    ReminderStatus,
)
from slot_store import StoreFault

logger = logging.getLogger(__name__)

BAD_JSON = "bad_json"
UNKNOWN_CMD = "unknown_cmd"
MISSING_FIELDS = "missing_fields"
ID_REQUIRED = "id_required"
NOT_FOUND = "not_found"
INVALID_TRANSITION = "invalid_transition"
STORE_FAULT = "store_fault"

# startNow arms a reminder this far ahead of the local clock.
MANUAL_START_DELAY_MS = 100

SCHEDULE_REQUIRED_FIELDS = ("timestamp", "patient", "med")


class CommandError(Exception):
    code = "error"

    def __init__(self, code: str | None = None, message: str = "") -> None:
        if code:
            self.code = code
        super().__init__(message or self.code)


class ProtocolError(CommandError):
    pass


class NotFoundError(CommandError):
    code = NOT_FOUND


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, str):
        return int(float(value.strip()))
    return int(value)


class CommandInterpreter:
    """
    Executes one inbound command message and emits its responses.

    Every mutating command re-reads the reminders slot, mutates the copy and
    rewrites the whole slot inside a repository transaction. Errors become
    `{"type": "error", "detail": <code>}` events and never mutate state.
    """

    def __init__(
        self,
        repository: ReminderRepository,
        emitter: NotificationEmitter,
        clock: Clock,
        *,
        on_manual_start: Callable[[str], None] | None = None,
    ) -> None:
        self._repository = repository
        self._emitter = emitter
        self._clock = clock
        self._on_manual_start = on_manual_start
        self._handlers: dict[str, Callable[[Mapping[str, Any], list[dict[str, Any]]], None]] = {
            "schedule": self._schedule,
            "list": self._list,
            "delete": self._delete,
            "startNow": self._start_now,
            "cancel": self._cancel,
            "getHistory": self._get_history,
            "clearHistory": self._clear_history,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    def handle(self, message: bytes | str | Mapping[str, Any]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []

        if isinstance(message, Mapping):
            payload: Mapping[str, Any] | None = message
        else:
            text = message.decode("utf-8", errors="replace") if isinstance(message, (bytes, bytearray)) else str(message)
            if not text.strip():
                return events
            logger.info("CMD <- %s", text)
            payload = self._parse(text)
            if payload is None:
                self._error(events, BAD_JSON)
                return events

        cmd = payload.get("cmd")
        handler = self._handlers.get(cmd) if isinstance(cmd, str) else None
        if handler is None:
            self._error(events, UNKNOWN_CMD)
            return events

        try:
            handler(payload, events)
        except CommandError as exc:
            self._error(events, exc.code)
        except InvalidTransition as exc:
            logger.info("Rejected %s: %s", cmd, exc)
            self._error(events, INVALID_TRANSITION)
        except StoreFault:
            logger.exception("Store fault while handling %s.", cmd)
            self._error(events, STORE_FAULT)
        return events

    def _parse(self, text: str) -> Mapping[str, Any] | None:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def _emit(self, events: list[dict[str, Any]], event_type: str, **fields: Any) -> None:
        events.append(self._emitter.emit(event_type, **fields))

    def _error(self, events: list[dict[str, Any]], code: str) -> None:
        self._emit(events, "error", detail=code)

    def _emit_list(self, events: list[dict[str, Any]], reminders: list[Reminder]) -> None:
        self._emit(events, "list", count=len(reminders), reminders=[r.to_dict() for r in reminders])

    def _schedule(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        if any(key not in payload for key in SCHEDULE_REQUIRED_FIELDS):
            raise ProtocolError(MISSING_FIELDS)
        try:
            timestamp_ms = _coerce_int(payload["timestamp"])
            client_now_ms = _coerce_int(payload["now"]) if payload.get("now") is not None else None
        except (TypeError, ValueError, OverflowError) as exc:
            raise ProtocolError(MISSING_FIELDS) from exc

        with self._repository.transaction() as repo:
            reminders = repo.load_reminders()
            local_now = self._clock.now_ms()
            reminder = Reminder(
                id=repo.next_id(),
                patient=_text(payload["patient"]),
                med=_text(payload["med"]),
                dosage=_text(payload.get("dosage")),
                timestamp_ms=timestamp_ms,
                created_at=local_now,
            )
            if client_now_ms is not None:
                reminder.due_at_local_ms = local_now + max(0, timestamp_ms - client_now_ms)
                reminder.now_sent_ms = client_now_ms
            reminders.append(reminder)
            repo.save_reminders(reminders)

        self._emit(events, "scheduled", id=reminder.id, patient=reminder.patient, med=reminder.med)
        self._emit_list(events, reminders)

    def _list(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        self._emit_list(events, self._repository.load_reminders())

    def _delete(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        if payload.get("id") is None:
            raise ProtocolError(ID_REQUIRED)
        reminder_id = _text(payload["id"])

        with self._repository.transaction() as repo:
            reminders = [r for r in repo.load_reminders() if r.id != reminder_id]
            repo.save_reminders(reminders)

        self._emit(events, "deleted", id=reminder_id, detail=reminder_id)
        self._emit_list(events, reminders)

    def _start_now(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        if payload.get("id") is not None:
            reminder_id = _text(payload["id"])
            with self._repository.transaction() as repo:
                reminders = repo.load_reminders()
                target = repo.find(reminders, reminder_id)
                if target is None:
                    raise NotFoundError()
                # Already running or finished: arming it again would dispense twice.
                if target.status != ReminderStatus.PENDING:
                    raise InvalidTransition(target.id, target.status, ReminderStatus.RUNNING)
                target.transition(ReminderStatus.RUNNING)
                target.due_at_local_ms = self._clock.now_ms() + MANUAL_START_DELAY_MS
                repo.save_reminders(reminders)

            self._emit(events, "starting", id=reminder_id, detail=reminder_id)
            if self._on_manual_start is not None:
                self._on_manual_start(reminder_id)
            return

        with self._repository.transaction() as repo:
            reminders = repo.load_reminders()
            local_now = self._clock.now_ms()
            reminder = Reminder(
                id=repo.next_id(),
                patient=_text(payload.get("patient")),
                med=_text(payload.get("med")),
                dosage=_text(payload.get("dosage")),
                timestamp_ms=0,
                created_at=local_now,
                due_at_local_ms=local_now + MANUAL_START_DELAY_MS,
            )
            reminders.append(reminder)
            repo.save_reminders(reminders)

        self._emit(events, "manual_scheduled", id=reminder.id)
        self._emit_list(events, reminders)

    def _cancel(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        if payload.get("id") is not None:
            reminder_id = _text(payload["id"])
            with self._repository.transaction() as repo:
                reminders = repo.load_reminders()
                target = repo.find(reminders, reminder_id)
                if target is not None:
                    target.transition(ReminderStatus.CANCELED)
                repo.save_reminders(reminders)
            self._emit(events, "canceled", id=reminder_id, detail=reminder_id)
        else:
            with self._repository.transaction() as repo:
                reminders = repo.load_reminders()
                canceled = 0
                for reminder in reminders:
                    if reminder.status == ReminderStatus.PENDING:
                        reminder.transition(ReminderStatus.CANCELED)
                        canceled += 1
                repo.save_reminders(reminders)
            self._emit(events, "canceled_all", count=canceled)

        self._emit_list(events, reminders)

    def _get_history(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        history = self._repository.load_history()
        self._emit(events, "history", count=len(history), history=[h.to_dict() for h in history])

    def _clear_history(self, payload: Mapping[str, Any], events: list[dict[str, Any]]) -> None:
        with self._repository.transaction() as repo:
            repo.clear_history()
        self._emit(events, "history_cleared")
