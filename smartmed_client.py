from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


class SmartMedClient:
    """
    Caregiver-side client for the dispenser's HTTP command transport.

    Safe-by-default, like the other bridges: transport errors are logged and
    the call returns None. Protocol errors come back as `error` events in the
    reply, with `ok` false.
    """

    def __init__(self, base_url: str | None = None, *, timeout_s: float = 2.0, session: requests.Session | None = None) -> None:
        self.base_url = (base_url or os.getenv("SMARTMED_API_BASE_URL") or "http://127.0.0.1:5000").rstrip("/")
        self.timeout_s = max(0.1, float(timeout_s))
        self._session = session or requests.Session()
        self._last_event_seq = 0

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any] | None:
        try:
            response = self._session.request(method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs)
            if response.status_code >= 500:
                response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("SmartMed %s %s failed: %s", method, path, exc)
            return None
        return data if isinstance(data, dict) else None

    def command(self, cmd: str, **fields: Any) -> dict[str, Any] | None:
        payload = {"cmd": cmd}
        payload.update({k: v for k, v in fields.items() if v is not None})
        return self._request("POST", "/api/command", json=payload)

    def schedule(
        self,
        patient: str,
        med: str,
        timestamp_ms: int,
        *,
        dosage: str | None = None,
        now_ms: int | None = None,
    ) -> dict[str, Any] | None:
        # Without `now` the device cannot compute a local deadline and the reminder never fires.
        return self.command(
            "schedule",
            patient=patient,
            med=med,
            dosage=dosage,
            timestamp=int(timestamp_ms),
            now=epoch_ms() if now_ms is None else int(now_ms),
        )

    def schedule_in(self, patient: str, med: str, delay_s: float, *, dosage: str | None = None) -> dict[str, Any] | None:
        now = epoch_ms()
        return self.schedule(patient, med, now + int(max(0.0, delay_s) * 1000), dosage=dosage, now_ms=now)

    def list_reminders(self) -> dict[str, Any] | None:
        return self.command("list")

    def delete(self, reminder_id: str) -> dict[str, Any] | None:
        return self.command("delete", id=str(reminder_id))

    def start_now(
        self,
        reminder_id: str | None = None,
        *,
        patient: str | None = None,
        med: str | None = None,
        dosage: str | None = None,
    ) -> dict[str, Any] | None:
        if reminder_id is not None:
            return self.command("startNow", id=str(reminder_id))
        return self.command("startNow", patient=patient, med=med, dosage=dosage)

    def cancel(self, reminder_id: str | None = None) -> dict[str, Any] | None:
        return self.command("cancel", id=None if reminder_id is None else str(reminder_id))

    def get_history(self) -> dict[str, Any] | None:
        return self.command("getHistory")

    def clear_history(self) -> dict[str, Any] | None:
        return self.command("clearHistory")

    def status(self) -> dict[str, Any] | None:
        return self._request("GET", "/api/status")

    def poll_events(self) -> list[dict[str, Any]]:
        data = self._request("GET", "/api/events", params={"since": self._last_event_seq})
        if not data:
            return []
        events = data.get("events")
        if not isinstance(events, list):
            return []
        events = [e for e in events if isinstance(e, dict)]
        if events:
            self._last_event_seq = max(self._last_event_seq, *(int(e.get("seq", 0)) for e in events))
        return events
