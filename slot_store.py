from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

REMINDERS_KEY = "reminders"
HISTORY_KEY = "history"
COUNTER_KEY = "seqid"

EMPTY_ARRAY = b"[]"


class StoreFault(RuntimeError):
    """A slot could not be written."""


class SlotStore:
    """
    Durable key/value slots backing the dispenser state:

      <data_dir>/reminders.json   JSON array of reminders
      <data_dir>/history.json     JSON array of history entries
      <data_dir>/seqid.json       next reminder id (integer)

    Reads never fail: a missing, empty or unreadable slot reads as its default.
    Writes replace the file atomically and raise StoreFault on any OS error.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    def _slot_path(self, key: str) -> Path:
        safe_key = "".join(ch for ch in str(key) if ch.isalnum() or ch in "_-")
        if not safe_key:
            raise ValueError(f"Invalid slot key: {key!r}")
        return self.data_dir / f"{safe_key}.json"

    def initialize(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreFault(f"Cannot create store directory {self.data_dir}: {exc}") from exc
        for key in (REMINDERS_KEY, HISTORY_KEY):
            if not self._slot_path(key).exists():
                self.write_slot(key, EMPTY_ARRAY)
        if not self._slot_path(COUNTER_KEY).exists():
            self.write_counter(1)

    def read_slot(self, key: str) -> bytes:
        path = self._slot_path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return EMPTY_ARRAY
        except OSError as exc:
            logger.warning("Slot %s unreadable (%s); using empty default.", key, exc)
            return EMPTY_ARRAY
        if not data.strip():
            return EMPTY_ARRAY
        return data

    def write_slot(self, key: str, data: bytes) -> None:
        path = self._slot_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise StoreFault(f"Failed to write slot {key}: {exc}") from exc

    def read_counter(self) -> int:
        raw = self.read_slot(COUNTER_KEY)
        try:
            value = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Counter slot malformed; resetting to default.")
            return 1
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            return 1
        return value

    def write_counter(self, value: int) -> None:
        self.write_slot(COUNTER_KEY, str(int(value)).encode("ascii"))
