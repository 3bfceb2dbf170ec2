from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _env_flag(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return max(minimum, value)


@dataclass
class DeviceConfig:
    data_dir: Path = Path("data") / "nvs"
    tick_interval_ms: int = 1500
    max_bursts: int = 20
    hand_cycles: int = 2
    hand_cycle_ms: int = 30000

    hardware: str = "sim"
    hw_port: str = "/dev/ttyUSB0"
    hw_baud: int = 115200
    hw_timeout_s: float = 0.5

    cmd_port: str = ""
    cmd_baud: int = 115200

    event_buffer: int = 100
    http_host: str = "0.0.0.0"
    http_port: int = 5000
    http_debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "DeviceConfig":
        if dotenv:
            load_dotenv()

        hardware = (str(os.getenv("SMARTMED_HARDWARE", "sim")).strip().lower() or "sim")
        if hardware not in {"sim", "uart"}:
            hardware = "sim"

        return cls(
            data_dir=Path(str(os.getenv("SMARTMED_DATA_DIR", "")).strip() or Path("data") / "nvs"),
            tick_interval_ms=_env_int("SMARTMED_TICK_INTERVAL_MS", 1500),
            max_bursts=_env_int("SMARTMED_MAX_BURSTS", 20, minimum=1),
            hand_cycles=_env_int("SMARTMED_HAND_CYCLES", 2, minimum=1),
            hand_cycle_ms=_env_int("SMARTMED_HAND_CYCLE_MS", 30000, minimum=1000),
            hardware=hardware,
            hw_port=str(os.getenv("SMARTMED_HW_PORT", "/dev/ttyUSB0")).strip() or "/dev/ttyUSB0",
            hw_baud=_env_int("SMARTMED_HW_BAUD", 115200, minimum=1200),
            hw_timeout_s=_env_float("SMARTMED_HW_TIMEOUT_S", 0.5, minimum=0.05),
            cmd_port=str(os.getenv("SMARTMED_CMD_PORT", "")).strip(),
            cmd_baud=_env_int("SMARTMED_CMD_BAUD", 115200, minimum=1200),
            event_buffer=_env_int("SMARTMED_EVENT_BUFFER", 100, minimum=1),
            http_host=str(os.getenv("SMARTMED_HTTP_HOST", "0.0.0.0")).strip() or "0.0.0.0",
            http_port=_env_int("SMARTMED_HTTP_PORT", 5000, minimum=1),
            http_debug=_env_flag("SMARTMED_HTTP_DEBUG"),
            log_level=(str(os.getenv("SMARTMED_LOG_LEVEL", "INFO")).strip().upper() or "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
