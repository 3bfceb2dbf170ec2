from __future__ import annotations

import logging

from flask import Flask, jsonify, request

from device_config import DeviceConfig, configure_logging
from serial_link import SerialCommandLink
from smartmed_device import SmartMedDevice

logger = logging.getLogger(__name__)


def _parse_int_arg(name: str, default: int) -> int:
    raw = request.args.get(name, "")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def create_app(device: SmartMedDevice | None = None, *, start_device: bool = False) -> Flask:
    app = Flask(__name__)
    if device is None:
        device = SmartMedDevice(DeviceConfig.from_env())
    if start_device:
        device.start()
    app.config["SMARTMED_DEVICE"] = device

    @app.get("/health")
    def health():
        return jsonify(status="ok")

    @app.get("/api/status")
    def api_status():
        return jsonify(device.status())

    @app.post("/api/connect")
    def api_connect():
        device.on_connect()
        return jsonify(ok=True)

    @app.post("/api/disconnect")
    def api_disconnect():
        device.on_disconnect()
        return jsonify(ok=True)

    @app.post("/api/command")
    def api_command():
        events = device.on_command(request.get_data(cache=False))
        ok = not any(event.get("type") == "error" for event in events)
        return jsonify(ok=ok, events=events), (200 if ok else 400)

    @app.get("/api/reminders")
    def api_reminders():
        reminders = device.repository.load_reminders()
        return jsonify(count=len(reminders), reminders=[r.to_dict() for r in reminders])

    @app.get("/api/history")
    def api_history():
        history = device.repository.load_history()
        return jsonify(count=len(history), history=[h.to_dict() for h in history])

    @app.get("/api/events")
    def api_events():
        since = _parse_int_arg("since", 0)
        limit = _parse_int_arg("limit", 0)
        return jsonify(device.emitter.recent(since=since, limit=limit or None))

    return app


if __name__ == "__main__":
    config = DeviceConfig.from_env()
    configure_logging(config.log_level)
    smartmed = SmartMedDevice(config)
    smartmed.start()
    flask_app = create_app(smartmed)

    if config.cmd_port:
        SerialCommandLink(smartmed, config.cmd_port, config.cmd_baud).start()

    logger.info("SmartMed HTTP transport on %s:%s (hardware=%s).", config.http_host, config.http_port, config.hardware)
    flask_app.run(host=config.http_host, port=config.http_port, debug=config.http_debug, use_reloader=False)
