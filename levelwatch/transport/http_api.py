"""
Flask HTTP API for sensor nodes, the alarm node and operators.

All routes delegate to one injected `AlarmStateEngine`; the module holds no
state of its own.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from levelwatch.config.yaml_config import DeploymentInfo
from levelwatch.core.engine import AlarmStateEngine
from levelwatch.domain.errors import InvalidReading
from levelwatch.domain.models import _iso, utc_now
from levelwatch.notification.messages import format_uptime
from levelwatch.transport.schema import parse_reading, reading_summary

logger = logging.getLogger(__name__)

SERVICE_NAME = "Levelwatch water level alarm server"


def _deployment_dict(d: DeploymentInfo) -> Dict[str, Any]:
    return {"platform": d.platform, "environment": d.environment, "version": d.version}


def _json_object() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _iso_or_none(ts: Optional[datetime]) -> Optional[str]:
    return _iso(ts) if ts else None


def create_app(
    engine: AlarmStateEngine,
    deployment: Optional[DeploymentInfo] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Flask:
    """
    Build the Flask application bound to ``engine``.

    Parameters
    ----------
    engine
        Shared alarm state engine.
    deployment
        Deployment metadata echoed in responses.
    clock
        Server clock for response timestamps and reading stamps.
    """
    app = Flask(__name__)
    deploy = deployment or DeploymentInfo()

    def uptime_s() -> float:
        started = engine.status().started_at
        return (clock() - started).total_seconds() if started else 0.0

    @app.get("/")
    def index():
        s = engine.status()
        return jsonify({
            "message": SERVICE_NAME,
            "status": "running",
            "timestamp": _iso(clock()),
            "uptime": format_uptime(uptime_s()),
            "deployment": _deployment_dict(deploy),
            "endpoints": {
                "health": "/api/health",
                "sensor_data": "/api/sensor/data",
                "alarm_status": "/api/alarm/status",
                "trigger": "/api/trigger",
                "force_alarm": "/api/alarm/force",
                "history": "/api/history",
            },
            "current_status": {
                "water_level": s.current_water_level,
                "alarm_active": s.alarm_active,
                "trigger_level": s.trigger_level,
                "sheets_connected": s.log_store_ready,
                "last_reading": _iso_or_none(s.last_reading_at),
                "connection_count": s.connection_count,
            },
        })

    @app.post("/api/sensor/data")
    def sensor_data():
        t0 = time.monotonic()
        body = request.get_json(silent=True)
        try:
            payload = parse_reading(body, clock)
        except InvalidReading as e:
            logger.warning("Rejected sensor payload from %s: %s", request.remote_addr, e)
            return jsonify({"success": False, "error": str(e), "received": e.details}), 400

        logger.debug("Sensor payload from %s: %s", request.remote_addr, reading_summary(payload))
        outcome = engine.ingest(payload.reading)
        if not outcome.accepted:
            return jsonify({"success": False, "error": outcome.error}), 400

        data: Dict[str, Any] = {
            "water_level": payload.reading.water_level,
            "alarm_status": outcome.alarm_active,
            "trigger_level": outcome.trigger_level,
            "sheets_logged": outcome.sheets_logged,
            "processing_time_ms": int((time.monotonic() - t0) * 1000),
            "server_time": _iso(clock()),
            "connection_count": outcome.connection_count,
            "platform": deploy.platform,
        }
        if outcome.sheets_logged:
            data["row_ref"] = outcome.row_ref
        else:
            data["sheets_error"] = outcome.log_error

        return jsonify({
            "success": True,
            "message": "Data received and logged" if outcome.sheets_logged else "Data received, log write failed",
            "status": "success" if outcome.sheets_logged else "partial_success",
            "data": data,
        })

    @app.get("/api/health")
    def health():
        s = engine.status()
        up = uptime_s()
        report: Dict[str, Any] = {
            "server": "running",
            "timestamp": _iso(clock()),
            "uptime_seconds": int(up),
            "uptime_formatted": format_uptime(up),
            "server_start_time": _iso_or_none(s.started_at),
            "deployment": _deployment_dict(deploy),
            "sheets_initialized": s.log_store_ready,
            "system": {
                "last_sensor_reading": _iso_or_none(s.last_reading_at),
                "current_water_level": s.current_water_level,
                "alarm_active": s.alarm_active,
                "trigger_level": s.trigger_level,
                "connection_count": s.connection_count,
                "manual_override": s.manual_override,
                "mode": s.mode.value,
            },
        }
        log = engine.log_health()
        report["sheets_connection"] = log.pop("connection")
        report["log_store"] = log
        return jsonify(report)

    @app.post("/api/sheets/reinit")
    def sheets_reinit():
        logger.info("Manual log reinitialization requested")
        if engine.reinit_log():
            return jsonify({
                "success": True,
                "message": "Log store reinitialized successfully",
                "log_store": engine.log_health(),
                "timestamp": _iso(clock()),
            })
        return jsonify({
            "success": False,
            "message": "Failed to reinitialize log store",
            "timestamp": _iso(clock()),
        }), 500

    @app.get("/api/alarm/status")
    def alarm_status_get():
        s = engine.status()
        return jsonify({
            "alarm_state": "on" if s.alarm_active else "off",
            "trigger_level": s.trigger_level,
            "manual_override": s.manual_override,
            "water_level": s.current_water_level,
            "sheets_status": "ok" if s.log_store_ready else "error",
            "server_time": _iso(clock()),
            "alarm_start_time": _iso_or_none(s.alarm_started_at),
            "platform": deploy.platform,
        })

    @app.post("/api/alarm/status")
    def alarm_status_post():
        data = _json_object()
        logger.info("Alarm node status update: %s at %s", data.get("alarm_state"), data.get("timestamp"))
        return jsonify({
            "status": "acknowledged",
            "server_time": _iso(clock()),
            "platform": deploy.platform,
        })

    @app.post("/api/trigger")
    def set_trigger():
        data = _json_object()
        outcome = engine.set_trigger(data.get("trigger_level"))
        if not outcome.ok:
            return jsonify({
                "success": False,
                "error": outcome.error,
                "message": f"trigger_level must be a number greater than {engine.config.trigger_min_exclusive:g}",
            }), 400
        return jsonify({
            "success": True,
            "trigger_level": engine.status().trigger_level,
            "sheets_logged": outcome.sheets_logged,
        })

    @app.post("/api/alarm/force")
    def force_alarm():
        data = _json_object()
        on = data.get("on")
        if not isinstance(on, bool):
            return jsonify({"success": False, "error": "on must be a boolean"}), 400
        outcome = engine.force_alarm(on)
        s = engine.status()
        return jsonify({
            "success": outcome.ok,
            "alarm_active": s.alarm_active,
            "manual_override": s.manual_override,
            "sheets_logged": outcome.sheets_logged,
        })

    @app.get("/api/history")
    def history():
        n = request.args.get("n", default=engine.config.history_rows, type=int)
        rows = engine.history(n)
        return jsonify({
            "count": len(rows),
            "rows": [r.to_dict() for r in rows],
        })

    @app.errorhandler(Exception)
    def unexpected(e: Exception) -> Tuple[Response, int]:
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.name}), e.code or 500
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "details": str(e),
            "server_time": _iso(clock()),
            "platform": deploy.platform,
        }), 500

    return app
