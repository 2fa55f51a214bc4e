"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Dashboard REST Server

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Exposes the canonical observatory state, the motor temperature history
and the render-ready angle bundle to the browser dashboard, and forwards
telescope/dome commands to the control server.

The server runs in a background daemon thread and only reads immutable
snapshots published by the ObservatoryController.
"""

import itertools
import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from api_client import ApiError

logger = logging.getLogger(__name__)

# Response error codes (same numbering as ASCOM Alpaca)
ERROR_OK = 0
ERROR_NOT_IMPLEMENTED = 0x400
ERROR_INVALID_VALUE = 0x401
ERROR_INVALID_OPERATION = 0x40C
ERROR_UNEXPECTED = 0x500


def _response(
    value: Any = None,
    error_number: int = ERROR_OK,
    error_message: str = "",
    server_tid: int = 0,
) -> dict:
    """Build the standard JSON response envelope."""
    resp: dict = {}
    if value is not None:
        resp["Value"] = value
    resp["ClientTransactionID"] = request.values.get(
        "ClientTransactionID", 0, type=int
    )
    resp["ServerTransactionID"] = server_tid
    resp["ErrorNumber"] = error_number
    resp["ErrorMessage"] = error_message
    return resp


def _params() -> dict:
    """Merge JSON body and form/query values into one dict."""
    params: dict = dict(request.values.items())
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update(body)
    return params


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("true", "1", "yes", "on")


def _optional_float(params: dict, key: str) -> Optional[float]:
    raw = params.get(key)
    if raw is None or raw == "":
        return None
    return float(raw)


def _coords(params: dict) -> dict:
    return {k: _optional_float(params, k) for k in ("ra", "dec", "alt", "az")}


# Command name -> (client method, argument builder)
COMMANDS: Dict[str, tuple] = {
    "target": ("set_target", _coords),
    "slew": ("slew", lambda p: {
        "coords": _coords(p),
        "slew_type": p.get("slew_type", "equatorial"),
        "pier_side": p.get("pier_side") or None,
    }),
    "tracking": ("set_tracking", lambda p: {"tracking": _to_bool(p.get("tracking", False))}),
    "flip": ("flip_pier_side", lambda p: {}),
    "park": ("park", lambda p: {}),
    "unpark": ("unpark", lambda p: {}),
    "nudge": ("nudge", lambda p: {
        "direction": p.get("direction", ""),
        "duration_ms": int(p.get("duration_ms", 0)),
    }),
    "move": ("move", lambda p: {"direction": p.get("direction", "")}),
    "halt": ("halt", lambda p: {"direction": p.get("direction") or None}),
    "stop": ("stop", lambda p: {}),
    "dome_slave": ("set_dome_slave", lambda p: {"slave": _to_bool(p.get("slave", False))}),
    "dome_slew": ("slew_dome", lambda p: {"azimuth": float(p["az"])}),
    "dome_stop": ("stop_dome", lambda p: {}),
    "shutter_open": ("open_shutter", lambda p: {}),
    "shutter_close": ("close_shutter", lambda p: {}),
}


class DashboardServer:
    """Flask REST server for the observatory dashboard.

    Args:
        controller: Reference to the running ``ObservatoryController``.
        host: Network interface to listen on (default ``0.0.0.0``).
        port: TCP port (default ``8080``).
    """

    def __init__(self, controller, host: str = "0.0.0.0", port: int = 8080):
        self._controller = controller
        self._host = host
        self._port = port
        self._tid = itertools.count(1)
        self._thread: Optional[threading.Thread] = None

        # Flask app (suppress default request logging for cleanliness)
        self._app = Flask("DashboardServer")
        log = logging.getLogger("werkzeug")
        log.setLevel(logging.WARNING)
        self._register_routes()

    # ------------------------------------------------------------------
    # Route registration
    # ------------------------------------------------------------------
    def _register_routes(self) -> None:  # noqa: C901 (route table)
        app = self._app
        prefix = "/api/v1"

        # --- Telemetry ----------------------------------------------------
        @app.route(f"{prefix}/state", methods=["GET"])
        def get_state():
            state = self._controller.snapshot()
            return jsonify(_response(state.to_dict(), server_tid=next(self._tid)))

        @app.route(f"{prefix}/history", methods=["GET"])
        def get_history():
            state = self._controller.snapshot()
            return jsonify(_response(state.history_dicts(), server_tid=next(self._tid)))

        @app.route(f"{prefix}/status", methods=["GET"])
        def get_status():
            state = self._controller.snapshot()
            last = self._controller.last_update
            return jsonify(_response({
                "connectionStatus": state.system.connection_status.value,
                "sequence": state.sequence,
                "lastUpdate": last.isoformat() if last else None,
            }, server_tid=next(self._tid)))

        # --- Renderer interface -------------------------------------------
        @app.route(f"{prefix}/render", methods=["GET"])
        def get_render():
            bundle = self._controller.render_bundle()
            return jsonify(_response(bundle.to_dict(), server_tid=next(self._tid)))

        # --- Geometry settings --------------------------------------------
        @app.route(f"{prefix}/geometry", methods=["GET"])
        def get_geometry():
            geometry = self._controller.geometry
            return jsonify(_response(geometry.to_config(), server_tid=next(self._tid)))

        @app.route(f"{prefix}/geometry", methods=["PUT"])
        def put_geometry():
            tid = next(self._tid)
            body = request.get_json(silent=True)
            if not isinstance(body, dict):
                return jsonify(_response(
                    error_number=ERROR_INVALID_VALUE,
                    error_message="Expected a JSON object",
                    server_tid=tid,
                ))
            try:
                geometry = self._controller.update_geometry(body)
            except ValueError as exc:
                return jsonify(_response(
                    error_number=ERROR_INVALID_VALUE,
                    error_message=str(exc),
                    server_tid=tid,
                ))
            return jsonify(_response(geometry.to_config(), server_tid=tid))

        # --- Commands -----------------------------------------------------
        @app.route(f"{prefix}/command/<name>", methods=["POST", "PUT"])
        def post_command(name):
            tid = next(self._tid)
            entry = COMMANDS.get(name)
            if entry is None:
                return jsonify(_response(
                    error_number=ERROR_NOT_IMPLEMENTED,
                    error_message=f"Unknown command '{name}'",
                    server_tid=tid,
                ))
            method, build_args = entry
            try:
                kwargs = build_args(_params())
                result = self._controller.send_command(method, **kwargs)
            except (KeyError, TypeError, ValueError) as exc:
                return jsonify(_response(
                    error_number=ERROR_INVALID_VALUE,
                    error_message=f"Invalid argument: {exc}",
                    server_tid=tid,
                ))
            except RuntimeError as exc:
                return jsonify(_response(
                    error_number=ERROR_INVALID_OPERATION,
                    error_message=str(exc),
                    server_tid=tid,
                ))
            except ApiError as exc:
                logger.error("Command %s failed: %s", name, exc)
                return jsonify(_response(
                    error_number=ERROR_UNEXPECTED,
                    error_message=str(exc),
                    server_tid=tid,
                ))
            except Exception as exc:
                logger.error("Command %s failed: %s", name, exc)
                return jsonify(_response(
                    error_number=ERROR_UNEXPECTED,
                    error_message=f"Control server unreachable: {exc}",
                    server_tid=tid,
                ))
            logger.info("Command %s forwarded", name)
            return jsonify(_response(result, server_tid=tid))

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the dashboard server in a background daemon thread."""
        self._thread = threading.Thread(
            target=self._run_server, name="DashboardServer", daemon=True
        )
        self._thread.start()
        logger.info(
            "Dashboard server started on %s:%d", self._host, self._port
        )

    def _run_server(self) -> None:
        self._app.run(
            host=self._host, port=self._port, threaded=True, use_reloader=False
        )

    def shutdown(self) -> None:
        """Request the server to stop (best-effort for daemon thread)."""
        logger.info("Dashboard server shutdown requested")
