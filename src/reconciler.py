"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
State Reconciler Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Merges each tick's partial results into the previous canonical state.
Every field group (telescope, dome, motors, system, weather, time) is
merged on its own, so a failing source only freezes its own group.  The
motor temperature history is a rolling window of the last
``HISTORY_LIMIT`` records.
"""

import logging
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import astropy.units as u
from astropy.time import Time
from astropy.utils import iers

from coordinates import format_hms, parse_coordinate
from models import (
    HISTORY_LIMIT,
    ConnectionStatus,
    DomeState,
    HistoryRecord,
    MotorTemperatures,
    ObservatoryState,
    PierSide,
    ShutterState,
    Source,
    SystemState,
    TelemetryBatch,
    TelescopeState,
    TimeState,
    WeatherState,
)

logger = logging.getLogger(__name__)


def _as_bool(raw: Any) -> bool:
    """Accept real booleans, numbers and the usual true/false strings."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    return str(raw).strip().lower() in ("true", "1", "yes", "on")


# Mount status key -> (state field, converter)
_TELESCOPE_FIELDS = {
    "ra_str": ("ra", parse_coordinate),
    "dec_str": ("dec", parse_coordinate),
    "alt_str": ("alt", parse_coordinate),
    "az_str": ("az", parse_coordinate),
    "is_tracking": ("is_tracking", _as_bool),
    "status": ("status", str),
    "pier_side": ("pier_side", PierSide.parse),
}

# Open-Meteo ``current`` key -> weather field
_WEATHER_FIELDS = {
    "temperature_2m": "temperature",
    "relative_humidity_2m": "humidity",
    "cloud_cover": "cloud_cover",
    "wind_speed_10m": "wind_speed",
    "wind_direction_10m": "wind_direction",
    "surface_pressure": "pressure",
}


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _mount_ready(status: str) -> bool:
    lowered = status.lower()
    return "tracking" in lowered or "stopped" in lowered


def _disk_usage(disks: Any) -> float:
    """Usage of the root filesystem, else the first disk, else 0."""
    if not isinstance(disks, list) or not disks:
        return 0.0
    for disk in disks:
        if isinstance(disk, dict) and disk.get("mountpoint") == "/":
            return _as_float(disk.get("percent"))
    first = disks[0]
    return _as_float(first.get("percent")) if isinstance(first, dict) else 0.0


def _system_temperature(sensors: Any) -> float:
    """First ``current`` reading of the first reported sensor."""
    if not isinstance(sensors, dict) or not sensors:
        return 0.0
    readings = next(iter(sensors.values()))
    if not isinstance(readings, list) or not readings:
        return 0.0
    first = readings[0]
    return _as_float(first.get("current")) if isinstance(first, dict) else 0.0


class StateReconciler:
    """Single writer of the canonical :class:`ObservatoryState`.

    Args:
        longitude: Observatory longitude in degrees (east positive), used
            to derive local sidereal time when the server omits it.
        history_limit: Size of the motor temperature window.
    """

    def __init__(self, longitude: float = 0.0, history_limit: int = HISTORY_LIMIT):
        self.longitude = longitude
        self.history_limit = history_limit
        # Merges run on the acquisition loop; use the bundled IERS tables
        # instead of blocking on a download
        iers.conf.auto_download = False

    # ---- Public API -----------------------------------------------------
    def merge(self, previous: ObservatoryState, batch: TelemetryBatch,
              now: Optional[datetime] = None) -> ObservatoryState:
        """Fold one tick's samples into *previous* and return the new state.

        *previous* is left untouched.  Merging the same batch twice gives
        the same state apart from the (append-only) history.

        Args:
            previous: Canonical state before this tick.
            batch: Samples produced by the acquisition scheduler.
            now: Arrival time used to stamp the history record.
        """
        if now is None:
            now = datetime.now()

        telescope = self._merge_telescope(
            previous.telescope, batch.ok_payload(Source.MOUNT))
        dome = self._merge_dome(
            previous.dome,
            batch.ok_payload(Source.DOME),
            batch.ok_payload(Source.DOME_SYNC),
        )
        motors, history = self._merge_motors(
            previous.motors, previous.history,
            batch.ok_payload(Source.TEMPERATURES), now,
        )
        system = self._merge_system(
            previous.system, batch.ok_payload(Source.SYSTEM), batch.latency_ms)
        weather = previous.weather
        if batch.weather_fetched:
            weather = self._merge_weather(
                previous.weather, batch.ok_payload(Source.WEATHER))
        time_state = self._merge_time(previous.time, batch.ok_payload(Source.TIME))

        merged = ObservatoryState(
            telescope=telescope,
            dome=dome,
            motors=motors,
            history=history,
            system=system,
            weather=weather,
            time=time_state,
            sequence=batch.sequence,
        )
        logger.debug(
            "Tick %d merged: status=%s ra=%.4fh dec=%.4f° dome=%.1f°",
            batch.sequence, system.connection_status.value,
            telescope.ra, telescope.dec, dome.azimuth,
        )
        return merged

    def mark_disconnected(self, previous: ObservatoryState) -> ObservatoryState:
        """State after a tick that raised: only the link status changes."""
        if previous.system.connection_status is not ConnectionStatus.DISCONNECTED:
            logger.warning("Connection to control server lost")
        return previous.with_status(ConnectionStatus.DISCONNECTED)

    # ---- Field groups ---------------------------------------------------
    def _merge_telescope(self, previous: TelescopeState,
                         payload: Optional[Dict[str, Any]]) -> TelescopeState:
        if payload is None:
            return previous
        updates = {}
        for key, (attr, convert) in _TELESCOPE_FIELDS.items():
            if key not in payload or payload[key] is None:
                continue
            updates[attr] = convert(payload[key])
        merged = replace(previous, **updates)
        return replace(merged, mount_ready=_mount_ready(merged.status))

    def _merge_dome(self, previous: DomeState,
                    payload: Optional[Dict[str, Any]],
                    sync_payload: Optional[Dict[str, Any]]) -> DomeState:
        if payload is None:
            return previous
        is_slaved = previous.is_slaved
        if sync_payload is not None:
            is_slaved = _as_bool(sync_payload.get("dome_sync", False))
        return DomeState(
            azimuth=_as_float(payload.get("az")),
            is_moving=_as_bool(payload.get("moving", False)),
            is_slaved=is_slaved,
            shutter_state=ShutterState.parse(payload.get("shutter_status")),
        )

    def _merge_motors(self, previous: MotorTemperatures, history,
                      payload: Optional[Dict[str, Any]], now: datetime):
        if payload is None:
            return previous, history
        readings = MotorTemperatures.from_payload(payload)
        record = HistoryRecord(timestamp=now.strftime("%H:%M:%S"), readings=readings)
        history = (tuple(history) + (record,))[-self.history_limit:]
        return readings, history

    def _merge_system(self, previous: SystemState,
                      payload: Optional[Dict[str, Any]],
                      latency_ms: float) -> SystemState:
        if payload is None:
            if previous.connection_status is ConnectionStatus.CONNECTED:
                logger.warning("System status missing from batch – connection error")
            return replace(previous, connection_status=ConnectionStatus.ERROR)
        return SystemState(
            connection_status=ConnectionStatus.CONNECTED,
            cpu_usage=_as_float(payload.get("cpu_usage")),
            memory_usage=_as_float(payload.get("memory_usage")),
            disk_usage=_disk_usage(payload.get("disks")),
            api_latency_ms=latency_ms,
            system_temp_c=_system_temperature(payload.get("cpu_temperature")),
            uptime=str(payload.get("uptime", previous.uptime)),
        )

    def _merge_weather(self, previous: WeatherState,
                       payload: Optional[Dict[str, Any]]) -> WeatherState:
        if payload is None:
            return previous
        current = payload.get("current")
        if not isinstance(current, dict):
            logger.warning("Weather response has no 'current' block – keeping previous")
            return previous
        updates = {}
        for key, attr in _WEATHER_FIELDS.items():
            if key in current:
                updates[attr] = _as_float(current[key], getattr(previous, attr))
        return replace(previous, **updates)

    def _merge_time(self, previous: TimeState,
                    payload: Optional[Dict[str, Any]]) -> TimeState:
        if payload is None:
            return previous
        try:
            local_time = datetime.fromisoformat(
                f"{payload['local_date']}T{payload['local_time']}")
            utc_time = datetime.fromisoformat(
                f"{payload['utc_date']}T{payload['utc_time']}").replace(
                    tzinfo=timezone.utc)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Unparseable time payload %r – keeping previous: %s",
                           payload, exc)
            return previous

        sidereal = payload.get("sidereal_time")
        if not isinstance(sidereal, str) or not sidereal:
            sidereal = self._derive_sidereal(utc_time, previous.sidereal_time)

        julian = payload.get("julian_date")
        try:
            julian_date = float(julian)
        except (TypeError, ValueError):
            julian_date = float(Time(utc_time, scale="utc").jd)

        return TimeState(
            local_time=local_time,
            utc_time=utc_time,
            sidereal_time=sidereal,
            julian_date=julian_date,
        )

    def _derive_sidereal(self, utc_time: datetime, fallback: str) -> str:
        """Apparent local sidereal time at the observatory as ``HH:MM:SS``."""
        try:
            lst = Time(utc_time, scale="utc").sidereal_time(
                "apparent", longitude=self.longitude * u.deg)
        except Exception as exc:
            logger.warning("Could not derive sidereal time: %s", exc)
            return fallback
        return format_hms(lst.hour)
