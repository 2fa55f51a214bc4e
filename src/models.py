"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Data Model Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Typed records for the telemetry pipeline: raw per-source samples, the
canonical observatory state assembled from them, the motor temperature
history and the user-editable mount geometry.  All records are immutable;
the reconciler produces a new state on every tick.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Number of motor temperature records kept for the time-series chart
HISTORY_LIMIT = 100


# ---------------------------------------------------------------------------
# Closed enumerations
# ---------------------------------------------------------------------------
class PierSide(Enum):
    """Side of the pier the telescope tube currently sits on."""
    EAST = "East"
    WEST = "West"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: Any) -> "PierSide":
        """Map a server string (any case) to a member; unknown → UNKNOWN."""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return cls.UNKNOWN
        value = raw.strip().lower()
        if value == "east":
            return cls.EAST
        if value == "west":
            return cls.WEST
        return cls.UNKNOWN


class ShutterState(Enum):
    """Dome shutter state as reported by the control server."""
    OPEN = "open"
    CLOSED = "closed"
    OPENING = "opening"
    CLOSING = "closing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "ShutterState":
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return cls.UNKNOWN
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ConnectionStatus(Enum):
    """Link state shown in the dashboard header.

    * **CONNECTED**: the last tick produced system data.
    * **ERROR**: the last tick completed but system data was missing.
    * **DISCONNECTED**: idle before the first tick, or the last tick raised.
    """
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Source(Enum):
    """Telemetry sources polled on every tick (weather on its own cadence)."""
    MOUNT = "mount_status"
    DOME = "dome_status"
    DOME_SYNC = "dome_sync_status"
    TEMPERATURES = "temperatures"
    SYSTEM = "system_status"
    TIME = "time"
    WEATHER = "weather"


PRIMARY_SOURCES: Tuple[Source, ...] = (
    Source.MOUNT,
    Source.DOME,
    Source.DOME_SYNC,
    Source.TEMPERATURES,
    Source.SYSTEM,
    Source.TIME,
)


# ---------------------------------------------------------------------------
# Raw acquisition records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RawTelemetrySample:
    """One source's unparsed response, tagged with its outcome."""
    source: Source
    ok: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, source: Source, payload: Any) -> "RawTelemetrySample":
        return cls(source=source, ok=True,
                   payload=payload if isinstance(payload, dict) else {})

    @classmethod
    def failure(cls, source: Source, error: Any) -> "RawTelemetrySample":
        return cls(source=source, ok=False, error=str(error))


@dataclass(frozen=True)
class TelemetryBatch:
    """Everything one acquisition tick produced."""
    sequence: int
    samples: Tuple[RawTelemetrySample, ...] = ()
    latency_ms: float = 0.0
    weather_fetched: bool = False
    started_at: float = 0.0

    def sample(self, source: Source) -> Optional[RawTelemetrySample]:
        for s in self.samples:
            if s.source is source:
                return s
        return None

    def ok_payload(self, source: Source) -> Optional[Dict[str, Any]]:
        """Return the payload of a successful sample, else ``None``."""
        s = self.sample(source)
        if s is None or not s.ok:
            return None
        return s.payload or {}


# ---------------------------------------------------------------------------
# Canonical state groups
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TelescopeState:
    ra: float = 0.0            # hours
    dec: float = 0.0           # degrees
    alt: float = 0.0           # degrees
    az: float = 0.0            # degrees
    is_tracking: bool = False
    mount_ready: bool = False
    status: str = "Unknown"
    pier_side: PierSide = PierSide.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "ra": self.ra,
            "dec": self.dec,
            "alt": self.alt,
            "az": self.az,
            "isTracking": self.is_tracking,
            "mountReady": self.mount_ready,
            "status": self.status,
            "pierSide": self.pier_side.value,
        }


@dataclass(frozen=True)
class DomeState:
    azimuth: float = 0.0
    is_moving: bool = False
    is_slaved: bool = False
    shutter_state: ShutterState = ShutterState.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "azimuth": self.azimuth,
            "isMoving": self.is_moving,
            "isSlaved": self.is_slaved,
            "shutterState": self.shutter_state.value,
        }


@dataclass(frozen=True)
class MotorTemperatures:
    """Eight optional temperature probes (°C); ``None`` = not reported."""
    motor_ra_az: Optional[float] = None
    motor_dec_alt: Optional[float] = None
    motor_ra_az_driver: Optional[float] = None
    motor_dec_alt_driver: Optional[float] = None
    electronics_box: Optional[float] = None
    keypad_display: Optional[float] = None
    keypad_pcb: Optional[float] = None
    keypad_controller: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "MotorTemperatures":
        values = {}
        for f in fields(cls):
            raw = payload.get(f.name)
            try:
                values[f.name] = None if raw is None else float(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric temperature %s=%r", f.name, raw)
                values[f.name] = None
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "motorRaAz": self.motor_ra_az,
            "motorDecAlt": self.motor_dec_alt,
            "motorRaAzDriver": self.motor_ra_az_driver,
            "motorDecAltDriver": self.motor_dec_alt_driver,
            "electronicsBox": self.electronics_box,
            "keypadDisplay": self.keypad_display,
            "keypadPcb": self.keypad_pcb,
            "keypadController": self.keypad_controller,
        }


@dataclass(frozen=True)
class HistoryRecord:
    timestamp: str
    readings: MotorTemperatures

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, **self.readings.to_dict()}


@dataclass(frozen=True)
class SystemState:
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    api_latency_ms: float = 0.0
    system_temp_c: float = 0.0
    uptime: str = "0h 0m 0s"

    def to_dict(self) -> dict:
        return {
            "connectionStatus": self.connection_status.value,
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "diskUsage": self.disk_usage,
            "apiLatency": self.api_latency_ms,
            "systemTemp": self.system_temp_c,
            "uptime": self.uptime,
        }


@dataclass(frozen=True)
class WeatherState:
    temperature: float = 0.0
    humidity: float = 0.0
    cloud_cover: float = 0.0
    wind_speed: float = 0.0
    wind_direction: float = 0.0
    pressure: float = 0.0

    def to_dict(self) -> dict:
        return {
            "temperature": self.temperature,
            "humidity": self.humidity,
            "cloudCover": self.cloud_cover,
            "windSpeed": self.wind_speed,
            "windDirection": self.wind_direction,
            "pressure": self.pressure,
        }


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeState:
    local_time: datetime = _EPOCH.replace(tzinfo=None)
    utc_time: datetime = _EPOCH
    sidereal_time: str = "00:00:00"
    julian_date: float = 0.0

    def to_dict(self) -> dict:
        return {
            "localTime": self.local_time.isoformat(),
            "utcTime": self.utc_time.isoformat(),
            "siderealTime": self.sidereal_time,
            "julianDate": self.julian_date,
        }


@dataclass(frozen=True)
class ObservatoryState:
    """Canonical snapshot of the whole observatory."""
    telescope: TelescopeState = field(default_factory=TelescopeState)
    dome: DomeState = field(default_factory=DomeState)
    motors: MotorTemperatures = field(default_factory=MotorTemperatures)
    history: Tuple[HistoryRecord, ...] = ()
    system: SystemState = field(default_factory=SystemState)
    weather: WeatherState = field(default_factory=WeatherState)
    time: TimeState = field(default_factory=TimeState)
    sequence: int = 0

    @classmethod
    def initial(cls) -> "ObservatoryState":
        """Idle state shown before the first successful tick."""
        return cls()

    def with_status(self, status: ConnectionStatus) -> "ObservatoryState":
        return replace(self, system=replace(self.system, connection_status=status))

    def history_dicts(self) -> List[dict]:
        return [rec.to_dict() for rec in self.history]

    def to_dict(self) -> dict:
        return {
            "telescope": self.telescope.to_dict(),
            "dome": self.dome.to_dict(),
            "motors": {**self.motors.to_dict(), "history": self.history_dicts()},
            "system": self.system.to_dict(),
            "weather": self.weather.to_dict(),
            "time": self.time.to_dict(),
            "sequence": self.sequence,
        }


# ---------------------------------------------------------------------------
# Mount geometry (user-editable, persisted in config.yaml)
# ---------------------------------------------------------------------------
@dataclass
class GeometryConfig:
    """Physical dimensions of the pier, mount and optical tube (metres).

    Only read by the kinematic transform; edited and persisted through the
    ``geometry`` section of ``config.yaml``.
    """
    # Pier
    pier_height: float = 1.2
    pier_diameter: float = 0.82
    pier_elevator_height: float = 0.24
    # Mount base / offset of the RA pivot from the pier centre (+x east, +z south)
    mount_height: float = 0.2
    mount_offset_x: float = 0.0479
    mount_offset_z: float = -0.1316
    # Polar (RA) axis
    polar_axis_length: float = 0.18
    polar_axis_diameter: float = 0.12
    # Declination axis
    dec_axis_length: float = 0.28
    dec_axis_diameter: float = 0.11
    # Counterweight
    cw_shaft_length: float = 0.4
    cw_shaft_diameter: float = 0.04
    cw_weight_count: int = 3
    cw_weight_diameter: float = 0.18
    cw_weight_thickness: float = 0.06
    cw_weight_gap: float = 0.04
    cw_first_position: float = 0.05
    # Telescope tube
    tube_length: float = 0.74
    tube_diameter: float = 0.35
    tube_pivot_pos: float = 0.24

    @classmethod
    def from_config(cls, section: Optional[Dict[str, Any]]) -> "GeometryConfig":
        """Build from a config dict; bad values fall back to the default."""
        geometry = cls()
        if not isinstance(section, dict):
            return geometry
        for f in fields(cls):
            if f.name not in section:
                continue
            raw = section[f.name]
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                logger.warning(
                    "Geometry key '%s' has wrong type (%s), using default %r",
                    f.name, type(raw).__name__, getattr(geometry, f.name),
                )
                continue
            value = int(raw) if f.type in (int, "int") else float(raw)
            setattr(geometry, f.name, value)
        return geometry

    def to_config(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
