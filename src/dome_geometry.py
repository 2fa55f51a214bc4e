"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Dome & Slit Geometry Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Converts dome azimuth and shutter state into render angles, and derives
the world-space clipping planes that cut the slit out of the dome shell.

Frame conventions (renderer frame): +X east, +Y up (zenith), +Z south,
right-handed.  Azimuth is measured from north through east, i.e.
clockwise seen from above, which is a *negative* rotation about +Y.  In
the dome's own (rotating) frame the slit centreline points to local
north (-Z), so azimuth 0 puts the slit over north and 90 over east.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from models import ShutterState

logger = logging.getLogger(__name__)

DEFAULT_SLIT_START_ANGLE = 20.0  # degrees above the horizon

# Shutter states that drive the shutter to its fully open position
_SHUTTER_OPEN = {
    ShutterState.OPEN: True,
    ShutterState.OPENING: True,
    ShutterState.CLOSED: False,
    ShutterState.CLOSING: False,
    ShutterState.UNKNOWN: False,
}


@dataclass
class DomeConfig:
    """Dome shell parameters from the ``dome`` config section."""
    radius: float = 2.5
    slit_width: float = 0.5
    slit_start_angle: float = DEFAULT_SLIT_START_ANGLE
    center: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @classmethod
    def from_config(cls, section: Optional[Dict[str, Any]]) -> "DomeConfig":
        section = section or {}
        center = section.get("center", {}) or {}
        return cls(
            radius=float(section.get("radius", cls.radius)),
            slit_width=float(section.get("slit_width", cls.slit_width)),
            slit_start_angle=float(section.get("slit_start_angle", cls.slit_start_angle)),
            center=(
                float(center.get("x", 0.0)),
                float(center.get("y", 0.0)),
                float(center.get("z", 0.0)),
            ),
        )


@dataclass(frozen=True)
class DomeAngles:
    dome_rotation_rad: float
    shutter_angle_rad: float
    shutter_open_fraction: float

    def to_dict(self) -> dict:
        return {
            "domeRotationRad": self.dome_rotation_rad,
            "shutterAngleRad": self.shutter_angle_rad,
            "shutterOpenFraction": self.shutter_open_fraction,
        }


@dataclass(frozen=True)
class ClippingPlane:
    """Plane ``normal · p + constant = 0`` in world space."""
    normal: Tuple[float, float, float]
    constant: float

    def distance(self, point: Sequence[float]) -> float:
        return float(np.dot(self.normal, point) + self.constant)

    def to_dict(self) -> dict:
        return {"normal": list(self.normal), "constant": self.constant}


def shutter_terminal_angle(slit_start_angle: float = DEFAULT_SLIT_START_ANGLE) -> float:
    """Shutter travel (radians) from closed to fully open past the zenith."""
    return math.pi / 2.0 - math.radians(slit_start_angle)


def dome_rotation(azimuth: float) -> float:
    """Rotation about +Y (radians) that brings the slit to *azimuth*."""
    return -math.radians(azimuth % 360.0)


def compute_dome_angles(azimuth: float, shutter_state,
                        slit_start_angle: float = DEFAULT_SLIT_START_ANGLE) -> DomeAngles:
    """Target dome rotation and shutter opening for one snapshot.

    Args:
        azimuth: Dome azimuth in degrees (north = 0, east = 90).
        shutter_state: :class:`ShutterState` or its string value;
            unrecognised values close the shutter.
        slit_start_angle: Height of the slit's lower edge above the horizon
            (degrees); fixes the fully open shutter angle.
    """
    state = ShutterState.parse(shutter_state)
    is_open = _SHUTTER_OPEN[state]
    terminal = shutter_terminal_angle(slit_start_angle)
    return DomeAngles(
        dome_rotation_rad=dome_rotation(azimuth),
        shutter_angle_rad=terminal if is_open else 0.0,
        shutter_open_fraction=1.0 if is_open else 0.0,
    )


def _rotation_y(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def local_slit_planes(slit_width: float) -> List[ClippingPlane]:
    """Slit planes in the dome's own frame.

    The slit is the region where *every* plane has negative distance:
    ``|x| < slit_width / 2`` on the north (-Z) half of the shell.
    """
    half = slit_width / 2.0
    return [
        ClippingPlane((1.0, 0.0, 0.0), -half),
        ClippingPlane((-1.0, 0.0, 0.0), -half),
        ClippingPlane((0.0, 0.0, 1.0), 0.0),
    ]


def slit_clipping_planes(dome_rotation_rad: float, slit_width: float,
                         center: Sequence[float] = (0.0, 0.0, 0.0)) -> List[ClippingPlane]:
    """Re-derive the slit planes in world space for the current rotation.

    Must be called for every frame the dome orientation changes so the slit
    stays fixed to the rotating shell.
    """
    rot = _rotation_y(dome_rotation_rad)
    c = np.asarray(center, dtype=float)
    planes = []
    for plane in local_slit_planes(slit_width):
        normal = rot @ np.asarray(plane.normal)
        constant = plane.constant - float(np.dot(normal, c))
        planes.append(ClippingPlane(tuple(float(v) for v in normal), constant))
    return planes


def point_in_slit(point: Sequence[float], planes: Sequence[ClippingPlane]) -> bool:
    """``True`` when *point* lies in the open slit region."""
    return all(plane.distance(point) < 0.0 for plane in planes)


def slit_direction(dome_rotation_rad: float) -> np.ndarray:
    """Horizontal world unit vector along the slit centreline."""
    return _rotation_y(dome_rotation_rad) @ np.array([0.0, 0.0, -1.0])
