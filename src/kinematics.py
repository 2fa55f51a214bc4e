"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
GEM Kinematics Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Forward kinematics for a German Equatorial Mount (GEM).  The normalized
astronomical state (RA, Dec, sidereal time, pier side, latitude) is turned
into four rotation angles that must be applied as a nested chain:

    latitude tilt (world X) -> hour angle (polar Y) -> pier flip (polar Y)
    -> declination (local X, perpendicular to the polar axis)

Each rotation is about an axis of its parent's frame.  Flattening the
chain into independent world-space angles points the tube elsewhere.

Renderer frame: +X east, +Y up, +Z south (right-handed).
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from coordinates import hms_to_hours
from dome_geometry import (
    ClippingPlane,
    DomeAngles,
    DomeConfig,
    compute_dome_angles,
    slit_clipping_planes,
)
from models import GeometryConfig, ObservatoryState, PierSide

logger = logging.getLogger(__name__)

SIDEREAL_HOURS_TO_DEGREES = 15.0


@dataclass(frozen=True)
class MountAngles:
    """Target rotation angles (radians) for the mount hierarchy."""
    latitude_tilt_rad: float
    hour_angle_rad: float
    pier_flip_rad: float
    declination_rad: float

    def chain(self) -> List[Tuple[str, str, float]]:
        """Ordered ``(body, local axis, angle)`` list, outermost first."""
        return [
            ("polar_axis", "x", self.latitude_tilt_rad),
            ("hour_angle", "y", self.hour_angle_rad),
            ("pier_flip", "y", self.pier_flip_rad),
            ("declination", "x", self.declination_rad),
        ]

    def to_dict(self) -> dict:
        return {
            "latitudeTiltRad": self.latitude_tilt_rad,
            "hourAngleRad": self.hour_angle_rad,
            "pierFlipRad": self.pier_flip_rad,
            "declinationRad": self.declination_rad,
        }


def compute_mount_angles(ra: float, dec: float, sidereal_time: str,
                         pier_side, latitude: float) -> MountAngles:
    """Compute the GEM rotation chain for one snapshot.

    Args:
        ra: Right ascension in hours.
        dec: Declination in degrees.
        sidereal_time: Local sidereal time as ``HH:MM:SS``; malformed input
            contributes 0 to the hour angle.
        pier_side: :class:`PierSide` or its string; only ``East`` gives a
            zero flip, anything else (West, Unknown, garbage) gives π.
        latitude: Observatory latitude in degrees.

    Returns:
        :class:`MountAngles` with hour angle = (LST - RA) * 15° in radians.
    """
    lst_hours = hms_to_hours(sidereal_time)
    ha_hours = lst_hours - ra
    hour_angle_rad = math.radians(ha_hours * SIDEREAL_HOURS_TO_DEGREES)
    pier_flip_rad = 0.0 if PierSide.parse(pier_side) is PierSide.EAST else math.pi
    return MountAngles(
        latitude_tilt_rad=-math.radians(latitude),
        hour_angle_rad=hour_angle_rad,
        pier_flip_rad=pier_flip_rad,
        declination_rad=math.radians(dec),
    )


# ---------------------------------------------------------------------------
# Rotation chain
# ---------------------------------------------------------------------------
def rotation_matrix(axis: str, angle: float) -> np.ndarray:
    """Right-handed 3x3 rotation about the ``x``, ``y`` or ``z`` axis."""
    c, s = math.cos(angle), math.sin(angle)
    if axis == "x":
        return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])
    if axis == "y":
        return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])
    if axis == "z":
        return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    raise ValueError(f"Unknown rotation axis {axis!r}")


def compose_chain(angles: MountAngles) -> Dict[str, np.ndarray]:
    """World orientation of every body in the chain.

    Each orientation is the parent's orientation times the body's own
    local rotation, applied in :meth:`MountAngles.chain` order.
    """
    frames: Dict[str, np.ndarray] = {}
    current = np.eye(3)
    for body, axis, angle in angles.chain():
        current = current @ rotation_matrix(axis, angle)
        frames[body] = current
    return frames


@dataclass(frozen=True)
class MountPose:
    """World-space positions (metres) and unit axes of the mount bodies."""
    pier_top: np.ndarray
    polar_pivot: np.ndarray
    dec_axis_head: np.ndarray
    tube_pivot: np.ndarray
    tube_front: np.ndarray
    counterweight_end: np.ndarray
    polar_axis: np.ndarray
    dec_axis: np.ndarray
    tube_axis: np.ndarray

    def to_dict(self) -> dict:
        return {
            "pierTop": self.pier_top.tolist(),
            "polarPivot": self.polar_pivot.tolist(),
            "decAxisHead": self.dec_axis_head.tolist(),
            "tubePivot": self.tube_pivot.tolist(),
            "tubeFront": self.tube_front.tolist(),
            "counterweightEnd": self.counterweight_end.tolist(),
            "polarAxis": self.polar_axis.tolist(),
            "decAxis": self.dec_axis.tolist(),
            "tubeAxis": self.tube_axis.tolist(),
        }


def compute_mount_pose(angles: MountAngles, geometry: GeometryConfig) -> MountPose:
    """Place the pier -> base -> polar axis -> dec axis -> tube/counterweight
    hierarchy in world space.

    The polar axis is the tilted frame's local +Y, the declination axis the
    pier-flip frame's local +X (counterweight shaft along -X) and the tube
    the declination frame's local +Z.
    """
    frames = compose_chain(angles)
    ex, ey, ez = np.eye(3)

    base = np.array([geometry.mount_offset_x, 0.0, geometry.mount_offset_z])
    pier_top = base + np.array([0.0, geometry.pier_height, 0.0])
    polar_pivot = pier_top + np.array([0.0, geometry.mount_height, 0.0])

    r_flip = frames["pier_flip"]
    r_dec = frames["declination"]
    # RA housing sits half an axis length up the polar axis, dec assembly at its top
    dec_origin = polar_pivot + frames["hour_angle"] @ (ey * geometry.polar_axis_length / 2.0)
    dec_origin = dec_origin + r_flip @ (ey * geometry.polar_axis_length / 2.0)

    dec_axis_head = dec_origin + r_flip @ (ex * geometry.dec_axis_length)
    counterweight_end = dec_origin - r_flip @ (ex * geometry.cw_shaft_length)
    tube_pivot = dec_axis_head
    tube_front = tube_pivot + r_dec @ (
        ez * (1.0 - geometry.tube_pivot_pos) * geometry.tube_length)

    return MountPose(
        pier_top=pier_top,
        polar_pivot=polar_pivot,
        dec_axis_head=dec_axis_head,
        tube_pivot=tube_pivot,
        tube_front=tube_front,
        counterweight_end=counterweight_end,
        polar_axis=frames["polar_axis"] @ ey,
        dec_axis=r_flip @ ex,
        tube_axis=r_dec @ ez,
    )


# ---------------------------------------------------------------------------
# Renderer interface
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RenderBundle:
    """Everything the renderer needs for one snapshot (targets, no smoothing)."""
    mount: MountAngles
    dome: DomeAngles
    clipping_planes: Tuple[ClippingPlane, ...]
    pose: MountPose

    def to_dict(self) -> dict:
        return {
            "mount": self.mount.to_dict(),
            "dome": self.dome.to_dict(),
            "clippingPlanes": [p.to_dict() for p in self.clipping_planes],
            "pose": self.pose.to_dict(),
        }


def compute_render_bundle(state: ObservatoryState, geometry: GeometryConfig,
                          latitude: float, dome_config: DomeConfig) -> RenderBundle:
    """Pure function from a canonical snapshot to render-ready angles."""
    telescope = state.telescope
    mount = compute_mount_angles(
        telescope.ra, telescope.dec, state.time.sidereal_time,
        telescope.pier_side, latitude,
    )
    dome = compute_dome_angles(
        state.dome.azimuth, state.dome.shutter_state, dome_config.slit_start_angle,
    )
    planes = slit_clipping_planes(
        dome.dome_rotation_rad, dome_config.slit_width, dome_config.center,
    )
    return RenderBundle(
        mount=mount,
        dome=dome,
        clipping_planes=tuple(planes),
        pose=compute_mount_pose(mount, geometry),
    )
