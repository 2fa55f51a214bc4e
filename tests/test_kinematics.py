"""Tests for the GEM forward kinematics (src/kinematics.py)."""

import math
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

# Ensure the src package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from dome_geometry import DomeConfig
from kinematics import (
    MountAngles,
    compose_chain,
    compute_mount_angles,
    compute_mount_pose,
    compute_render_bundle,
    rotation_matrix,
)
from models import (
    DomeState,
    GeometryConfig,
    ObservatoryState,
    PierSide,
    ShutterState,
    TelescopeState,
    TimeState,
)

LATITUDE = -33.8559799094


def _angles(pier_side="East", ra=9.0, dec=-45.0, lst="10:00:00", lat=LATITUDE):
    return compute_mount_angles(ra, dec, lst, pier_side, lat)


# ---------------------------------------------------------------------------
# Angle computation
# ---------------------------------------------------------------------------
class TestMountAngles:
    def test_hour_angle_one_hour(self):
        angles = _angles()
        assert angles.hour_angle_rad == pytest.approx(math.radians(15.0))

    def test_hour_angle_independent_of_dec_and_pier(self):
        reference = _angles().hour_angle_rad
        assert _angles(dec=80.0).hour_angle_rad == pytest.approx(reference)
        assert _angles(pier_side="West").hour_angle_rad == pytest.approx(reference)

    def test_negative_hour_angle(self):
        assert _angles(ra=12.0).hour_angle_rad == pytest.approx(math.radians(-30.0))

    @pytest.mark.parametrize("lst", ["", "garbage", "10:00", None, "aa:bb:cc"])
    def test_malformed_sidereal_time_contributes_zero(self, lst):
        angles = _angles(ra=2.0, lst=lst)
        assert angles.hour_angle_rad == pytest.approx(math.radians(-30.0))

    @pytest.mark.parametrize("side, expected", [
        ("East", 0.0),
        (PierSide.EAST, 0.0),
        ("east", 0.0),
        ("West", math.pi),
        ("Unknown", math.pi),
        ("sideways", math.pi),
        (None, math.pi),
    ])
    def test_pier_flip(self, side, expected):
        assert _angles(pier_side=side).pier_flip_rad == pytest.approx(expected)

    def test_latitude_tilt(self):
        assert _angles().latitude_tilt_rad == pytest.approx(-math.radians(LATITUDE))

    def test_declination(self):
        assert _angles(dec=-45.0).declination_rad == pytest.approx(math.radians(-45.0))

    def test_chain_order(self):
        names = [body for body, _, _ in _angles().chain()]
        assert names == ["polar_axis", "hour_angle", "pier_flip", "declination"]
        axes = [axis for _, axis, _ in _angles().chain()]
        assert axes == ["x", "y", "y", "x"]

    def test_to_dict(self):
        d = _angles().to_dict()
        assert set(d) == {"latitudeTiltRad", "hourAngleRad", "pierFlipRad", "declinationRad"}


# ---------------------------------------------------------------------------
# Rotation chain
# ---------------------------------------------------------------------------
class TestRotationChain:
    @pytest.mark.parametrize("axis", ["x", "y", "z"])
    def test_rotation_is_proper(self, axis):
        r = rotation_matrix(axis, 0.7)
        assert np.allclose(r @ r.T, np.eye(3))
        assert np.linalg.det(r) == pytest.approx(1.0)

    def test_right_handed(self):
        # +90 deg about +Y carries +Z onto +X
        assert np.allclose(rotation_matrix("y", math.pi / 2) @ [0, 0, 1], [1, 0, 0])

    def test_unknown_axis(self):
        with pytest.raises(ValueError):
            rotation_matrix("w", 1.0)

    def test_frames_are_nested(self):
        angles = MountAngles(0.5, 0.3, math.pi, 0.2)
        frames = compose_chain(angles)
        expected = (rotation_matrix("x", 0.5) @ rotation_matrix("y", 0.3)
                    @ rotation_matrix("y", math.pi) @ rotation_matrix("x", 0.2))
        assert np.allclose(frames["declination"], expected)
        assert np.allclose(frames["polar_axis"], rotation_matrix("x", 0.5))

    def test_flattened_order_points_elsewhere(self):
        angles = MountAngles(0.6, 0.8, 0.0, 0.4)
        nested = compose_chain(angles)["declination"] @ [0, 0, 1]
        flattened = (rotation_matrix("x", 0.4) @ rotation_matrix("y", 0.8)
                     @ rotation_matrix("x", 0.6)) @ [0, 0, 1]
        assert not np.allclose(nested, flattened)


# ---------------------------------------------------------------------------
# Pose
# ---------------------------------------------------------------------------
class TestMountPose:
    @pytest.fixture()
    def geometry(self):
        return GeometryConfig()

    def test_pier_and_pivot_heights(self, geometry):
        pose = compute_mount_pose(_angles(), geometry)
        assert pose.pier_top[1] == pytest.approx(geometry.pier_height)
        assert pose.polar_pivot[1] == pytest.approx(geometry.pier_height + geometry.mount_height)
        assert pose.pier_top[0] == pytest.approx(geometry.mount_offset_x)
        assert pose.pier_top[2] == pytest.approx(geometry.mount_offset_z)

    def test_polar_axis_follows_latitude_tilt(self, geometry):
        pose = compute_mount_pose(_angles(), geometry)
        expected = rotation_matrix("x", -math.radians(LATITUDE)) @ [0, 1, 0]
        assert np.allclose(pose.polar_axis, expected)

    def test_axes_are_orthogonal_units(self, geometry):
        pose = compute_mount_pose(_angles(dec=20.0), geometry)
        for axis in (pose.polar_axis, pose.dec_axis, pose.tube_axis):
            assert np.linalg.norm(axis) == pytest.approx(1.0)
        assert np.dot(pose.polar_axis, pose.dec_axis) == pytest.approx(0.0, abs=1e-12)
        assert np.dot(pose.dec_axis, pose.tube_axis) == pytest.approx(0.0, abs=1e-12)

    def test_pier_flip_reverses_dec_axis(self, geometry):
        east = compute_mount_pose(_angles(pier_side="East"), geometry)
        west = compute_mount_pose(_angles(pier_side="West"), geometry)
        assert np.allclose(east.dec_axis, -west.dec_axis)

    def test_counterweight_opposite_tube_side(self, geometry):
        pose = compute_mount_pose(_angles(), geometry)
        origin = pose.dec_axis_head - pose.dec_axis * geometry.dec_axis_length
        to_head = pose.dec_axis_head - origin
        to_cw = pose.counterweight_end - origin
        assert np.dot(to_head, to_cw) < 0
        assert np.linalg.norm(to_cw) == pytest.approx(geometry.cw_shaft_length)

    def test_tube_length_beyond_pivot(self, geometry):
        pose = compute_mount_pose(_angles(), geometry)
        length = np.linalg.norm(pose.tube_front - pose.tube_pivot)
        assert length == pytest.approx((1 - geometry.tube_pivot_pos) * geometry.tube_length)

    def test_geometry_changes_pose(self, geometry):
        taller = replace(geometry, pier_height=2.0)
        assert compute_mount_pose(_angles(), taller).pier_top[1] == pytest.approx(2.0)


# ---------------------------------------------------------------------------
# Render bundle
# ---------------------------------------------------------------------------
class TestRenderBundle:
    def _state(self):
        return replace(
            ObservatoryState.initial(),
            telescope=TelescopeState(ra=9.0, dec=-30.0, pier_side=PierSide.EAST),
            dome=DomeState(azimuth=90.0, shutter_state=ShutterState.OPEN),
            time=TimeState(sidereal_time="10:00:00"),
        )

    def test_bundle_values(self):
        bundle = compute_render_bundle(self._state(), GeometryConfig(), LATITUDE, DomeConfig())
        assert bundle.mount.hour_angle_rad == pytest.approx(math.radians(15.0))
        assert bundle.mount.pier_flip_rad == 0.0
        assert bundle.dome.dome_rotation_rad == pytest.approx(-math.pi / 2)
        assert bundle.dome.shutter_open_fraction == 1.0
        assert len(bundle.clipping_planes) == 3

    def test_bundle_is_pure(self):
        state = self._state()
        a = compute_render_bundle(state, GeometryConfig(), LATITUDE, DomeConfig())
        b = compute_render_bundle(state, GeometryConfig(), LATITUDE, DomeConfig())
        assert a.mount == b.mount
        assert a.dome == b.dome
        assert a.clipping_planes == b.clipping_planes

    def test_to_dict_is_serialisable(self):
        bundle = compute_render_bundle(self._state(), GeometryConfig(), LATITUDE, DomeConfig())
        d = bundle.to_dict()
        assert set(d) == {"mount", "dome", "clippingPlanes", "pose"}
        assert isinstance(d["pose"]["tubeAxis"], list)
        assert len(d["clippingPlanes"]) == 3
