"""Tests for the ObservatoryController class.

The control server is replaced by an in-memory fake; weather is disabled
unless a test injects its own client.
"""

import asyncio
import copy
import sys
import time
from pathlib import Path

import pytest
import yaml

# Ensure the src package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from main import DEFAULT_CONFIG, ObservatoryController
from models import ConnectionStatus, PierSide, ShutterState


class FakeControlClient:
    """Control server with canned payloads; *failing* endpoints raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.commands = []
        self.closed = False

    async def _get(self, name, payload):
        if name in self.failing:
            raise ConnectionError(f"{name} unreachable")
        return payload

    async def get_mount_status(self):
        return await self._get("mount", {
            "ra_str": "09h00m00s", "dec_str": "-30d00m00s",
            "alt_str": "60d00m00s", "az_str": "45d00m00s",
            "is_tracking": True, "status": "Tracking", "pier_side": "East",
        })

    async def get_dome_status(self):
        return await self._get("dome", {"az": 90.0, "moving": False, "shutter_status": "open"})

    async def get_dome_sync_status(self):
        return await self._get("dome_sync", {"dome_sync": True})

    async def get_temperatures(self):
        return await self._get("temperatures", {"motor_ra_az": 31.0})

    async def get_system_status(self):
        return await self._get("system", {"cpu_usage": 5.0, "uptime": "0h 1m 0s"})

    async def get_time(self):
        return await self._get("time", {
            "local_date": "2026-10-18", "local_time": "21:00:00",
            "utc_date": "2026-10-18", "utc_time": "10:00:00",
            "sidereal_time": "10:00:00", "julian_date": 2461331.916667,
        })

    async def stop(self):
        self.commands.append("stop")
        return {"status": "stopped"}

    async def close(self):
        self.closed = True


@pytest.fixture()
def config(tmp_path):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["api"]["polling_interval"] = 0.05
    cfg["weather"]["enabled"] = False
    cfg["logging"]["file"] = ""
    cfg["logging"]["console"] = False
    return cfg


def make_controller(config, tmp_path, client=None):
    ctrl = ObservatoryController(
        config=config,
        client=client or FakeControlClient(),
        config_path=str(tmp_path / "config.yaml"),
    )
    # Keep pytest's own SIGINT handling intact
    ctrl._register_failsafes = lambda: None
    return ctrl


class TestSinglePoll:
    def test_initial_snapshot(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        state = ctrl.snapshot()
        assert state.system.connection_status is ConnectionStatus.DISCONNECTED
        assert ctrl.last_update is None

    def test_dome_failure_keeps_connection(self, config, tmp_path):
        """Mount ok, dome down, weather not due: connected, dome unchanged."""
        ctrl = make_controller(config, tmp_path, FakeControlClient(failing=["dome"]))
        before = ctrl.snapshot()
        state = asyncio.run(ctrl.poll_once(now=0.0))
        assert state.system.connection_status is ConnectionStatus.CONNECTED
        assert state.telescope.ra == pytest.approx(9.0)
        assert state.telescope.pier_side is PierSide.EAST
        assert state.dome == before.dome
        assert ctrl.last_update is not None
        assert ctrl.snapshot() is state

    def test_system_failure_is_error(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path, FakeControlClient(failing=["system"]))
        state = asyncio.run(ctrl.poll_once(now=0.0))
        assert state.system.connection_status is ConnectionStatus.ERROR

    def test_tick_exception_disconnects(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        asyncio.run(ctrl.poll_once(now=0.0))

        async def broken(now=None):
            raise ConnectionError("network down")

        ctrl.scheduler.tick = broken
        state = asyncio.run(ctrl.poll_once(now=1.0))
        assert state.system.connection_status is ConnectionStatus.DISCONNECTED
        assert state.telescope.status == "Tracking"

    def test_render_bundle_uses_snapshot(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        asyncio.run(ctrl.poll_once(now=0.0))
        bundle = ctrl.render_bundle()
        # LST 10:00:00, RA 9h -> one hour east of the meridian
        assert bundle.mount.hour_angle_rad == pytest.approx(0.2617993877991494)
        assert bundle.mount.pier_flip_rad == 0.0
        assert bundle.dome.shutter_open_fraction == 1.0
        assert ctrl.snapshot().dome.shutter_state is ShutterState.OPEN


class TestGeometryUpdates:
    def test_update_persists(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        geometry = ctrl.update_geometry({"pier_height": 1.6})
        assert geometry.pier_height == 1.6
        assert ctrl.geometry.pier_height == 1.6
        with open(tmp_path / "config.yaml") as fh:
            saved = yaml.safe_load(fh)
        assert saved["geometry"]["pier_height"] == 1.6

    def test_invalid_update_leaves_geometry(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        with pytest.raises(ValueError):
            ctrl.update_geometry({"pier_height": 1.6, "bogus": 2})
        assert ctrl.geometry.pier_height == 1.2
        assert not (tmp_path / "config.yaml").exists()


class TestAcquisitionThread:
    def test_command_requires_running_loop(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        with pytest.raises(RuntimeError):
            ctrl.send_command("stop")

    def test_loop_polls_and_forwards_commands(self, config, tmp_path):
        client = FakeControlClient()
        ctrl = make_controller(config, tmp_path, client)
        ctrl.start()
        try:
            for _ in range(100):
                if ctrl.snapshot().sequence > 0:
                    break
                time.sleep(0.02)
            assert ctrl.snapshot().sequence > 0
            assert ctrl.snapshot().system.connection_status is ConnectionStatus.CONNECTED
            assert ctrl.send_command("stop") == {"status": "stopped"}
            assert client.commands == ["stop"]
            with pytest.raises(ValueError):
                ctrl.send_command("self_destruct")
        finally:
            ctrl.shutdown()
        assert ctrl.running is False
        assert client.closed is True

    def test_shutdown_does_not_wait_out_interval(self, config, tmp_path):
        config["api"]["polling_interval"] = 8.0
        client = FakeControlClient()
        ctrl = make_controller(config, tmp_path, client)
        ctrl.start()
        try:
            for _ in range(100):
                if ctrl.snapshot().sequence > 0:
                    break
                time.sleep(0.02)
            assert ctrl.snapshot().sequence > 0
        finally:
            start = time.monotonic()
            ctrl.shutdown()
            elapsed = time.monotonic() - start
        assert elapsed < 1.0
        assert ctrl.running is False
        assert client.closed is True

    def test_merge_runs_outside_state_lock(self, config, tmp_path):
        ctrl = make_controller(config, tmp_path)
        merge = ctrl.reconciler.merge
        held = []

        def checking_merge(*args, **kwargs):
            held.append(ctrl._lock.locked())
            return merge(*args, **kwargs)

        ctrl.reconciler.merge = checking_merge
        asyncio.run(ctrl.poll_once())
        assert held == [False]
