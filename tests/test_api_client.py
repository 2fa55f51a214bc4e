"""Tests for the control-server and weather clients (src/api_client.py).

Uses ``httpx.MockTransport`` so no network connection is opened.
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

# Ensure the src package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from api_client import ApiError, ObservatoryApiClient, WeatherClient


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status=200, payload=None, content=None):
        self.status = status
        self.payload = {"ok": True} if payload is None else payload
        self.content = content
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.content is not None:
            return httpx.Response(self.status, content=self.content)
        return httpx.Response(self.status, json=self.payload)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def run_client(recorder, action):
    """Run *action(client)* against a client wired to *recorder*."""
    async def scenario():
        client = ObservatoryApiClient(
            "http://observatory.test/api", transport=httpx.MockTransport(recorder))
        try:
            return await action(client)
        finally:
            await client.close()
    return asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Telemetry reads
# ---------------------------------------------------------------------------
class TestTelemetryEndpoints:
    @pytest.mark.parametrize("method, path", [
        ("get_mount_status", "/api/telescope/mount_status"),
        ("get_dome_status", "/api/dome/status"),
        ("get_dome_sync_status", "/api/dome/sync/status"),
        ("get_temperatures", "/api/telescope/temperatures"),
        ("get_system_status", "/api/system/status"),
        ("get_time", "/api/telescope/time"),
    ])
    def test_get_paths(self, method, path):
        rec = Recorder(payload={"status": "Tracking"})
        result = run_client(rec, lambda c: getattr(c, method)())
        assert result == {"status": "Tracking"}
        assert rec.requests[0].method == "GET"
        assert rec.requests[0].url.path == path

    def test_error_status_raises(self):
        rec = Recorder(status=503, payload={"detail": "mount offline"})
        with pytest.raises(ApiError) as excinfo:
            run_client(rec, lambda c: c.get_mount_status())
        assert excinfo.value.status_code == 503
        assert "503" in str(excinfo.value)

    def test_empty_body_is_empty_dict(self):
        rec = Recorder(content=b"")
        assert run_client(rec, lambda c: c.stop()) == {}

    def test_transport_error_propagates(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def scenario():
            client = ObservatoryApiClient(
                "http://observatory.test/api", transport=httpx.MockTransport(handler))
            try:
                await client.get_time()
            finally:
                await client.close()

        with pytest.raises(httpx.ConnectError):
            asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
class TestTelescopeCommands:
    def test_set_target_drops_missing(self):
        rec = Recorder()
        run_client(rec, lambda c: c.set_target(ra=10.5, dec=-60.0))
        assert rec.requests[0].url.path == "/api/telescope/target"
        assert rec.body() == {"ra": 10.5, "dec": -60.0}

    def test_slew_sets_target_then_slews(self):
        rec = Recorder()
        run_client(rec, lambda c: c.slew({"ra": 5.0, "dec": 20.0}, pier_side="West"))
        paths = [r.url.path for r in rec.requests]
        assert paths == ["/api/telescope/target", "/api/telescope/slew"]
        assert rec.body(1) == {"slew_type": "equatorial", "pier_side": "West"}

    @pytest.mark.parametrize("kwargs", [
        {"slew_type": "galactic"},
        {"pier_side": "North"},
    ])
    def test_slew_rejects_bad_arguments(self, kwargs):
        rec = Recorder()
        with pytest.raises(ValueError):
            run_client(rec, lambda c: c.slew({"ra": 1.0}, **kwargs))
        assert rec.requests == []

    def test_tracking_start_stop(self):
        rec = Recorder()

        async def both(c):
            await c.set_tracking(True)
            await c.set_tracking(False)

        run_client(rec, both)
        assert [r.url.path for r in rec.requests] == [
            "/api/telescope/tracking/start", "/api/telescope/tracking/stop"]

    def test_nudge_uses_query_params(self):
        rec = Recorder()
        run_client(rec, lambda c: c.nudge("n", 500))
        req = rec.requests[0]
        assert req.method == "POST"
        assert req.url.path == "/api/telescope/nudge"
        assert req.url.params["direction"] == "N"
        assert req.url.params["duration_ms"] == "500"

    @pytest.mark.parametrize("direction, duration", [("X", 100), ("N", 0), ("S", -5)])
    def test_nudge_validation(self, direction, duration):
        rec = Recorder()
        with pytest.raises(ValueError):
            run_client(rec, lambda c: c.nudge(direction, duration))
        assert rec.requests == []

    def test_move(self):
        rec = Recorder()
        run_client(rec, lambda c: c.move("E"))
        assert rec.requests[0].url.params["direction"] == "E"

    def test_halt_all_axes(self):
        rec = Recorder()
        run_client(rec, lambda c: c.halt())
        assert rec.requests[0].url.path == "/api/telescope/halt"
        assert rec.body() == {"direction": ""}

    def test_halt_one_axis(self):
        rec = Recorder()
        run_client(rec, lambda c: c.halt("w"))
        assert rec.body() == {"direction": "W"}

    @pytest.mark.parametrize("method, path", [
        ("flip_pier_side", "/api/telescope/flip"),
        ("park", "/api/telescope/park"),
        ("unpark", "/api/telescope/unpark"),
        ("stop", "/api/telescope/stop"),
        ("stop_dome", "/api/dome/stop"),
        ("open_shutter", "/api/shutter/open"),
        ("close_shutter", "/api/shutter/close"),
    ])
    def test_simple_posts(self, method, path):
        rec = Recorder()
        run_client(rec, lambda c: getattr(c, method)())
        assert rec.requests[0].method == "POST"
        assert rec.requests[0].url.path == path


class TestDomeCommands:
    def test_slave(self):
        rec = Recorder()
        run_client(rec, lambda c: c.set_dome_slave(True))
        assert rec.requests[0].url.path == "/api/dome/sync"
        assert rec.body() == {"slave": True}

    def test_slew_wraps_azimuth(self):
        rec = Recorder()
        run_client(rec, lambda c: c.slew_dome(370.0))
        assert rec.requests[0].url.path == "/api/dome/slew"
        assert rec.body() == {"az": pytest.approx(10.0)}


# ---------------------------------------------------------------------------
# Weather
# ---------------------------------------------------------------------------
class TestWeatherClient:
    def _run(self, recorder):
        async def scenario():
            client = WeatherClient(
                url="https://weather.test/v1/forecast",
                timezone="Australia/Sydney",
                transport=httpx.MockTransport(recorder),
            )
            try:
                return await client.get_current(-33.85, 151.2)
            finally:
                await client.close()
        return asyncio.run(scenario())

    def test_query_parameters(self):
        rec = Recorder(payload={"current": {"temperature_2m": 18.5}})
        result = self._run(rec)
        assert result["current"]["temperature_2m"] == 18.5
        params = rec.requests[0].url.params
        assert params["latitude"] == "-33.85"
        assert params["longitude"] == "151.2"
        assert params["timezone"] == "Australia/Sydney"
        assert "temperature_2m" in params["current"].split(",")
        assert "surface_pressure" in params["current"].split(",")

    def test_quota_error_raises(self):
        rec = Recorder(status=429, payload={"reason": "quota"})
        with pytest.raises(httpx.HTTPStatusError):
            self._run(rec)
