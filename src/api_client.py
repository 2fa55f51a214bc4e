"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Control Server & Weather API Clients

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Async HTTP clients for the observatory REST control server (mount, dome,
temperature, system and time endpoints plus the command endpoints) and
for the public Open-Meteo weather API.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

VALID_DIRECTIONS = ("N", "S", "E", "W")
VALID_SLEW_TYPES = ("equatorial", "altaz")

WEATHER_VARIABLES = (
    "temperature_2m",
    "relative_humidity_2m",
    "apparent_temperature",
    "is_day",
    "precipitation",
    "rain",
    "weather_code",
    "cloud_cover",
    "surface_pressure",
    "showers",
    "wind_speed_10m",
    "wind_direction_10m",
)


class ApiError(Exception):
    """Raised when the control server answers with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def _check_direction(direction: str) -> str:
    value = (direction or "").strip().upper()
    if value not in VALID_DIRECTIONS:
        raise ValueError(f"Invalid direction {direction!r} (expected one of N/S/E/W)")
    return value


class ObservatoryApiClient:
    """Client for the observatory control server.

    Args:
        base_url: Root of the REST API, e.g. ``http://localhost:8000/api``.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests inject a
            ``httpx.MockTransport`` here).
    """

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport,
        )
        logger.info("Control server client created for %s", self.base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        response = await self._client.request(method, endpoint, **kwargs)
        if not response.is_success:
            raise ApiError(
                response.status_code,
                f"API request failed: {response.status_code} "
                f"{response.reason_phrase} - {response.text}",
            )
        if not response.content:
            return {}
        return response.json()

    async def _get(self, endpoint: str) -> Any:
        return await self._request("GET", endpoint)

    async def _post(self, endpoint: str, body: Optional[dict] = None,
                    params: Optional[dict] = None) -> Any:
        logger.info("POST %s %s", endpoint, body if body is not None else params or "")
        return await self._request("POST", endpoint, json=body, params=params)

    # ---- Telemetry (read) ----------------------------------------------
    async def get_mount_status(self) -> Any:
        return await self._get("/telescope/mount_status")

    async def get_dome_status(self) -> Any:
        return await self._get("/dome/status")

    async def get_dome_sync_status(self) -> Any:
        return await self._get("/dome/sync/status")

    async def get_temperatures(self) -> Any:
        return await self._get("/telescope/temperatures")

    async def get_system_status(self) -> Any:
        return await self._get("/system/status")

    async def get_time(self) -> Any:
        return await self._get("/telescope/time")

    # ---- Telescope commands --------------------------------------------
    async def set_target(self, ra: Optional[float] = None, dec: Optional[float] = None,
                         alt: Optional[float] = None, az: Optional[float] = None) -> Any:
        coords = {k: v for k, v in
                  (("ra", ra), ("dec", dec), ("alt", alt), ("az", az))
                  if v is not None}
        return await self._post("/telescope/target", coords)

    async def slew(self, coords: Dict[str, float], slew_type: str = "equatorial",
                   pier_side: Optional[str] = None) -> Any:
        """Set the target, then issue the slew.

        Args:
            coords: Any of ``ra``/``dec``/``alt``/``az``.
            slew_type: ``"equatorial"`` or ``"altaz"``.
            pier_side: Optional ``"East"``/``"West"`` request.
        """
        if slew_type not in VALID_SLEW_TYPES:
            raise ValueError(f"Invalid slew type {slew_type!r}")
        if pier_side is not None and pier_side not in ("East", "West"):
            raise ValueError(f"Invalid pier side {pier_side!r}")
        await self.set_target(**{k: coords.get(k) for k in ("ra", "dec", "alt", "az")})
        return await self._post(
            "/telescope/slew", {"slew_type": slew_type, "pier_side": pier_side},
        )

    async def set_tracking(self, tracking: bool) -> Any:
        return await self._post(f"/telescope/tracking/{'start' if tracking else 'stop'}")

    async def flip_pier_side(self) -> Any:
        return await self._post("/telescope/flip")

    async def park(self) -> Any:
        return await self._post("/telescope/park")

    async def unpark(self) -> Any:
        return await self._post("/telescope/unpark")

    async def nudge(self, direction: str, duration_ms: int) -> Any:
        duration_ms = int(duration_ms)
        if duration_ms <= 0:
            raise ValueError("Nudge duration must be positive")
        return await self._post(
            "/telescope/nudge",
            params={"direction": _check_direction(direction), "duration_ms": duration_ms},
        )

    async def move(self, direction: str) -> Any:
        return await self._post(
            "/telescope/move", params={"direction": _check_direction(direction)},
        )

    async def halt(self, direction: Optional[str] = None) -> Any:
        # An empty direction halts every axis
        value = _check_direction(direction) if direction else ""
        return await self._post("/telescope/halt", {"direction": value})

    async def stop(self) -> Any:
        return await self._post("/telescope/stop")

    # ---- Dome & shutter commands ---------------------------------------
    async def set_dome_slave(self, slave: bool) -> Any:
        return await self._post("/dome/sync", {"slave": bool(slave)})

    async def slew_dome(self, azimuth: float) -> Any:
        return await self._post("/dome/slew", {"az": float(azimuth) % 360.0})

    async def stop_dome(self) -> Any:
        return await self._post("/dome/stop")

    async def open_shutter(self) -> Any:
        return await self._post("/shutter/open")

    async def close_shutter(self) -> Any:
        return await self._post("/shutter/close")


class WeatherClient:
    """Client for the Open-Meteo current-conditions forecast endpoint."""

    def __init__(self, url: str = "https://api.open-meteo.com/v1/forecast",
                 timeout: float = 10.0, timezone: str = "auto",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timezone = timezone
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_current(self, latitude: float, longitude: float) -> Dict[str, Any]:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": ",".join(WEATHER_VARIABLES),
            "timezone": self.timezone,
        }
        resp = await self._client.get(self.url, params=params)
        resp.raise_for_status()
        return resp.json()
