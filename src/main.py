"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Main Application Entry Point (Controller Pattern)

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Loads config.yaml, wires the acquisition scheduler, the state reconciler
and the render transforms together, and runs the polling loop on its own
asyncio event loop.  The dashboard REST server reads the published
snapshots from a second thread.
"""

import argparse
import asyncio
import atexit
import copy
import logging
import logging.handlers
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from api_client import ObservatoryApiClient, WeatherClient
from dashboard_server import DashboardServer
from dome_geometry import DomeConfig
from kinematics import RenderBundle, compute_render_bundle
from models import GeometryConfig, ObservatoryState, TelemetryBatch
from reconciler import StateReconciler
from scheduler import AcquisitionScheduler

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

# Geometry keys that may legitimately be negative (offsets from the pier centre)
_SIGNED_GEOMETRY_KEYS = ("mount_offset_x", "mount_offset_z")


# ---------------------------------------------------------------------------
# Default configuration – used as fallback when keys are missing / invalid
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict = {
    "api": {
        "base_url": "http://localhost:8000/api",
        "polling_interval": 10.0,
        "timeout": 5.0,
    },
    "weather": {
        "enabled": True,
        "url": "https://api.open-meteo.com/v1/forecast",
        "min_interval": 60.0,
        "timeout": 10.0,
        "timezone": "Australia/Sydney",
    },
    "observatory": {
        "latitude": -33.8559799094,
        "longitude": 151.20666584,
        "elevation": 55.0,
        "site_name": "UNSW Observatory",
    },
    "dome": {
        "radius": 2.5,
        "slit_width": 0.5,
        "slit_start_angle": 20.0,
        "center": {"x": 0.0, "y": 0.0, "z": 0.0},
    },
    "geometry": GeometryConfig().to_config(),
    "server": {
        "enabled": True,
        "host": "0.0.0.0",
        "port": 8080,
    },
    "logging": {
        "level": "INFO",
        "file": "skywatch.log",
        "console": True,
    },
}


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------
def _deep_merge(defaults: dict, overrides: dict) -> dict:
    """Recursively merge *overrides* into *defaults* (non-destructive)."""
    merged = copy.deepcopy(defaults)
    for key, default_val in defaults.items():
        if key not in overrides:
            logger.warning("Config key '%s' missing, using default %r", key, default_val)
            continue
        override_val = overrides[key]
        if isinstance(default_val, dict) and isinstance(override_val, dict):
            merged[key] = _deep_merge(default_val, override_val)
        elif isinstance(default_val, dict) and not isinstance(override_val, dict):
            logger.warning(
                "Config key '%s' has wrong type (expected dict), using default", key
            )
        elif not _type_ok(default_val, override_val):
            logger.warning(
                "Config key '%s' has wrong type (expected %s, got %s), using default %r",
                key,
                type(default_val).__name__,
                type(override_val).__name__,
                default_val,
            )
        else:
            merged[key] = override_val
    # Carry forward extra keys from overrides that are not in defaults
    for key in overrides:
        if key not in defaults:
            merged[key] = overrides[key]
    return merged


def _type_ok(default, value) -> bool:
    """Return True when *value* is type-compatible with *default*."""
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default, str):
        return isinstance(value, str)
    return True  # unknown types pass through


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from a YAML file with validation.

    Missing keys or wrong types fall back to ``DEFAULT_CONFIG``.
    If the file cannot be parsed at all the full defaults are returned.

    Args:
        path: Path to config file.  Defaults to ``config.yaml`` in the
              repository root.

    Returns:
        Validated configuration dictionary.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "r") as fh:
            raw = yaml.safe_load(fh)
        if not isinstance(raw, dict):
            logger.warning("Config file did not produce a dict – using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)
        logger.info("Configuration loaded from %s", config_path)
        return _deep_merge(DEFAULT_CONFIG, raw)
    except FileNotFoundError:
        logger.warning("Config file not found: %s – using defaults", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)
    except yaml.YAMLError as exc:
        logger.error("Error parsing config file: %s – using defaults", exc)
        return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config: dict, path: Optional[str] = None) -> None:
    """Write the configuration dictionary back to a YAML file.

    Args:
        config: Configuration dictionary to persist.
        path:   Destination file.  Defaults to ``config.yaml`` in the
                repository root.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "w") as fh:
            yaml.dump(config, fh, default_flow_style=False, sort_keys=False)
        logger.info("Configuration saved to %s", config_path)
    except Exception as exc:
        logger.error("Failed to save configuration: %s", exc)


def validate_geometry_changes(changes: dict) -> dict:
    """Check user edits to the geometry section.

    Raises:
        ValueError: on unknown keys, non-numeric values or negative
            dimensions.
    """
    known = GeometryConfig().to_config()
    clean = {}
    for key, value in changes.items():
        if key not in known:
            raise ValueError(f"Unknown geometry key '{key}'")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Geometry key '{key}' must be numeric")
        if value < 0 and key not in _SIGNED_GEOMETRY_KEYS:
            raise ValueError(f"Geometry key '{key}' must not be negative")
        clean[key] = value
    return clean


# ---------------------------------------------------------------------------
# Main controller
# ---------------------------------------------------------------------------
class ObservatoryController:
    """Owns the acquisition loop and the published canonical state.

    The scheduler and reconciler run on a private asyncio event loop in a
    background thread; every merged state is swapped in under a lock so
    readers (REST server, renderer) always see a complete snapshot.
    """

    def __init__(self, config: Optional[dict] = None,
                 client: Optional[ObservatoryApiClient] = None,
                 weather: Optional[WeatherClient] = None,
                 config_path: Optional[str] = None):
        """Initialise the controller and its pipeline components.

        Args:
            config: Validated configuration dictionary.  When ``None``,
                    the default ``config.yaml`` is loaded automatically.
            client: Control-server client (created from config if omitted).
            weather: Weather client (created from config if omitted).
            config_path: Where geometry edits are persisted.
        """
        if config is None:
            config = load_config(config_path)
        self.config = config
        self._config_path = config_path

        self._setup_logging()

        self._lock = threading.Lock()
        self._state = ObservatoryState.initial()
        self.last_update: Optional[datetime] = None
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

        obs = self.config.get("observatory", {})
        self.latitude = float(obs.get("latitude", 0.0))
        self.longitude = float(obs.get("longitude", 0.0))
        self.geometry = GeometryConfig.from_config(self.config.get("geometry"))
        self.dome_config = DomeConfig.from_config(self.config.get("dome"))

        api_cfg = self.config.get("api", {})
        self.polling_interval = max(float(api_cfg.get("polling_interval", 10.0)), 0.1)
        if client is None:
            client = ObservatoryApiClient(
                api_cfg.get("base_url", DEFAULT_CONFIG["api"]["base_url"]),
                timeout=api_cfg.get("timeout", 5.0),
            )
        self.client = client

        weather_cfg = self.config.get("weather", {})
        if weather is None and weather_cfg.get("enabled", True):
            weather = WeatherClient(
                url=weather_cfg.get("url", DEFAULT_CONFIG["weather"]["url"]),
                timeout=weather_cfg.get("timeout", 10.0),
                timezone=weather_cfg.get("timezone", "auto"),
            )
        self.weather = weather

        self.reconciler = StateReconciler(longitude=self.longitude)
        self.scheduler = AcquisitionScheduler(
            client=self.client,
            weather=self.weather,
            latitude=self.latitude,
            longitude=self.longitude,
            weather_interval=weather_cfg.get("min_interval", 60.0),
        )
        logger.info(
            "Controller ready: site=%s lat=%.4f lon=%.4f poll=%.1fs",
            obs.get("site_name", "?"), self.latitude, self.longitude,
            self.polling_interval,
        )

    # ---- Logging --------------------------------------------------------
    def _setup_logging(self):
        """Configure the root logger with RotatingFileHandler."""
        log_cfg = self.config.get("logging", {})
        level = getattr(logging, log_cfg.get("level", "INFO"), logging.INFO)
        log_file = log_cfg.get("file")
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

        handlers: list = []
        if log_cfg.get("console", True):
            handlers.append(logging.StreamHandler())
        if log_file:
            rotating = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=5 * 1024 * 1024,   # 5 MB
                backupCount=5,
            )
            handlers.append(rotating)

        logging.basicConfig(
            level=level,
            format=fmt,
            handlers=handlers or [logging.StreamHandler()],
        )

    # ---- Failsafe mechanisms -------------------------------------------
    def _register_failsafes(self):
        """Stop the acquisition loop on process exit or SIGTERM/SIGINT."""
        atexit.register(self.shutdown)
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                signal.signal(sig, self._signal_handler)
            except (OSError, ValueError):
                pass  # Cannot set signal handler from non-main thread

    def _signal_handler(self, signum, frame):
        logger.warning("Signal %s received – shutting down", signum)
        self.shutdown()

    # ---- Published state ------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self) -> ObservatoryState:
        """Return the current canonical state (immutable)."""
        with self._lock:
            return self._state

    def apply_batch(self, batch: TelemetryBatch,
                    now: Optional[datetime] = None) -> ObservatoryState:
        """Merge one tick's batch and publish the result.

        The acquisition loop is the only writer, so the merge runs outside
        the lock; readers only wait for the reference swap.
        """
        if now is None:
            now = datetime.now()
        merged = self.reconciler.merge(self.snapshot(), batch, now=now)
        with self._lock:
            self._state = merged
            self.last_update = now
        return merged

    def handle_tick_error(self, exc: BaseException) -> ObservatoryState:
        """A tick raised as a whole: mark the link as disconnected."""
        with self._lock:
            self._state = self.reconciler.mark_disconnected(self._state)
            return self._state

    async def poll_once(self, now: Optional[float] = None,
                        arrival: Optional[datetime] = None) -> ObservatoryState:
        """Run a single tick and merge it (used for start-up and tests)."""
        try:
            batch = await self.scheduler.tick(now)
        except Exception as exc:
            logger.error("Acquisition tick failed: %s", exc, exc_info=True)
            return self.handle_tick_error(exc)
        if batch is None:
            return self.snapshot()
        return self.apply_batch(batch, now=arrival)

    def render_bundle(self) -> RenderBundle:
        """Render-ready angles for the current snapshot."""
        return compute_render_bundle(
            self.snapshot(), self.geometry, self.latitude, self.dome_config,
        )

    # ---- Geometry settings ----------------------------------------------
    def update_geometry(self, changes: dict) -> GeometryConfig:
        """Apply user edits to the mount geometry and persist them."""
        clean = validate_geometry_changes(changes)
        merged = {**self.geometry.to_config(), **clean}
        self.geometry = GeometryConfig.from_config(merged)
        self.config["geometry"] = self.geometry.to_config()
        save_config(self.config, self._config_path)
        logger.info("Geometry updated: %s", ", ".join(sorted(clean)) or "no changes")
        return self.geometry

    # ---- Commands ---------------------------------------------------------
    def send_command(self, method: str, timeout: float = 10.0, **kwargs):
        """Run a control-server command on the acquisition loop and wait.

        Raises:
            RuntimeError: when the acquisition loop is not running.
            ValueError: on invalid command arguments.
            ApiError: when the control server rejects the command.
        """
        if not self._running or self._loop is None:
            raise RuntimeError("Acquisition loop is not running")
        func = getattr(self.client, method, None)
        if func is None:
            raise ValueError(f"Unknown command method '{method}'")
        future = asyncio.run_coroutine_threadsafe(func(**kwargs), self._loop)
        return future.result(timeout=timeout)

    # ---- Acquisition loop -----------------------------------------------
    def start(self) -> None:
        """Start the acquisition loop in a background daemon thread."""
        if self._running:
            return
        self._running = True
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, name="skywatch-acquisition", daemon=True,
        )
        self._thread.start()
        self._register_failsafes()
        logger.info("Acquisition loop thread started")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self.scheduler.run(
                self.polling_interval, self.apply_batch, self.handle_tick_error,
            ))
        except Exception:
            logger.critical("Acquisition loop crashed", exc_info=True)
        finally:
            try:
                self._loop.run_until_complete(self._close_clients())
            finally:
                self._loop.close()
            self._running = False

    async def _close_clients(self) -> None:
        await self.client.close()
        if self.weather is not None:
            await self.weather.close()

    def shutdown(self) -> None:
        """Stop scheduling; an in-flight tick may finish but is discarded."""
        if not self._running:
            return
        logger.info("Shutting down acquisition loop")
        loop = self._loop
        try:
            if loop is None or loop.is_closed():
                raise RuntimeError("loop closed")
            # stop() wakes the inter-tick wait, so it must run on the loop
            loop.call_soon_threadsafe(self.scheduler.stop)
        except RuntimeError:
            self.scheduler.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.polling_interval + 5.0)
        self._running = False


def main(argv: Optional[list] = None) -> int:
    """Console entry point – loads config and runs until interrupted."""
    parser = argparse.ArgumentParser(description="SKYWATCH observatory telemetry core")
    parser.add_argument("--config", help="Path to config.yaml")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    controller = ObservatoryController(config=config, config_path=args.config)
    controller.start()

    server = None
    server_cfg = config.get("server", {})
    if server_cfg.get("enabled", True):
        try:
            server = DashboardServer(
                controller,
                host=server_cfg.get("host", "0.0.0.0"),
                port=server_cfg.get("port", 8080),
            )
            server.start()
        except Exception as exc:
            logger.warning("Failed to start dashboard server: %s", exc)

    try:
        while controller.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()
        if server is not None:
            server.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
