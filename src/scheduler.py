"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Acquisition Scheduler Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Issues one acquisition tick per polling interval.  A tick fans out to
every primary telemetry endpoint concurrently and waits for all of them
to settle, so a single failing source never blocks or aborts the batch.
Weather comes from a third-party API with a quota and is only requested
once the previous successful fetch is older than the weather interval.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from api_client import ObservatoryApiClient, WeatherClient
from models import PRIMARY_SOURCES, RawTelemetrySample, Source, TelemetryBatch

logger = logging.getLogger(__name__)

DEFAULT_WEATHER_INTERVAL = 60.0  # seconds


class AcquisitionScheduler:
    """Fan-out/fan-in poller for the observatory telemetry sources.

    Args:
        client: Control-server client.
        weather: Weather API client (``None`` disables weather).
        latitude: Observatory latitude for the weather query (degrees).
        longitude: Observatory longitude for the weather query (degrees).
        weather_interval: Minimum age in seconds of the last successful
            weather fetch before another one is issued.
        clock: Monotonic clock used when ``tick()`` is called without an
            explicit ``now``.
    """

    def __init__(self, client: ObservatoryApiClient,
                 weather: Optional[WeatherClient] = None,
                 latitude: float = 0.0, longitude: float = 0.0,
                 weather_interval: float = DEFAULT_WEATHER_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.weather = weather
        self.latitude = latitude
        self.longitude = longitude
        self.weather_interval = weather_interval
        self._clock = clock

        # Clock reading of the last successful weather fetch
        self.last_weather_fetch: Optional[float] = None
        self.sequence = 0
        self._in_flight = False
        self._running = False
        self._stop_requested = False
        self._wake: Optional[asyncio.Event] = None

        self._fetchers = {
            Source.MOUNT: client.get_mount_status,
            Source.DOME: client.get_dome_status,
            Source.DOME_SYNC: client.get_dome_sync_status,
            Source.TEMPERATURES: client.get_temperatures,
            Source.SYSTEM: client.get_system_status,
            Source.TIME: client.get_time,
        }

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def weather_due(self, now: float) -> bool:
        """``True`` when no successful fetch yet or the last one is stale."""
        if self.weather is None:
            return False
        if self.last_weather_fetch is None:
            return True
        return now - self.last_weather_fetch > self.weather_interval

    async def _fetch_primary(self):
        """Run every primary request concurrently; collect each outcome."""
        sources = list(PRIMARY_SOURCES)
        outcomes = await asyncio.gather(
            *(self._fetchers[src]() for src in sources),
            return_exceptions=True,
        )
        samples = []
        for src, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Failed to fetch %s: %s", src.value, outcome)
                samples.append(RawTelemetrySample.failure(src, outcome))
            else:
                samples.append(RawTelemetrySample.success(src, outcome))
        return samples

    async def _fetch_weather(self, now: float) -> RawTelemetrySample:
        try:
            payload = await self.weather.get_current(self.latitude, self.longitude)
        except Exception as exc:
            logger.error("Failed to fetch weather: %s", exc)
            return RawTelemetrySample.failure(Source.WEATHER, exc)
        self.last_weather_fetch = now
        logger.debug("Weather refreshed at t=%.1f", now)
        return RawTelemetrySample.success(Source.WEATHER, payload)

    async def tick(self, now: Optional[float] = None) -> Optional[TelemetryBatch]:
        """Run one acquisition cycle.

        Args:
            now: Clock reading for the weather watermark; defaults to the
                scheduler's clock.

        Returns:
            The batch of raw samples, or ``None`` when the previous tick
            has not settled yet (the new tick is skipped).
        """
        if self._in_flight:
            logger.warning(
                "Tick %d still in flight – skipping this interval", self.sequence,
            )
            return None

        if now is None:
            now = self._clock()

        self._in_flight = True
        try:
            self.sequence += 1
            sequence = self.sequence

            start = time.perf_counter()
            samples = await self._fetch_primary()
            latency_ms = (time.perf_counter() - start) * 1000.0

            weather_fetched = False
            if self.weather_due(now):
                samples.append(await self._fetch_weather(now))
                weather_fetched = True

            failed = [s.source.value for s in samples if not s.ok]
            if failed:
                logger.warning("Tick %d: %d source(s) failed: %s",
                               sequence, len(failed), ", ".join(failed))
            else:
                logger.debug("Tick %d complete in %.1f ms", sequence, latency_ms)

            return TelemetryBatch(
                sequence=sequence,
                samples=tuple(samples),
                latency_ms=latency_ms,
                weather_fetched=weather_fetched,
                started_at=now,
            )
        finally:
            self._in_flight = False

    async def run(self, interval: float,
                  on_batch: Callable[[TelemetryBatch], None],
                  on_error: Callable[[BaseException], None]) -> None:
        """Start a tick every *interval* seconds until :meth:`stop` is called.

        Ticks are timer-driven, so a slow server can make a tick outlive
        its interval; the in-flight guard in :meth:`tick` then skips the
        overlapping one.  Exceptions escaping a tick are handed to
        *on_error*; the loop keeps running regardless of previous outcomes.
        :meth:`stop` wakes the wait between ticks immediately; batches that
        settle after it are discarded.
        """
        self._wake = asyncio.Event()
        # A stop() issued before the loop got going still counts
        self._running = not self._stop_requested
        self._stop_requested = False
        pending = set()
        logger.info("Acquisition loop started (interval %.1fs)", interval)
        while self._running:
            task = asyncio.ensure_future(self._tick_once(on_batch, on_error))
            pending.add(task)
            task.add_done_callback(pending.discard)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._stop_requested = False
        self._wake = None
        logger.info("Acquisition loop stopped")

    async def _tick_once(self, on_batch, on_error) -> None:
        try:
            batch = await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Acquisition tick failed: %s", exc, exc_info=True)
            on_error(exc)
            return
        if batch is None:
            return
        if not self._running:
            logger.info("Discarding tick %d received after shutdown", batch.sequence)
            return
        on_batch(batch)

    def stop(self) -> None:
        """Stop scheduling.  Must be called on the scheduler's event loop."""
        self._running = False
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()
