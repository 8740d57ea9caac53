"""Snapshot collection engine for hostpulse."""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from hostpulse.models import (
    BYTES_PER_GB,
    CounterReading,
    CpuLoad,
    CpuSpeed,
    CpuTemp,
    DiskActivity,
    DiskUsage,
    Memory,
    Meta,
    MetricPoint,
    Network,
    ProcessReading,
    ProcessSample,
    Snapshot,
    Uptime,
    format_uptime,
)
from hostpulse.provider import MetricsProvider
from hostpulse.rates import BYTES_PER_MB, CounterState, rate
from hostpulse.window import RollingWindow

logger = logging.getLogger(__name__)

# Rolling-window metric names
CPU_LOAD = "cpu_load"
CPU_TEMP = "cpu_temp"
CPU_AVG_GHZ = "cpu_avg_ghz"
MEM_USED_PERCENT = "mem_used_percent"
DISK_READ_MBPS = "disk_read_mbps"
DISK_WRITE_MBPS = "disk_write_mbps"
NET_DOWN_MBPS = "net_down_mbps"
NET_UP_MBPS = "net_up_mbps"

TRACKED_METRICS = (
    CPU_LOAD,
    CPU_TEMP,
    CPU_AVG_GHZ,
    MEM_USED_PERCENT,
    DISK_READ_MBPS,
    DISK_WRITE_MBPS,
    NET_DOWN_MBPS,
    NET_UP_MBPS,
)

# Provider reads issued every cycle, in dispatch order
READS = (
    "cpu_load",
    "cpu_speed",
    "cpu_temperature",
    "memory",
    "disk_usage",
    "disk_io",
    "network_io",
    "uptime",
    "processes",
)


class CollectionError(Exception):
    """The provider read batch failed as a whole; no snapshot for this cycle."""


def to_number(value: Any) -> float | None:
    """Coerce a raw provider value to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp_percent(value: Any) -> float:
    """Clamp to [0, 100]; missing values become 0."""
    number = to_number(value)
    if number is None:
        return 0.0
    return min(max(number, 0.0), 100.0)


def non_negative(value: Any) -> float:
    """Clamp to >= 0; missing values become 0."""
    number = to_number(value)
    if number is None:
        return 0.0
    return max(number, 0.0)


def as_list(value: Any) -> list[Any]:
    """Items of a provider sequence; anything that is not a list or tuple becomes empty."""
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def temperature(value: Any) -> float | None:
    """Valid temperature or None; sensors report -1 when absent."""
    number = to_number(value)
    if number is None or number < 0:
        return None
    return number


def percent_of(part: float, whole: float) -> float:
    """Share of ``whole`` as a clamped percent; 0 when ``whole`` is empty."""
    return clamp_percent(part / whole * 100) if whole > 0 else 0.0


def top_processes(readings: Any, limit: int = 5) -> tuple[ProcessSample, ...]:
    """
    Top processes by CPU percent, descending; ties keep provider order.

    Entries that are not a ProcessReading with an integer pid are skipped.
    """
    samples = [
        ProcessSample(
            pid=reading.pid,
            name=str(reading.name or f"pid:{reading.pid}"),
            cpu_percent=clamp_percent(reading.cpu_percent),
            ram_mb=non_negative(reading.rss_bytes) / BYTES_PER_MB,
        )
        for reading in as_list(readings)
        if isinstance(reading, ProcessReading)
        and isinstance(reading.pid, int)
        and not isinstance(reading.pid, bool)
    ]
    # sorted() is stable, also with reverse=True
    samples = sorted(samples, key=lambda p: p.cpu_percent, reverse=True)
    return tuple(samples[:limit])


class SnapshotCollector:
    """
    Turns concurrent provider reads into immutable Snapshots.

    Owns the rolling windows and counter baselines. Only one collect() call
    may run at a time; the scheduler guarantees this.
    """

    def __init__(
        self,
        provider: MetricsProvider,
        history_points: int = 60,
        sample_interval_ms: int = 1000,
        top_n: int = 5,
        read_timeout: float | None = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the SnapshotCollector.

        Args:
            provider: Source of raw host readings.
            history_points: Capacity of every rolling window.
            sample_interval_ms: Nominal cadence, reported in snapshot metadata.
            top_n: Number of processes kept in each snapshot.
            read_timeout: Per-read timeout in seconds (None disables it).
            clock: Monotonic clock used for rate derivation.
            wall_clock: Epoch clock used for timestamps.
        """
        self._provider = provider
        self._history_points = history_points
        self._sample_interval_ms = sample_interval_ms
        self._top_n = top_n
        self._read_timeout = read_timeout
        self._clock = clock
        self._wall_clock = wall_clock
        self._windows = {name: RollingWindow(history_points) for name in TRACKED_METRICS}
        self._disk_state: CounterState | None = None
        self._net_state: CounterState | None = None
        self._in_flight: dict[str, asyncio.Future[Any]] = {}

    @property
    def history_points(self) -> int:
        """Capacity of every rolling window."""
        return self._history_points

    def history(self, metric: str) -> tuple[MetricPoint, ...]:
        """Current contents of one rolling window."""
        return self._windows[metric].snapshot()

    async def _read(self, name: str) -> Any:
        """
        Run one blocking provider read in a worker thread.

        A read that timed out keeps its thread until the provider returns; while
        it is still running, the same read is not issued again.
        """
        previous = self._in_flight.get(name)
        if previous is not None and not previous.done():
            raise RuntimeError(f"Provider read {name} still in flight")

        future = asyncio.ensure_future(asyncio.to_thread(getattr(self._provider, name)))
        future.add_done_callback(_retrieve)
        self._in_flight[name] = future
        if self._read_timeout is None:
            return await future
        return await asyncio.wait_for(asyncio.shield(future), timeout=self._read_timeout)

    async def _read_all(self) -> dict[str, Any]:
        """Fan out every provider read and join them, keeping failures as values."""
        try:
            results = await asyncio.gather(
                *(self._read(name) for name in READS),
                return_exceptions=True,
            )
        except Exception as exc:
            raise CollectionError(f"Provider read batch rejected: {exc}") from exc

        failures = [r for r in results if isinstance(r, BaseException)]
        if len(failures) == len(READS):
            raise CollectionError(f"All provider reads failed: {failures[0]!r}") from failures[0]

        readings: dict[str, Any] = {}
        for name, result in zip(READS, results):
            if isinstance(result, BaseException):
                logger.debug("Provider read %s failed: %r", name, result)
                readings[name] = None
            else:
                readings[name] = result
        return readings

    @staticmethod
    def _derive_rates(
        reading: Any,
        state: CounterState | None,
        now: float,
    ) -> tuple[float, float, CounterState | None]:
        """Rates for one counter pair and the baseline for the next cycle."""
        if not isinstance(reading, CounterReading):
            return 0.0, 0.0, None
        first = to_number(reading.first)
        second = to_number(reading.second)
        if first is None or second is None:
            return 0.0, 0.0, None
        if state is None:
            return 0.0, 0.0, CounterState(first, second, now)
        return (
            rate(state.first, first, state.sampled_at, now),
            rate(state.second, second, state.sampled_at, now),
            CounterState(first, second, now),
        )

    async def collect(self) -> Snapshot:
        """
        Run one collection cycle.

        Raises:
            CollectionError: The read batch failed entirely. Rolling windows
                and counter baselines are left untouched.
        """
        now = self._clock()
        timestamp = self._wall_clock()
        timestamp_ms = int(timestamp * 1000)

        readings = await self._read_all()

        # CPU load
        cpu = readings["cpu_load"]
        overall = clamp_percent(getattr(cpu, "overall", None))
        per_core = tuple(clamp_percent(c) for c in as_list(getattr(cpu, "per_core", None)))

        # CPU speed
        speed = readings["cpu_speed"]
        min_ghz = non_negative(getattr(speed, "min_ghz", None))
        avg_ghz = non_negative(getattr(speed, "avg_ghz", None))
        max_ghz = non_negative(getattr(speed, "max_ghz", None))

        # CPU temperature: unknown stays None, never 0
        temp = readings["cpu_temperature"]
        main_temp = temperature(getattr(temp, "main", None))
        core_temps = tuple(
            t for t in (temperature(c) for c in as_list(getattr(temp, "cores", None))) if t is not None
        )

        # Memory
        mem = readings["memory"]
        mem_total = non_negative(getattr(mem, "total_bytes", None))
        mem_used = non_negative(getattr(mem, "used_bytes", None))
        mem_percent = percent_of(mem_used, mem_total)

        # Disk usage
        disk = readings["disk_usage"]
        disk_total = non_negative(getattr(disk, "total_bytes", None))
        disk_used = non_negative(getattr(disk, "used_bytes", None))
        disk_percent = percent_of(disk_used, disk_total)

        # Disk and network throughput
        read_mbps, write_mbps, disk_state = self._derive_rates(
            readings["disk_io"], self._disk_state, now
        )
        down_mbps, up_mbps, net_state = self._derive_rates(
            readings["network_io"], self._net_state, now
        )
        self._disk_state = disk_state
        self._net_state = net_state

        uptime_seconds = non_negative(readings["uptime"])
        processes = top_processes(readings["processes"], self._top_n)

        current = {
            CPU_LOAD: overall,
            CPU_TEMP: main_temp,
            CPU_AVG_GHZ: avg_ghz,
            MEM_USED_PERCENT: mem_percent,
            DISK_READ_MBPS: read_mbps,
            DISK_WRITE_MBPS: write_mbps,
            NET_DOWN_MBPS: down_mbps,
            NET_UP_MBPS: up_mbps,
        }
        for name, value in current.items():
            if value is not None:
                self._windows[name].push(MetricPoint(timestamp_ms=timestamp_ms, value=value))

        return Snapshot(
            timestamp_ms=timestamp_ms,
            datetime_iso=_iso(timestamp),
            cpu_load=CpuLoad(
                overall_percent=overall,
                per_core_percent=per_core,
                history=self.history(CPU_LOAD),
            ),
            cpu_speed=CpuSpeed(
                min_ghz=min_ghz,
                avg_ghz=avg_ghz,
                max_ghz=max_ghz,
                history_avg_ghz=self.history(CPU_AVG_GHZ),
            ),
            cpu_temp=CpuTemp(
                main_c=main_temp,
                core_temps_c=core_temps,
                history_main_c=self.history(CPU_TEMP),
            ),
            memory=Memory(
                total_gb=mem_total / BYTES_PER_GB,
                used_gb=mem_used / BYTES_PER_GB,
                used_percent=mem_percent,
                free_percent=clamp_percent(100 - mem_percent),
                history_used_percent=self.history(MEM_USED_PERCENT),
            ),
            disk_usage=DiskUsage(
                used_percent=disk_percent,
                free_percent=clamp_percent(100 - disk_percent),
                total_gb=disk_total / BYTES_PER_GB,
                used_gb=disk_used / BYTES_PER_GB,
            ),
            disk_activity=DiskActivity(
                read_mbps=read_mbps,
                write_mbps=write_mbps,
                history_read_mbps=self.history(DISK_READ_MBPS),
                history_write_mbps=self.history(DISK_WRITE_MBPS),
            ),
            network=Network(
                down_mbps=down_mbps,
                up_mbps=up_mbps,
                history_down_mbps=self.history(NET_DOWN_MBPS),
                history_up_mbps=self.history(NET_UP_MBPS),
            ),
            top_processes=processes,
            uptime=Uptime(seconds=uptime_seconds, human=format_uptime(uptime_seconds)),
            meta=Meta(
                sample_interval_ms=self._sample_interval_ms,
                history_points=self._history_points,
            ),
        )


def _iso(timestamp: float) -> str:
    """Epoch seconds as an ISO-8601 UTC string with millisecond precision."""
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _retrieve(future: "asyncio.Future[Any]") -> None:
    """Mark an abandoned read's outcome as seen."""
    if not future.cancelled():
        future.exception()
