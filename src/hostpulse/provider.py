"""Point-in-time host metric reads backed by psutil."""

import logging
import time
from typing import Protocol

import psutil

from hostpulse.models import (
    CounterReading,
    CpuLoadReading,
    CpuSpeedReading,
    CpuTempReading,
    DiskUsageReading,
    MemoryReading,
    ProcessReading,
)

logger = logging.getLogger(__name__)

# Sensor chips that report the CPU package temperature, in preference order
CPU_SENSOR_CHIPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")
MAIN_SENSOR_LABELS = ("Package id 0", "Tdie", "Tctl")


class MetricsProvider(Protocol):
    """
    Source of raw host readings.

    Every method is a blocking, independent read. A method may raise, or
    return None for values the platform does not expose.
    """

    def cpu_load(self) -> CpuLoadReading: ...

    def cpu_speed(self) -> CpuSpeedReading | None: ...

    def cpu_temperature(self) -> CpuTempReading | None: ...

    def memory(self) -> MemoryReading: ...

    def disk_usage(self) -> DiskUsageReading: ...

    def disk_io(self) -> CounterReading | None: ...

    def network_io(self) -> CounterReading | None: ...

    def uptime(self) -> float: ...

    def processes(self) -> list[ProcessReading]: ...


class PsutilProvider:
    """MetricsProvider reading the local host through psutil."""

    def __init__(self) -> None:
        # Initialize CPU percent (first call returns 0.0)
        psutil.cpu_percent()
        psutil.cpu_percent(percpu=True)

    def cpu_load(self) -> CpuLoadReading:
        """Overall and per-core load since the previous call."""
        return CpuLoadReading(
            overall=psutil.cpu_percent(),
            per_core=psutil.cpu_percent(percpu=True),
        )

    def cpu_speed(self) -> CpuSpeedReading | None:
        """Min/avg/max of the current per-core frequency, in GHz."""
        try:
            freqs = psutil.cpu_freq(percpu=True) or []
            total = psutil.cpu_freq()
        except (AttributeError, NotImplementedError, OSError):
            # Frequency not exposed on this platform
            return None
        currents = [f.current for f in freqs if f is not None and f.current]
        if not currents:
            if total is None or not total.current:
                return None
            currents = [total.current]
        return CpuSpeedReading(
            min_ghz=min(currents) / 1000,
            avg_ghz=sum(currents) / len(currents) / 1000,
            max_ghz=max(currents) / 1000,
        )

    def cpu_temperature(self) -> CpuTempReading | None:
        """Main and per-core CPU temperature; None where unsupported."""
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            return None
        chips = sensors() or {}
        entries = next((chips[name] for name in CPU_SENSOR_CHIPS if chips.get(name)), None)
        if not entries:
            return None

        main = next(
            (e.current for e in entries if e.label in MAIN_SENSOR_LABELS),
            entries[0].current,
        )
        cores = [e.current for e in entries if e.label.startswith("Core")]
        return CpuTempReading(main=main, cores=cores)

    def memory(self) -> MemoryReading:
        mem = psutil.virtual_memory()
        return MemoryReading(total_bytes=mem.total, used_bytes=mem.used)

    def disk_usage(self) -> DiskUsageReading:
        """Usage summed across mounted filesystems, one entry per device."""
        total = 0
        used = 0
        seen: set[str] = set()
        for part in psutil.disk_partitions(all=False):
            if part.device in seen:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                # Unreadable or vanished mount (PermissionError is an OSError)
                logger.debug("Skipping mount %s", part.mountpoint)
                continue
            seen.add(part.device)
            total += usage.total
            used += usage.used
        return DiskUsageReading(total_bytes=total, used_bytes=used)

    def disk_io(self) -> CounterReading | None:
        """Cumulative bytes read/written since boot."""
        counters = psutil.disk_io_counters(perdisk=False)
        if counters is None:
            return None
        return CounterReading(first=counters.read_bytes, second=counters.write_bytes)

    def network_io(self) -> CounterReading | None:
        """Cumulative bytes received/sent since boot, summed over interfaces."""
        nics = psutil.net_io_counters(pernic=True)
        if not nics:
            return None
        return CounterReading(
            first=sum(n.bytes_recv for n in nics.values()),
            second=sum(n.bytes_sent for n in nics.values()),
        )

    def uptime(self) -> float:
        return time.time() - psutil.boot_time()

    def processes(self) -> list[ProcessReading]:
        """
        Collect all running processes.

        Handles AccessDenied, ZombieProcess and NoSuchProcess by skipping the
        affected process.
        """
        readings: list[ProcessReading] = []
        for proc in psutil.process_iter(attrs=["pid", "name", "cpu_percent", "memory_info"]):
            try:
                info = proc.info
                mem_info = info.get("memory_info")
                pid = info.get("pid", 0)
                readings.append(
                    ProcessReading(
                        pid=pid,
                        name=info.get("name") or f"pid:{pid}",
                        cpu_percent=info.get("cpu_percent"),
                        rss_bytes=mem_info.rss if mem_info else None,
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                # Process died mid-poll or is not readable
                continue
        return readings
