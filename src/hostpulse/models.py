"""Data models for hostpulse."""

from dataclasses import dataclass, field
from typing import Any

BYTES_PER_GB = 1024**3
CPU_TARGET_C = 80


@dataclass(slots=True, frozen=True)
class MetricPoint:
    """Immutable time-series point."""

    timestamp_ms: int  # Epoch milliseconds
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"t": self.timestamp_ms, "v": self.value}


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Immutable sample of a single process."""

    pid: int
    name: str
    cpu_percent: float  # 0.0 - 100.0
    ram_mb: float  # Resident memory, >= 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "cpuPercent": self.cpu_percent,
            "ramMB": self.ram_mb,
        }


def _history(points: tuple[MetricPoint, ...]) -> list[dict[str, Any]]:
    return [point.to_dict() for point in points]


@dataclass(slots=True, frozen=True)
class CpuLoad:
    overall_percent: float
    per_core_percent: tuple[float, ...]
    history: tuple[MetricPoint, ...]


@dataclass(slots=True, frozen=True)
class CpuSpeed:
    min_ghz: float
    avg_ghz: float
    max_ghz: float
    history_avg_ghz: tuple[MetricPoint, ...]


@dataclass(slots=True, frozen=True)
class CpuTemp:
    main_c: float | None  # None when the platform exposes no sensor
    core_temps_c: tuple[float, ...]
    history_main_c: tuple[MetricPoint, ...]
    target_c: int = CPU_TARGET_C


@dataclass(slots=True, frozen=True)
class Memory:
    total_gb: float
    used_gb: float
    used_percent: float
    free_percent: float
    history_used_percent: tuple[MetricPoint, ...]


@dataclass(slots=True, frozen=True)
class DiskUsage:
    used_percent: float
    free_percent: float
    total_gb: float
    used_gb: float


@dataclass(slots=True, frozen=True)
class DiskActivity:
    read_mbps: float
    write_mbps: float
    history_read_mbps: tuple[MetricPoint, ...]
    history_write_mbps: tuple[MetricPoint, ...]


@dataclass(slots=True, frozen=True)
class Network:
    down_mbps: float
    up_mbps: float
    history_down_mbps: tuple[MetricPoint, ...]
    history_up_mbps: tuple[MetricPoint, ...]


@dataclass(slots=True, frozen=True)
class Uptime:
    seconds: float
    human: str


@dataclass(slots=True, frozen=True)
class Meta:
    sample_interval_ms: int
    history_points: int


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    Immutable, self-contained bundle of one collection cycle.

    Histories are copies of the rolling windows taken at assembly time, so a
    snapshot never changes after it is produced.
    """

    timestamp_ms: int
    datetime_iso: str
    cpu_load: CpuLoad
    cpu_speed: CpuSpeed
    cpu_temp: CpuTemp
    memory: Memory
    disk_usage: DiskUsage
    disk_activity: DiskActivity
    network: Network
    top_processes: tuple[ProcessSample, ...]
    uptime: Uptime
    meta: Meta

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON payload sent to clients."""
        return {
            "timestampMs": self.timestamp_ms,
            "currentDateTimeISO": self.datetime_iso,
            "cpuLoad": {
                "overallPercent": self.cpu_load.overall_percent,
                "perCorePercent": list(self.cpu_load.per_core_percent),
                "history": _history(self.cpu_load.history),
            },
            "cpuSpeed": {
                "minGHz": self.cpu_speed.min_ghz,
                "avgGHz": self.cpu_speed.avg_ghz,
                "maxGHz": self.cpu_speed.max_ghz,
                "historyAvgGHz": _history(self.cpu_speed.history_avg_ghz),
            },
            "cpuTemp": {
                "mainC": self.cpu_temp.main_c,
                "coreTempsC": list(self.cpu_temp.core_temps_c),
                "historyMainC": _history(self.cpu_temp.history_main_c),
                "targetC": self.cpu_temp.target_c,
            },
            "memory": {
                "totalGB": self.memory.total_gb,
                "usedGB": self.memory.used_gb,
                "usedPercent": self.memory.used_percent,
                "freePercent": self.memory.free_percent,
                "historyUsedPercent": _history(self.memory.history_used_percent),
            },
            "diskUsage": {
                "usedPercent": self.disk_usage.used_percent,
                "freePercent": self.disk_usage.free_percent,
                "totalGB": self.disk_usage.total_gb,
                "usedGB": self.disk_usage.used_gb,
            },
            "diskActivity": {
                "readMBps": self.disk_activity.read_mbps,
                "writeMBps": self.disk_activity.write_mbps,
                "historyReadMBps": _history(self.disk_activity.history_read_mbps),
                "historyWriteMBps": _history(self.disk_activity.history_write_mbps),
            },
            "network": {
                "downMBps": self.network.down_mbps,
                "upMBps": self.network.up_mbps,
                "historyDownMBps": _history(self.network.history_down_mbps),
                "historyUpMBps": _history(self.network.history_up_mbps),
            },
            "topProcesses": [proc.to_dict() for proc in self.top_processes],
            "uptime": {
                "uptimeSeconds": self.uptime.seconds,
                "uptimeHuman": self.uptime.human,
            },
            "meta": {
                "sampleIntervalMs": self.meta.sample_interval_ms,
                "historyPoints": self.meta.history_points,
            },
        }


# Raw provider readings. Fields may be None (or anything non-numeric) when the
# platform does not expose a value; the collector normalizes them.


@dataclass(slots=True, frozen=True)
class CpuLoadReading:
    overall: Any
    per_core: list[Any] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class CpuSpeedReading:
    min_ghz: Any
    avg_ghz: Any
    max_ghz: Any


@dataclass(slots=True, frozen=True)
class CpuTempReading:
    main: Any
    cores: list[Any] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class MemoryReading:
    total_bytes: Any
    used_bytes: Any


@dataclass(slots=True, frozen=True)
class DiskUsageReading:
    total_bytes: Any
    used_bytes: Any


@dataclass(slots=True, frozen=True)
class CounterReading:
    """Cumulative byte counters since boot (read/write or received/sent)."""

    first: Any
    second: Any


@dataclass(slots=True, frozen=True)
class ProcessReading:
    pid: int
    name: str
    cpu_percent: Any
    rss_bytes: Any


def format_uptime(seconds: Any) -> str:
    """Format uptime seconds as 'D Days, H Hours, M Minutes'."""
    try:
        total = max(0, int(float(seconds or 0)))
    except (TypeError, ValueError, OverflowError):
        total = 0
    days = total // 86400
    hours = (total % 86400) // 3600
    minutes = (total % 3600) // 60
    return f"{days} Days, {hours} Hours, {minutes} Minutes"
