"""Tests for the SnapshotCollector class."""

import asyncio
import threading
import time

import pytest

from fakes import FakeClock, FakeProvider, make_collector

from hostpulse.collector import (
    CPU_LOAD,
    DISK_READ_MBPS,
    TRACKED_METRICS,
    CollectionError,
    SnapshotCollector,
    clamp_percent,
    to_number,
    top_processes,
)
from hostpulse.models import (
    CounterReading,
    CpuLoadReading,
    CpuTempReading,
    MemoryReading,
    ProcessReading,
    Snapshot,
)


def cycle(values):
    """Callable returning successive values on each read."""
    iterator = iter(values)
    return lambda: next(iterator)


class TestNormalization:
    """Tests for the value normalization helpers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [(150, 100.0), (-5, 0.0), (42.5, 42.5), (None, 0.0), ("abc", 0.0), ("12", 12.0)],
    )
    def test_clamp_percent(self, raw, expected):
        """Test percentages are clamped into [0, 100] and missing values become 0."""
        assert clamp_percent(raw) == expected

    def test_to_number_rejects_non_finite(self):
        """Test NaN, infinity and booleans are not numbers."""
        assert to_number(float("nan")) is None
        assert to_number(float("inf")) is None
        assert to_number(True) is None
        assert to_number(3) == 3.0

    def test_top_processes_sorted_stable(self):
        """Test top-5 by CPU descending with ties kept in provider order."""
        readings = [
            ProcessReading(pid=1, name="a", cpu_percent=5.0, rss_bytes=0),
            ProcessReading(pid=2, name="b", cpu_percent=50.0, rss_bytes=0),
            ProcessReading(pid=3, name="c", cpu_percent=20.0, rss_bytes=0),
            ProcessReading(pid=4, name="d", cpu_percent=20.0, rss_bytes=0),
            ProcessReading(pid=5, name="e", cpu_percent=1.0, rss_bytes=0),
            ProcessReading(pid=6, name="f", cpu_percent=20.0, rss_bytes=0),
            ProcessReading(pid=7, name="g", cpu_percent=0.0, rss_bytes=0),
        ]

        top = top_processes(readings)

        assert [p.pid for p in top] == [2, 3, 4, 6, 1]

    def test_top_processes_normalizes_fields(self):
        """Test CPU is clamped, RSS converted to MB and blank names filled in."""
        readings = [
            ProcessReading(pid=9, name="", cpu_percent=350.0, rss_bytes=3 * 1024 * 1024),
            ProcessReading(pid=10, name="x", cpu_percent=None, rss_bytes=None),
        ]

        top = top_processes(readings)

        assert top[0].name == "pid:9"
        assert top[0].cpu_percent == 100.0
        assert top[0].ram_mb == pytest.approx(3.0)
        assert top[1].cpu_percent == 0.0
        assert top[1].ram_mb == 0.0


class TestSnapshotCollector:
    """Tests for SnapshotCollector class."""

    @pytest.mark.asyncio
    async def test_collect_builds_snapshot(self):
        """Test a normal cycle produces a fully populated snapshot."""
        collector = make_collector(history_points=10, sample_interval_ms=500)

        snapshot = await collector.collect()

        assert isinstance(snapshot, Snapshot)
        assert snapshot.cpu_load.overall_percent == 25.0
        assert snapshot.cpu_load.per_core_percent == (20.0, 30.0)
        assert snapshot.cpu_speed.avg_ghz == 2.4
        assert snapshot.cpu_temp.main_c == 55.0
        assert snapshot.cpu_temp.core_temps_c == (54.0, 56.0)
        assert snapshot.cpu_temp.target_c == 80
        assert snapshot.memory.total_gb == pytest.approx(16.0)
        assert snapshot.memory.used_gb == pytest.approx(4.0)
        assert snapshot.memory.used_percent == pytest.approx(25.0)
        assert snapshot.memory.free_percent == pytest.approx(75.0)
        assert snapshot.disk_usage.used_percent == pytest.approx(25.0)
        assert snapshot.disk_usage.total_gb == pytest.approx(500.0)
        assert snapshot.uptime.human == "1 Days, 1 Hours, 1 Minutes"
        assert [p.pid for p in snapshot.top_processes] == [42, 1]
        assert snapshot.meta.sample_interval_ms == 500
        assert snapshot.meta.history_points == 10
        assert snapshot.timestamp_ms == 1_700_000_000_000
        assert snapshot.datetime_iso == "2023-11-14T22:13:20.000Z"

    @pytest.mark.asyncio
    async def test_first_cycle_rates_are_zero(self):
        """Test disk and network rates are zero without a baseline."""
        snapshot = await make_collector().collect()

        assert snapshot.disk_activity.read_mbps == 0.0
        assert snapshot.disk_activity.write_mbps == 0.0
        assert snapshot.network.down_mbps == 0.0
        assert snapshot.network.up_mbps == 0.0

    @pytest.mark.asyncio
    async def test_disk_rate_over_elapsed_window(self):
        """Test 1,000,000 -> 3,000,000 bytes read over 2.0s is ~0.954 MB/s."""
        clock = FakeClock()
        provider = FakeProvider(
            disk_io=cycle(
                [
                    CounterReading(first=1_000_000, second=0),
                    CounterReading(first=3_000_000, second=0),
                ]
            )
        )
        collector = make_collector(provider, clock=clock)

        await collector.collect()
        clock.advance(2.0)
        snapshot = await collector.collect()

        assert snapshot.disk_activity.read_mbps == pytest.approx((2_000_000 / 1_048_576) / 2.0)
        assert snapshot.disk_activity.read_mbps == pytest.approx(0.954, abs=1e-3)
        assert snapshot.disk_activity.write_mbps == 0.0

    @pytest.mark.asyncio
    async def test_network_rates(self):
        """Test network rates use received/sent counter deltas."""
        clock = FakeClock()
        mb = 1024 * 1024
        provider = FakeProvider(
            network_io=cycle(
                [
                    CounterReading(first=10 * mb, second=2 * mb),
                    CounterReading(first=14 * mb, second=3 * mb),
                ]
            )
        )
        collector = make_collector(provider, clock=clock)

        await collector.collect()
        clock.advance(1.0)
        snapshot = await collector.collect()

        assert snapshot.network.down_mbps == pytest.approx(4.0)
        assert snapshot.network.up_mbps == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_counter_reset_clamped_to_zero(self):
        """Test a counter going backwards produces zero activity."""
        clock = FakeClock()
        provider = FakeProvider(
            disk_io=cycle(
                [
                    CounterReading(first=9_000_000, second=9_000_000),
                    CounterReading(first=1_000, second=1_000),
                ]
            )
        )
        collector = make_collector(provider, clock=clock)

        await collector.collect()
        clock.advance(1.0)
        snapshot = await collector.collect()

        assert snapshot.disk_activity.read_mbps == 0.0
        assert snapshot.disk_activity.write_mbps == 0.0

    @pytest.mark.asyncio
    async def test_counter_read_failure_resets_baseline(self):
        """Test a failed counter read zeroes the rate and drops the baseline."""
        clock = FakeClock()
        mb = 1024 * 1024
        readings = iter(
            [
                CounterReading(first=1 * mb, second=0),
                RuntimeError("disk stats unavailable"),
                CounterReading(first=5 * mb, second=0),
                CounterReading(first=7 * mb, second=0),
            ]
        )

        def disk_io():
            value = next(readings)
            if isinstance(value, Exception):
                raise value
            return value

        collector = make_collector(FakeProvider(disk_io=disk_io), clock=clock)

        rates = []
        for _ in range(4):
            snapshot = await collector.collect()
            rates.append(snapshot.disk_activity.read_mbps)
            clock.advance(1.0)

        assert rates[:3] == [0.0, 0.0, 0.0]
        assert rates[3] == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_percentages_are_clamped(self):
        """Test out-of-range provider percentages are clamped."""
        provider = FakeProvider(
            cpu_load=CpuLoadReading(overall=150.0, per_core=[-5.0, 101.0, 50.0]),
            memory=MemoryReading(total_bytes=100, used_bytes=250),
        )

        snapshot = await make_collector(provider).collect()

        assert snapshot.cpu_load.overall_percent == 100.0
        assert snapshot.cpu_load.per_core_percent == (0.0, 100.0, 50.0)
        assert snapshot.memory.used_percent == 100.0
        assert snapshot.memory.free_percent == 0.0

    @pytest.mark.asyncio
    async def test_missing_fields_default(self):
        """Test non-numeric fields fall back to zero and zero totals give 0%."""
        provider = FakeProvider(
            cpu_load=CpuLoadReading(overall="busy", per_core=[None]),
            cpu_speed=None,
            memory=MemoryReading(total_bytes=0, used_bytes=0),
            uptime=None,
        )

        snapshot = await make_collector(provider).collect()

        assert snapshot.cpu_load.overall_percent == 0.0
        assert snapshot.cpu_load.per_core_percent == (0.0,)
        assert snapshot.cpu_speed.min_ghz == 0.0
        assert snapshot.cpu_speed.max_ghz == 0.0
        assert snapshot.memory.used_percent == 0.0
        assert snapshot.uptime.seconds == 0.0

    @pytest.mark.asyncio
    async def test_unknown_temperature_is_none(self):
        """Test an unavailable sensor yields None, not 0, and skips the history."""
        provider = FakeProvider(cpu_temperature=CpuTempReading(main=-1, cores=[-1, 48.0, None]))
        collector = make_collector(provider)

        snapshot = await collector.collect()

        assert snapshot.cpu_temp.main_c is None
        assert snapshot.cpu_temp.core_temps_c == (48.0,)
        assert snapshot.cpu_temp.history_main_c == ()
        assert len(collector.history(CPU_LOAD)) == 1
        assert snapshot.to_dict()["cpuTemp"]["mainC"] is None

    @pytest.mark.asyncio
    async def test_partial_failure_is_field_level(self):
        """Test a single failing read leaves the rest of the snapshot intact."""
        provider = FakeProvider(memory=RuntimeError("no meminfo"), cpu_temperature=OSError("no sensors"))

        snapshot = await make_collector(provider).collect()

        assert snapshot.memory.total_gb == 0.0
        assert snapshot.memory.used_percent == 0.0
        assert snapshot.cpu_temp.main_c is None
        assert snapshot.cpu_load.overall_percent == 25.0

    @pytest.mark.asyncio
    async def test_total_failure_raises_and_keeps_state(self):
        """Test a fully failed batch raises CollectionError and mutates nothing."""
        provider = FakeProvider()
        collector = make_collector(provider)
        await collector.collect()
        before = {name: collector.history(name) for name in TRACKED_METRICS}

        provider.fail_all()
        with pytest.raises(CollectionError):
            await collector.collect()

        assert {name: collector.history(name) for name in TRACKED_METRICS} == before

    @pytest.mark.asyncio
    async def test_slow_read_times_out_as_field_gap(self):
        """Test a read exceeding the timeout becomes a gap, not a stall."""

        def slow_processes():
            time.sleep(0.5)
            return []

        provider = FakeProvider(processes=slow_processes)
        collector = make_collector(provider, read_timeout=0.05)

        snapshot = await collector.collect()

        assert snapshot.top_processes == ()
        assert snapshot.cpu_load.overall_percent == 25.0

    @pytest.mark.asyncio
    async def test_timed_out_read_not_reissued_while_running(self):
        """Test a hung read is skipped until its worker thread returns."""
        gate = threading.Event()

        def hung_processes():
            gate.wait(timeout=5.0)
            return []

        provider = FakeProvider(processes=hung_processes)
        collector = make_collector(provider, read_timeout=0.05)

        await collector.collect()
        snapshot = await collector.collect()

        assert provider.calls["processes"] == 1
        assert snapshot.top_processes == ()
        assert snapshot.cpu_load.overall_percent == 25.0

        gate.set()
        for _ in range(50):
            if collector._in_flight["processes"].done():
                break
            await asyncio.sleep(0.02)
        provider.set(processes=FakeProvider().values["processes"])
        snapshot = await collector.collect()

        assert provider.calls["processes"] == 2
        assert [p.pid for p in snapshot.top_processes] == [42, 1]

    @pytest.mark.asyncio
    async def test_malformed_sequences_become_gaps(self):
        """Test non-sequence core lists and process lists degrade to empty."""
        provider = FakeProvider(
            cpu_load=CpuLoadReading(overall=10.0, per_core=5),
            cpu_temperature=CpuTempReading(main=50.0, cores=7),
            processes=3,
        )
        collector = make_collector(provider)

        snapshot = await collector.collect()

        assert snapshot.cpu_load.overall_percent == 10.0
        assert snapshot.cpu_load.per_core_percent == ()
        assert snapshot.cpu_temp.main_c == 50.0
        assert snapshot.cpu_temp.core_temps_c == ()
        assert snapshot.top_processes == ()

    @pytest.mark.asyncio
    async def test_malformed_process_entries_skipped(self):
        """Test entries that are not process readings are dropped."""
        good = ProcessReading(pid=7, name="sshd", cpu_percent=3.0, rss_bytes=0)
        provider = FakeProvider(
            processes=[
                None,
                "garbage",
                ProcessReading(pid=None, name="x", cpu_percent=1.0, rss_bytes=0),
                good,
            ]
        )
        collector = make_collector(provider)

        snapshot = await collector.collect()

        assert [p.pid for p in snapshot.top_processes] == [7]

    @pytest.mark.asyncio
    async def test_reads_dispatched_concurrently(self):
        """Test cycle latency tracks the slowest read, not the sum."""

        def slow(value):
            def read():
                time.sleep(0.2)
                return value

            return read

        defaults = FakeProvider().values
        provider = FakeProvider(**{name: slow(value) for name, value in defaults.items()})
        collector = make_collector(provider)

        started = time.monotonic()
        await collector.collect()
        elapsed = time.monotonic() - started

        assert elapsed < 9 * 0.2

    @pytest.mark.asyncio
    async def test_history_capacity_scenario(self):
        """Test capacity=3 over loads 10..50 keeps 30, 40, 50 in order."""
        clock = FakeClock()
        wall = FakeClock(1_700_000_000.0)
        provider = FakeProvider()
        collector = make_collector(
            provider, history_points=3, sample_interval_ms=1000, clock=clock, wall_clock=wall
        )

        for load in [10, 20, 30, 40, 50]:
            provider.set(cpu_load=CpuLoadReading(overall=load, per_core=[]))
            snapshot = await collector.collect()
            clock.advance(1.0)
            wall.advance(1.0)

        history = snapshot.to_dict()["cpuLoad"]["history"]
        assert [p["v"] for p in history] == [30.0, 40.0, 50.0]
        assert [p["t"] for p in history] == [
            1_700_000_002_000,
            1_700_000_003_000,
            1_700_000_004_000,
        ]

    @pytest.mark.asyncio
    async def test_snapshot_histories_are_immutable(self):
        """Test an earlier snapshot keeps its histories after later cycles."""
        collector = make_collector(history_points=5)

        first = await collector.collect()
        await collector.collect()

        assert len(first.cpu_load.history) == 1
        assert len(collector.history(CPU_LOAD)) == 2
        assert len(collector.history(DISK_READ_MBPS)) == 2

    @pytest.mark.asyncio
    async def test_windows_stay_bounded(self):
        """Test memory stays bounded over many cycles."""
        collector = make_collector(history_points=4)

        for _ in range(200):
            await collector.collect()

        for name in TRACKED_METRICS:
            assert len(collector.history(name)) == 4

    @pytest.mark.asyncio
    async def test_snapshot_to_dict_shape(self):
        """Test the wire payload carries every section."""
        snapshot = await make_collector().collect()

        payload = snapshot.to_dict()

        assert set(payload) == {
            "timestampMs",
            "currentDateTimeISO",
            "cpuLoad",
            "cpuSpeed",
            "cpuTemp",
            "memory",
            "diskUsage",
            "diskActivity",
            "network",
            "topProcesses",
            "uptime",
            "meta",
        }
        assert set(payload["diskActivity"]) == {
            "readMBps",
            "writeMBps",
            "historyReadMBps",
            "historyWriteMBps",
        }
        assert payload["topProcesses"][0]["name"] == "python"
        assert payload["meta"] == {"sampleIntervalMs": 1000, "historyPoints": 60}

    def test_collector_default_history(self):
        """Test SnapshotCollector defaults to 60 history points."""
        collector = SnapshotCollector(FakeProvider())
        assert collector.history_points == 60
