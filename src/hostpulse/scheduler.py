"""Sampling cadence and broadcast of snapshots."""

import asyncio
import logging
from enum import Enum

from hostpulse.collector import CollectionError, SnapshotCollector
from hostpulse.config import MIN_INTERVAL_MS, Settings
from hostpulse.models import Snapshot
from hostpulse.provider import MetricsProvider, PsutilProvider
from hostpulse.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

MIN_INTERVAL = MIN_INTERVAL_MS / 1000  # Seconds


class SchedulerState(Enum):
    """Position of the scheduler in its collection cycle."""

    IDLE = "idle"
    SAMPLING = "sampling"
    PUBLISHED = "published"


class BroadcastScheduler:
    """
    Drives collection and publishing.

    Runs two asyncio tasks: the primary loop collects and publishes a new
    snapshot every ``interval`` seconds, and the heartbeat loop re-publishes
    the latest snapshot every ``heartbeat_interval`` seconds without
    collecting. Collection cycles never overlap; a tick that arrives while a
    cycle is in flight is skipped.
    """

    def __init__(
        self,
        collector: SnapshotCollector,
        registry: SubscriptionRegistry,
        interval: float = 1.0,
        heartbeat_interval: float = 1.0,
    ) -> None:
        """
        Initialize the BroadcastScheduler.

        Args:
            collector: Produces one snapshot per cycle.
            registry: Receives published snapshots and error events.
            interval: Seconds between collection cycles. Default 1.0s.
            heartbeat_interval: Seconds between heartbeat republishes. Default 1.0s.
        """
        self._collector = collector
        self._registry = registry
        if min(interval, heartbeat_interval) < MIN_INTERVAL:
            logger.warning("Intervals below %.3fs are raised to %.3fs", MIN_INTERVAL, MIN_INTERVAL)
        self._interval = max(MIN_INTERVAL, interval)
        self._heartbeat_interval = max(MIN_INTERVAL, heartbeat_interval)
        self._state = SchedulerState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self.cycles = 0
        self.failures = 0
        self.skipped_ticks = 0

    @property
    def registry(self) -> SubscriptionRegistry:
        """Registry receiving this scheduler's snapshots."""
        return self._registry

    @property
    def state(self) -> SchedulerState:
        """Current position in the collection cycle."""
        return self._state

    @property
    def interval(self) -> float:
        """Effective seconds between collection cycles."""
        return self._interval

    @property
    def heartbeat_interval(self) -> float:
        """Effective seconds between heartbeat republishes."""
        return self._heartbeat_interval

    @property
    def is_running(self) -> bool:
        """Check if the scheduler loops are running."""
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Take a warm-up sample, then start the primary and heartbeat loops."""
        if self.is_running:
            return

        self._stop_event.clear()
        try:
            await self.sample_once(wait=False)
        except Exception:
            logger.exception("Warm-up sampling failed")
        self._tasks = [
            asyncio.create_task(self._sample_loop(), name="hostpulse-sampler"),
            asyncio.create_task(self._heartbeat_loop(), name="hostpulse-heartbeat"),
        ]
        logger.info(
            "Scheduler started (interval=%.3fs, heartbeat=%.3fs)",
            self._interval,
            self._heartbeat_interval,
        )

    async def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop both loops.

        Args:
            timeout: How long to wait for the loops to finish (seconds).
        """
        self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        try:
            await asyncio.wait_for(self._registry.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Undelivered events dropped on stop")
        logger.info("Scheduler stopped")

    async def sample_once(self, wait: bool = True) -> Snapshot | None:
        """
        Run one collection cycle and publish its result.

        Delivery to observers starts after the cycle lock is released. With
        ``wait=False`` the result is queued for delivery and the call returns
        without waiting on observers.

        Returns the new snapshot, or None when the cycle failed or was
        skipped because another cycle was still in flight.
        """
        if self._cycle_lock.locked():
            self.skipped_ticks += 1
            logger.debug("Collection still in flight, skipping tick")
            return None

        async with self._cycle_lock:
            self._state = SchedulerState.SAMPLING
            try:
                snapshot = await self._collector.collect()
            except Exception as exc:
                self.failures += 1
                self._state = SchedulerState.IDLE
                if isinstance(exc, CollectionError):
                    logger.warning("Sampling failed: %s", exc)
                else:
                    logger.exception("Unexpected error during collection")
                detail: str | None = str(exc) or repr(exc)
            else:
                self._registry.latest.set(snapshot)
                self.cycles += 1
                self._state = SchedulerState.PUBLISHED
                detail = None

        if detail is not None:
            if wait:
                await self._registry.publish_error("Sampling failed", detail)
            else:
                self._registry.post_error("Sampling failed", detail)
            return None

        if wait:
            await self._registry.publish(snapshot)
        else:
            self._registry.post(snapshot)
        return snapshot

    async def heartbeat_once(self, wait: bool = True) -> bool:
        """Re-publish the latest snapshot unchanged. Returns False if there is none."""
        snapshot = self._registry.latest.get()
        if snapshot is None:
            return False
        if wait:
            await self._registry.publish(snapshot)
        else:
            self._registry.post(snapshot)
        return True

    async def _wait(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds or until stop is requested. True means stop."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return False
        return True

    async def _sample_loop(self) -> None:
        """Primary loop: fixed-rate collection, overrun ticks collapsed."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._interval
        while not await self._wait(next_tick - loop.time()):
            try:
                await self.sample_once(wait=False)
            except Exception:
                # Keep the loop running; next tick retries
                logger.exception("Unexpected error in sampling loop")
            self._state = SchedulerState.IDLE

            next_tick += self._interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // self._interval) + 1
                self.skipped_ticks += missed
                logger.debug("Collection overran, collapsing %d tick(s)", missed)
                next_tick += missed * self._interval

    async def _heartbeat_loop(self) -> None:
        """Secondary loop: republish the latest snapshot."""
        while not await self._wait(self._heartbeat_interval):
            try:
                await self.heartbeat_once(wait=False)
            except Exception:
                logger.exception("Unexpected error in heartbeat loop")


def build_scheduler(settings: Settings, provider: MetricsProvider | None = None) -> BroadcastScheduler:
    """Wire a collector, registry and scheduler from settings."""
    collector = SnapshotCollector(
        provider if provider is not None else PsutilProvider(),
        history_points=settings.history_points,
        sample_interval_ms=settings.sample_interval_ms,
        top_n=settings.top_processes,
        read_timeout=settings.provider_timeout_s,
    )
    registry = SubscriptionRegistry(send_timeout=settings.send_timeout_s)
    return BroadcastScheduler(
        collector,
        registry,
        interval=settings.sample_interval_ms / 1000,
        heartbeat_interval=settings.heartbeat_interval_ms / 1000,
    )
