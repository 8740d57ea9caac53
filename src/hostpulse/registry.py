"""Observer registry and snapshot fan-out."""

import asyncio
import logging
from typing import Any, Protocol

from hostpulse.models import Snapshot

logger = logging.getLogger(__name__)

EVENT_UPDATE = "health:update"
EVENT_ERROR = "health:error"
EVENT_REQUEST = "health:request"

NO_DATA_MESSAGE = "No data yet."


class Observer(Protocol):
    """Anything that can receive an event with a JSON-ready payload."""

    async def send(self, event: str, data: dict[str, Any]) -> None: ...


class SnapshotCell:
    """
    Single "latest snapshot" slot.

    Written only by the collection cycle; replaced by whole reference, so
    readers always see either the old or the new snapshot.
    """

    def __init__(self) -> None:
        self._snapshot: Snapshot | None = None

    def get(self) -> Snapshot | None:
        """Return the latest snapshot, or None before the first cycle."""
        return self._snapshot

    def set(self, snapshot: Snapshot) -> None:
        """Replace the latest snapshot."""
        self._snapshot = snapshot


class SubscriptionRegistry:
    """
    Tracks active observers and delivers snapshots to them.

    Delivery is best-effort: a failing or slow observer is logged and
    skipped, and never affects delivery to the others.

    ``publish``/``publish_error`` wait for every delivery. ``post``/
    ``post_error`` return at once: each observer gets its own delivery task
    and holds at most one undelivered event, which a newer one replaces.
    """

    def __init__(self, latest: SnapshotCell | None = None, send_timeout: float | None = 2.0) -> None:
        """
        Initialize the SubscriptionRegistry.

        Args:
            latest: Shared latest-snapshot slot (a new one if omitted).
            send_timeout: Per-observer delivery timeout in seconds.
        """
        self.latest = latest if latest is not None else SnapshotCell()
        self._send_timeout = send_timeout
        self._observers: dict[int, Observer] = {}
        self._pending: dict[int, tuple[str, dict[str, Any]]] = {}
        self._pumps: dict[int, asyncio.Task[None]] = {}

    @property
    def observer_count(self) -> int:
        """Number of registered observers."""
        return len(self._observers)

    def is_registered(self, observer: Observer) -> bool:
        """Check if the observer is currently registered."""
        return id(observer) in self._observers

    async def join(self, observer: Observer) -> None:
        """Register an observer and send it the latest snapshot, if any."""
        self._observers[id(observer)] = observer
        snapshot = self.latest.get()
        if snapshot is not None:
            await self._deliver(observer, EVENT_UPDATE, snapshot.to_dict())

    def leave(self, observer: Observer) -> None:
        """Deregister an observer and drop its queued event. Unknown observers are ignored."""
        key = id(observer)
        self._observers.pop(key, None)
        self._pending.pop(key, None)
        pump = self._pumps.pop(key, None)
        if pump is not None and not pump.done():
            pump.cancel()

    async def request_latest(self, observer: Observer) -> None:
        """Answer an on-demand request: the latest snapshot or an explicit no-data error."""
        snapshot = self.latest.get()
        if snapshot is None:
            await self._deliver(observer, EVENT_ERROR, {"message": NO_DATA_MESSAGE})
        else:
            await self._deliver(observer, EVENT_UPDATE, snapshot.to_dict())

    async def publish(self, snapshot: Snapshot) -> None:
        """Send a snapshot to every registered observer."""
        await self._broadcast(EVENT_UPDATE, snapshot.to_dict())

    async def publish_error(self, message: str, detail: str | None = None) -> None:
        """Broadcast a cycle failure."""
        await self._broadcast(EVENT_ERROR, _error_payload(message, detail))

    def post(self, snapshot: Snapshot) -> None:
        """Queue a snapshot for every observer without waiting for delivery."""
        self._post_all(EVENT_UPDATE, snapshot.to_dict())

    def post_error(self, message: str, detail: str | None = None) -> None:
        """Queue a cycle failure for every observer without waiting for delivery."""
        self._post_all(EVENT_ERROR, _error_payload(message, detail))

    async def drain(self) -> None:
        """Wait until every queued event has been delivered or has failed."""
        pumps = [pump for pump in self._pumps.values() if not pump.done()]
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

    def _post_all(self, event: str, data: dict[str, Any]) -> None:
        for key, observer in list(self._observers.items()):
            if key in self._pending:
                logger.debug("Replacing undelivered %s for %r", self._pending[key][0], observer)
            self._pending[key] = (event, data)
            pump = self._pumps.get(key)
            if pump is None or pump.done():
                self._pumps[key] = asyncio.create_task(self._pump(key, observer))

    async def _pump(self, key: int, observer: Observer) -> None:
        """Deliver an observer's queued events one at a time until none is left."""
        while key in self._observers:
            item = self._pending.pop(key, None)
            if item is None:
                return
            await self._deliver(observer, *item)

    async def _broadcast(self, event: str, data: dict[str, Any]) -> None:
        observers = list(self._observers.values())
        if not observers:
            return
        await asyncio.gather(*(self._deliver(observer, event, data) for observer in observers))

    async def _deliver(self, observer: Observer, event: str, data: dict[str, Any]) -> None:
        try:
            if self._send_timeout is None:
                await observer.send(event, data)
            else:
                await asyncio.wait_for(observer.send(event, data), timeout=self._send_timeout)
        except Exception as exc:
            logger.warning("Delivery of %s to %r failed: %r", event, observer, exc)


def _error_payload(message: str, detail: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": message}
    if detail is not None:
        payload["detail"] = detail
    return payload
