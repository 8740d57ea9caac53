"""Fixed-capacity rolling window of metric points."""

from collections import deque

from hostpulse.models import MetricPoint


class RollingWindow:
    """
    Insertion-ordered time series that keeps only the newest points.

    Capacity is fixed at construction. Pushing onto a full window evicts the
    oldest point.
    """

    def __init__(self, capacity: int = 60) -> None:
        """
        Initialize the RollingWindow.

        Args:
            capacity: Number of points retained. Must be at least 1.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._points: deque[MetricPoint] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._points)

    @property
    def capacity(self) -> int:
        """Maximum number of points retained."""
        return self._points.maxlen or 0

    def push(self, point: MetricPoint) -> None:
        """Append a point, evicting the oldest if the window is full."""
        self._points.append(point)

    def snapshot(self) -> tuple[MetricPoint, ...]:
        """Return a point-in-time copy in chronological order."""
        return tuple(self._points)

    def clear(self) -> None:
        """Drop every point; capacity is unchanged."""
        self._points.clear()
