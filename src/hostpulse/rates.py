"""Counter-to-rate derivation for cumulative byte counters."""

from dataclasses import dataclass

BYTES_PER_MB = 1024 * 1024
MIN_ELAPSED = 0.001  # Seconds; two samples may collapse onto one timestamp


@dataclass(slots=True, frozen=True)
class CounterState:
    """Last-seen cumulative values of one counter pair and when they were read."""

    first: float
    second: float
    sampled_at: float  # Monotonic seconds


def rate(
    prev: float | None,
    curr: float,
    prev_ts: float | None,
    curr_ts: float,
    scale: float = BYTES_PER_MB,
) -> float:
    """
    Convert two cumulative counter readings into a non-negative rate.

    Args:
        prev: Previous cumulative reading, or None when there is no baseline.
        curr: Current cumulative reading.
        prev_ts: Time of the previous reading (seconds).
        curr_ts: Time of the current reading (seconds).
        scale: Units per output unit (default: bytes per megabyte).

    Returns:
        Rate in output units per second. 0.0 without a baseline or when the
        counter went backwards (reset or wraparound).
    """
    if prev is None or prev_ts is None:
        return 0.0
    elapsed = max(MIN_ELAPSED, curr_ts - prev_ts)
    delta = curr - prev
    if delta <= 0:
        return 0.0
    return (delta / scale) / elapsed
