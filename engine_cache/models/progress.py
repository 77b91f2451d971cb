"""
Progress reporting for engine transfers, including a rate-limited dispatcher so
that callbacks never run once per chunk.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, "int | None"], None]


@dataclass
class TransferProgress:
    """Tracks the state of a single transfer, including a smoothed speed."""

    bytes_so_far: int = 0
    total_bytes: int | None = None
    current_speed_bps: float = 0.0
    _speed_samples: list[float] = field(default_factory=list, repr=False)
    _last_sample_time: float = field(default=0.0, repr=False)
    _last_sample_bytes: int = field(default=0, repr=False)

    def __post_init__(self):
        self._last_sample_time = time.monotonic()

    def advance(self, chunk_size: int) -> None:
        """Adds a received chunk and refreshes the speed estimate."""
        self.bytes_so_far += chunk_size
        now = time.monotonic()
        elapsed = now - self._last_sample_time

        # Sample speed roughly twice per second
        if elapsed > 0.5:
            speed = (self.bytes_so_far - self._last_sample_bytes) / elapsed
            self._speed_samples.append(speed)
            # Keep a sliding window of the last 10 speed samples
            if len(self._speed_samples) > 10:
                self._speed_samples.pop(0)
            self.current_speed_bps = sum(self._speed_samples) / len(self._speed_samples)
            self._last_sample_time = now
            self._last_sample_bytes = self.bytes_so_far

    def reset(self) -> None:
        """Restarts the byte count, used when a transfer is retried."""
        self.bytes_so_far = 0
        self._last_sample_bytes = 0
        self._last_sample_time = time.monotonic()


class ProgressThrottle:
    """
    Forwards progress reports to a callback at most once per ``interval`` seconds.

    The first report and any forced report (the final one) are always delivered.
    Exceptions raised by the callback are logged and swallowed so that a faulty
    listener cannot break the transfer loop.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last_emit: float | None = None

    def report(self, progress: TransferProgress, force: bool = False) -> None:
        if self._callback is None:
            return
        now = self._clock()
        if (
            not force
            and self._last_emit is not None
            and now - self._last_emit < self._interval
        ):
            return
        self._last_emit = now
        try:
            self._callback(progress.bytes_so_far, progress.total_bytes)
        except Exception as e:
            log.debug(f"Progress callback raised, ignoring: {e}", exc_info=True)
