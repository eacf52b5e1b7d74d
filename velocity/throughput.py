"""
Throughput Estimator
====================

Measures a streaming transfer in fixed time windows and reports the
median per-window rate after discarding the warmup (TCP slow start).

The transfer is any async iterator yielding byte counts: for uploads it
yields what it received, for downloads it yields ``(bytes_sent, started)``
pairs so that a slow send is spread over the windows it took. A watchdog
wakes up once per window so that a transfer which stops producing bytes
is detected as stalled instead of blocking until the session deadline.
"""

import asyncio
import logging
import math
import statistics
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from velocity.errors import ClientCancelled, StalledTransfer
from velocity.models import Direction, Session, Status, ThroughputResult, WindowSample

logger = logging.getLogger(__name__)


class WindowMeter:
    """Buckets byte counts into fixed windows relative to a start time"""

    def __init__(self, window: float, clock: Callable[[], float], stall_windows: int = 3):
        self.window = window
        self.clock = clock
        self.stall_windows = stall_windows
        self.start = clock()
        self.total_bytes = 0
        self.last_index = -1
        self._buckets: Dict[int, int] = {}

    def elapsed(self) -> float:
        return self.clock() - self.start

    def index_at(self, elapsed: float) -> int:
        return int(elapsed // self.window)

    def add(self, byte_count: int, started: Optional[float] = None):
        """
        Record bytes moved now; raise StalledTransfer after a long gap.

        ``started`` is the elapsed time at which a send began. Its bytes are
        spread evenly over every window the send covered instead of landing
        in the window where it completed.
        """
        now = self.elapsed()
        if started is None or started >= now:
            started = now
        first = self.index_at(started)
        gap = first - self.last_index - 1
        if gap > self.stall_windows:
            raise StalledTransfer(f"No data for {gap} consecutive windows")

        last = self.index_at(now)
        span = now - started
        assigned = 0
        for index in range(first, last + 1):
            if index == last:
                share = byte_count - assigned
            else:
                covered = (index + 1) * self.window - started
                share = int(round(byte_count * covered / span)) - assigned
            self._buckets[index] = self._buckets.get(index, 0) + share
            assigned += share

        self.total_bytes += byte_count
        self.last_index = max(self.last_index, last)

    def idle_windows(self) -> int:
        """Empty windows since the last byte (or since start)"""
        return self.index_at(self.elapsed()) - self.last_index - 1

    def samples(self, elapsed: float) -> List[WindowSample]:
        """All windows that were complete at ``elapsed`` seconds"""
        complete = self.index_at(elapsed)
        return [
            WindowSample(index, self._buckets.get(index, 0), self.window)
            for index in range(complete)
        ]


def longest_empty_run(windows: List[WindowSample]) -> int:
    longest = current = 0
    for sample in windows:
        current = current + 1 if sample.byte_count == 0 else 0
        longest = max(longest, current)
    return longest


class ThroughputEstimator:
    """Sliding-window bandwidth estimation for one transfer direction"""

    def __init__(self, duration: float = 10.0, warmup: float = 2.0, window: float = 0.2,
                 stall_windows: int = 3, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self.warmup = warmup
        self.window = window
        self.stall_windows = stall_windows
        self.clock = clock

    @property
    def warmup_windows(self) -> int:
        return math.ceil(round(self.warmup / self.window, 6))

    async def measure(self, session: Optional[Session], direction: Direction,
                      transfer: AsyncIterator[Union[int, Tuple[int, float]]],
                      cancelled: Optional[asyncio.Event] = None) -> ThroughputResult:
        """
        Drive ``transfer`` for the configured duration (bounded by the session
        deadline) and return the windowed estimate.

        Cancellation, either through ``cancelled`` or a ClientCancelled raised
        by the transfer, returns a partial result from the windows collected
        so far. A dead connection raises StalledTransfer.
        """
        duration = self.duration
        if session is not None:
            duration = min(duration, session.remaining())
            if cancelled is None:
                cancelled = session.cancelled

        meter = WindowMeter(self.window, self.clock, self.stall_windows)

        async def pump():
            async for item in transfer:
                if isinstance(item, tuple):
                    byte_count, sent_at = item
                    meter.add(byte_count, sent_at - meter.start)
                else:
                    meter.add(item)
                if meter.elapsed() >= duration:
                    break

        pump_task = asyncio.ensure_future(pump())
        waiters = {pump_task}
        cancel_task = None
        if cancelled is not None:
            cancel_task = asyncio.ensure_future(cancelled.wait())
            waiters.add(cancel_task)

        interrupted: Optional[str] = None
        try:
            while True:
                done, _ = await asyncio.wait(waiters, timeout=self.window,
                                             return_when=asyncio.FIRST_COMPLETED)
                if cancel_task is not None and cancel_task in done:
                    interrupted = ClientCancelled.code
                    break
                if pump_task in done:
                    pump_task.result()
                    break
                if meter.idle_windows() > self.stall_windows:
                    raise StalledTransfer(
                        f"{direction.value.title()} stalled: no data for "
                        f"{meter.idle_windows()} consecutive windows"
                    )
                if meter.elapsed() >= duration + self.window:
                    break
        except ClientCancelled:
            interrupted = ClientCancelled.code
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
            aclose = getattr(transfer, 'aclose', None)
            if aclose is not None:
                await aclose()

        return self._summarize(direction, meter, min(meter.elapsed(), duration), interrupted)

    def _summarize(self, direction: Direction, meter: WindowMeter, elapsed: float,
                   interrupted: Optional[str]) -> ThroughputResult:
        windows = meter.samples(elapsed)

        if interrupted is None and longest_empty_run(windows) > self.stall_windows:
            raise StalledTransfer(f"{direction.value.title()} stalled mid-transfer")

        used = windows[self.warmup_windows:]
        fallback = not used
        if fallback:
            # Too short to get past warmup: best effort over everything measured
            used = windows

        bits_per_second = None
        if used:
            bits_per_second = int(round(statistics.median(w.bits_per_second for w in used)))

        if interrupted is not None:
            status = Status.PARTIAL
        elif bits_per_second is None:
            status = Status.FAILED
        elif fallback:
            status = Status.PARTIAL
        else:
            status = Status.SUCCESS

        result = ThroughputResult(
            direction=direction,
            status=status,
            bits_per_second=bits_per_second,
            bytes_transferred=meter.total_bytes,
            windows_total=len(windows),
            windows_used=len(used),
            duration_ms=elapsed * 1000,
            partial=status is not Status.SUCCESS,
            error=interrupted,
        )

        if bits_per_second is not None:
            logger.info(f"📊 {direction.value.title()}: {bits_per_second / 1_000_000:.2f} Mbps "
                        f"over {len(used)}/{len(windows)} windows ({result.status.value})")
        else:
            logger.info(f"📊 {direction.value.title()}: no complete windows ({result.status.value})")
        return result
