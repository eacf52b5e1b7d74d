"""
Latency Prober
==============

Times a sequence of small request/response round trips and reduces them
to median, p95 and jitter. The transport only has to deliver one probe
and wait for its echo; all timing happens here.
"""

import asyncio
import logging
import math
import statistics
import time
from dataclasses import replace
from typing import Callable, List, Optional, Protocol

from velocity.errors import ClientCancelled
from velocity.models import LatencyResult, RttSample, Session, Status

logger = logging.getLogger(__name__)


class ProbeTransport(Protocol):
    async def roundtrip(self, seq: int) -> None:
        """Send probe ``seq`` and return once its echo has arrived"""


def percentile(ordered: List[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list"""
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


def jitter(values: List[float]) -> float:
    """Mean absolute difference between consecutive samples"""
    if len(values) < 2:
        return 0.0
    return statistics.fmean(abs(b - a) for a, b in zip(values, values[1:]))


def summarize(samples: List[RttSample], probes: int, timeouts: int,
              max_timeout_ratio: float = 0.2) -> LatencyResult:
    """Reduce raw probe samples to a LatencyResult"""
    missing = probes - len(samples)
    degraded = missing > 0
    error = "Timeout" if probes and missing / probes > max_timeout_ratio else None

    if not samples:
        return LatencyResult(
            status=Status.FAILED,
            probes=probes,
            sample_count=0,
            timeouts=timeouts,
            degraded=True,
            error=error or "Timeout",
        )

    rtts = [s.rtt_ms for s in samples]
    # Probe 0 pays connection warm-up costs
    measured = rtts[1:] if len(rtts) > 1 and samples[0].seq == 0 else rtts
    ordered = sorted(measured)

    return LatencyResult(
        status=Status.PARTIAL if degraded else Status.SUCCESS,
        probes=probes,
        sample_count=len(samples),
        timeouts=timeouts,
        degraded=degraded,
        min_ms=ordered[0],
        median_ms=statistics.median(ordered),
        p95_ms=percentile(ordered, 95),
        max_ms=ordered[-1],
        jitter_ms=jitter(measured),
        error=error,
    )


class LatencyProber:
    """Runs ping/pong probes against a ProbeTransport"""

    def __init__(self, count: int = 20, interval: float = 0.05, probe_timeout: float = 2.0,
                 max_timeout_ratio: float = 0.2, clock: Callable[[], float] = time.perf_counter):
        self.count = count
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.max_timeout_ratio = max_timeout_ratio
        self.clock = clock

    async def probe(self, session: Optional[Session], transport: ProbeTransport,
                    count: Optional[int] = None, interval: Optional[float] = None) -> LatencyResult:
        """
        Send ``count`` probes spaced by ``interval`` seconds.

        A probe slower than the per-probe deadline is counted as a timeout and
        the run continues. Running out of session time stops the run early;
        the probes that never ran count as missing.

        A disconnect or a set ``session.cancelled`` aborts the probe in flight
        and returns what was measured so far with ``error="ClientCancelled"``.
        """
        count = self.count if count is None else count
        interval = self.interval if interval is None else interval

        samples: List[RttSample] = []
        timeouts = 0
        sent = 0
        interrupted = False

        cancel_task = None
        if session is not None:
            cancel_task = asyncio.ensure_future(session.cancelled.wait())

        try:
            for seq in range(count):
                if session is not None and session.cancelled.is_set():
                    interrupted = True
                    break

                budget = self.probe_timeout
                if session is not None:
                    remaining = session.remaining()
                    if remaining <= 0:
                        logger.info(f"Session {session.session_id} deadline reached after {seq}/{count} probes")
                        break
                    budget = min(budget, remaining)

                sent += 1
                started = self.clock()
                probe_task = asyncio.ensure_future(transport.roundtrip(seq))
                waiters = {probe_task} if cancel_task is None else {probe_task, cancel_task}
                done, _ = await asyncio.wait(waiters, timeout=budget,
                                             return_when=asyncio.FIRST_COMPLETED)
                finished_at = self.clock()

                if probe_task not in done:
                    probe_task.cancel()
                    await asyncio.gather(probe_task, return_exceptions=True)
                    if cancel_task is not None and cancel_task in done:
                        interrupted = True
                        break
                    timeouts += 1
                    logger.debug(f"Probe {seq} exceeded {budget * 1000:.0f}ms deadline")
                else:
                    try:
                        probe_task.result()
                    except ClientCancelled:
                        interrupted = True
                        break
                    samples.append(RttSample(seq, (finished_at - started) * 1000))

                if interval > 0 and seq < count - 1:
                    if cancel_task is None:
                        await asyncio.sleep(interval)
                    else:
                        await asyncio.wait({cancel_task}, timeout=interval)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
                await asyncio.gather(cancel_task, return_exceptions=True)

        if interrupted:
            result = summarize(samples, sent, timeouts, self.max_timeout_ratio)
            logger.info(f"Latency probing cancelled after {sent}/{count} probes")
            return replace(
                result,
                status=Status.PARTIAL if samples else Status.FAILED,
                degraded=True,
                error=ClientCancelled.code,
            )

        result = summarize(samples, count, timeouts, self.max_timeout_ratio)
        if result.degraded:
            logger.warning(f"Latency run degraded: {result.sample_count}/{count} valid probes, "
                           f"{timeouts} timed out")
        return result
