"""
Throughput estimator tests
Synthetic transfers drive a fake clock so every window is deterministic
"""

import asyncio
import random
import time

import pytest

from velocity.errors import ClientCancelled, StalledTransfer
from velocity.models import Direction, Status
from velocity.registry import SessionRegistry
from velocity.throughput import ThroughputEstimator, WindowMeter, longest_empty_run


async def constant_rate(clock, bits_per_second, seconds, step):
    start = clock()
    per_chunk = int(bits_per_second / 8 * step)
    for k in range(1, int(round(seconds / step)) + 1):
        clock.set(start + k * step)
        yield per_chunk


def measure(estimator, transfer, session=None, cancelled=None, direction=Direction.DOWNLOAD):
    return asyncio.run(estimator.measure(session, direction, transfer, cancelled))


def test_ten_megabytes_over_ten_seconds(clock):
    estimator = ThroughputEstimator(clock=clock)
    result = measure(estimator, constant_rate(clock, 8_000_000, 10.0, 0.001))

    assert result.status is Status.SUCCESS
    assert not result.partial
    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)
    assert result.bytes_transferred == pytest.approx(10_000_000, rel=0.001)
    assert result.windows_used == result.windows_total - estimator.warmup_windows


@pytest.mark.parametrize("rate", [1_000_000, 64_000_000, 1_000_000_000])
def test_fixed_rate_source_is_measured_within_five_percent(clock, rate):
    estimator = ThroughputEstimator(duration=4.0, warmup=1.0, window=0.25, clock=clock)
    result = measure(estimator, constant_rate(clock, rate, 4.0, 1 / 64))

    assert result.status is Status.SUCCESS
    assert result.bits_per_second == pytest.approx(rate, rel=0.05)


def test_uneven_chunks_average_out(clock):
    rng = random.Random(99)

    async def noisy():
        start = clock()
        for k in range(1, 5001):
            clock.set(start + k * 0.001)
            yield rng.randint(500, 1500)

    estimator = ThroughputEstimator(duration=5.0, warmup=1.0, window=0.2, clock=clock)
    result = measure(estimator, noisy())

    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)


def test_warmup_windows_are_discarded(clock):
    async def slow_start():
        async for size in constant_rate(clock, 800_000, 2.0, 0.001):
            yield size
        async for size in constant_rate(clock, 8_000_000, 4.0, 0.001):
            yield size

    estimator = ThroughputEstimator(duration=6.0, warmup=2.0, window=0.2, clock=clock)
    result = measure(estimator, slow_start())

    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)


def test_gap_in_data_is_a_stall(clock):
    async def stalls():
        async for size in constant_rate(clock, 8_000_000, 3.0, 0.001):
            yield size
        clock.advance(1.0)
        yield 1000

    estimator = ThroughputEstimator(duration=10.0, window=0.2, stall_windows=3, clock=clock)
    with pytest.raises(StalledTransfer):
        measure(estimator, stalls())


def test_silent_connection_is_detected_by_the_watchdog():
    async def hangs():
        yield 1000
        await asyncio.sleep(10)
        yield 1000

    estimator = ThroughputEstimator(duration=5.0, warmup=0.0, window=0.02, stall_windows=3)
    started = time.monotonic()
    with pytest.raises(StalledTransfer):
        measure(estimator, hangs(), direction=Direction.UPLOAD)
    assert time.monotonic() - started < 2.0


def test_cancel_mid_transfer_returns_partial(clock):
    cancelled = asyncio.Event()

    async def cancelled_at_five_seconds():
        async for size in constant_rate(clock, 8_000_000, 5.0, 0.001):
            yield size
        cancelled.set()
        await asyncio.sleep(10)

    estimator = ThroughputEstimator(duration=10.0, warmup=2.0, window=0.2, clock=clock)
    result = measure(estimator, cancelled_at_five_seconds(), cancelled=cancelled)

    assert result.status is Status.PARTIAL
    assert result.partial
    assert result.error == ClientCancelled.code
    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)
    assert result.duration_ms == pytest.approx(5000, rel=0.01)


def test_client_going_away_returns_partial(clock):
    async def disconnects():
        async for size in constant_rate(clock, 8_000_000, 3.0, 0.001):
            yield size
        raise ClientCancelled("client went away")

    estimator = ThroughputEstimator(duration=10.0, warmup=1.0, window=0.2, clock=clock)
    result = measure(estimator, disconnects(), direction=Direction.UPLOAD)

    assert result.status is Status.PARTIAL
    assert result.error == ClientCancelled.code
    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)


def test_transfer_shorter_than_warmup_is_partial(clock):
    estimator = ThroughputEstimator(duration=10.0, warmup=2.0, window=0.2, clock=clock)
    result = measure(estimator, constant_rate(clock, 8_000_000, 1.1, 0.001))

    assert result.status is Status.PARTIAL
    assert result.windows_used == result.windows_total == 5
    assert result.bits_per_second == pytest.approx(8_000_000, rel=0.05)


def test_no_complete_window_fails(clock):
    estimator = ThroughputEstimator(duration=10.0, window=0.2, clock=clock)
    result = measure(estimator, constant_rate(clock, 8_000_000, 0.1, 0.001))

    assert result.status is Status.FAILED
    assert result.bits_per_second is None
    assert result.bytes_transferred > 0


def test_measurement_is_bounded_by_session_deadline(clock):
    registry = SessionRegistry(session_timeout=1.0, clock=clock)
    session = registry.open("a")
    estimator = ThroughputEstimator(duration=10.0, warmup=0.2, window=0.1, clock=clock)

    result = measure(estimator, constant_rate(clock, 8_000_000, 10.0, 0.001), session=session)

    assert result.duration_ms <= 1000 + 1e-6
    assert result.bytes_transferred == pytest.approx(1_000_000, rel=0.01)


def test_window_meter_buckets(clock):
    meter = WindowMeter(window=0.5, clock=clock, stall_windows=3)
    meter.add(100)
    clock.advance(0.6)
    meter.add(50)
    clock.advance(0.5)

    windows = meter.samples(meter.elapsed())
    assert [w.byte_count for w in windows] == [100, 50]
    assert windows[0].bits_per_second == 1600
    assert meter.idle_windows() == 0
    assert longest_empty_run(windows) == 0


def test_window_meter_spreads_a_slow_send(clock):
    meter = WindowMeter(window=0.25, clock=clock, stall_windows=3)
    clock.advance(1.0)
    # One send that took the whole second
    meter.add(1000, started=0.0)

    windows = meter.samples(meter.elapsed())
    assert [w.byte_count for w in windows] == [250, 250, 250, 250]
    assert meter.total_bytes == 1000
    assert meter.idle_windows() == 0


def test_slow_sends_are_not_a_stall(clock):
    async def slow_sends():
        for _ in range(8):
            sent_at = clock()
            clock.advance(0.5)
            yield 62_500, sent_at

    estimator = ThroughputEstimator(duration=4.0, warmup=1.0, window=0.125, clock=clock)
    result = measure(estimator, slow_sends())

    assert result.status is Status.SUCCESS
    assert result.bits_per_second == pytest.approx(1_000_000, rel=0.05)
