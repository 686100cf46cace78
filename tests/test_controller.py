"""Unit tests for SampleController (rate, stop, failure handling)."""

from __future__ import annotations

import threading
import time

import pytest

from postage.controller import SampleController
from postage.exceptions import PostageRunnerError, SamplingError
from postage.results import ResultAggregate
from postage.sampler import Sampler


class CountingSampler(Sampler):
    def __init__(self, fail_every: int = 0, boom: bool = False) -> None:
        self.calls = 0
        self.fail_every = fail_every
        self.boom = boom
        self.lock = threading.Lock()

    def check_availability(self) -> bool:
        return True

    def do_sample(self) -> None:
        with self.lock:
            self.calls += 1
            n = self.calls
        if self.boom:
            raise RuntimeError("unexpected")
        if self.fail_every and n % self.fail_every == 0:
            raise SamplingError("sample failed")


def test_delay_from_rate() -> None:
    c = SampleController(CountingSampler(), 6)
    assert c.delay_seconds == pytest.approx(10.0)
    c = SampleController(CountingSampler(), 60, minute_seconds=1.2)
    assert c.delay_seconds == pytest.approx(0.02)


def test_fixed_delay_overrides_rate() -> None:
    c = SampleController(CountingSampler(), 10, fixed_delay_seconds=2.5)
    assert c.delay_seconds == 2.5
    c = SampleController(CountingSampler(), 10, fixed_delay_seconds=0)
    assert c.delay_seconds == pytest.approx(6.0)


def test_zero_rate_without_fixed_delay_rejected() -> None:
    with pytest.raises(ValueError):
        SampleController(CountingSampler(), 0)


def test_name_defaults_to_sampler_name() -> None:
    assert SampleController(CountingSampler(), 1).name == "CountingSampler"
    assert SampleController(CountingSampler(), 1, name="custom").name == "custom"


def test_rate_fidelity() -> None:
    sampler = CountingSampler()
    # 60 per "minute" of 0.5s -> one sample every ~8ms
    c = SampleController(sampler, 60, minute_seconds=0.5)
    c.start()
    time.sleep(0.5)
    c.stop()
    assert c.join(2.0)
    assert 40 <= sampler.calls <= 65


def test_stop_is_idempotent_and_joins() -> None:
    c = SampleController(CountingSampler(), 600, minute_seconds=1.0)
    c.start()
    time.sleep(0.05)
    c.stop()
    c.stop()
    assert c.join(2.0)
    assert not c.running
    assert c.stopped


def test_stop_before_start_never_samples() -> None:
    sampler = CountingSampler()
    c = SampleController(sampler, 600, minute_seconds=1.0)
    c.stop()
    c.start()
    assert c.join(2.0)
    assert sampler.calls == 0


def test_stop_interrupts_long_wait() -> None:
    c = SampleController(CountingSampler(), 1)  # one sample per 60s
    c.start()
    time.sleep(0.05)
    t0 = time.monotonic()
    c.stop()
    assert c.join(2.0)
    assert time.monotonic() - t0 < 1.0
    assert c.sample_count == 1


def test_double_start_raises() -> None:
    c = SampleController(CountingSampler(), 1)
    c.start()
    try:
        with pytest.raises(PostageRunnerError):
            c.start()
    finally:
        c.stop()
        c.join(2.0)


def test_sampling_errors_recorded_and_loop_continues() -> None:
    results = ResultAggregate()
    sampler = CountingSampler(fail_every=2)
    c = SampleController(sampler, 600, results=results, minute_seconds=1.0, name="flaky")
    c.start()
    time.sleep(0.2)
    c.stop()
    assert c.join(2.0)
    assert sampler.calls >= 6
    assert c.error_count == sampler.calls // 2
    assert results.error_count == c.error_count
    snap = results.snapshot("t", 0)
    assert {r.source for r in snap.error_records} == {"flaky"}


def test_unexpected_errors_recorded_and_loop_continues() -> None:
    results = ResultAggregate()
    sampler = CountingSampler(boom=True)
    c = SampleController(sampler, 600, results=results, minute_seconds=1.0)
    c.start()
    time.sleep(0.1)
    c.stop()
    assert c.join(2.0)
    assert sampler.calls >= 2
    assert results.error_count == sampler.calls
    snap = results.snapshot("t", 0)
    assert snap.error_records[0].message == "RuntimeError: unexpected"


def test_controllers_do_not_block_each_other() -> None:
    class Slow(Sampler):
        def check_availability(self) -> bool:
            return True

        def do_sample(self) -> None:
            time.sleep(0.3)

    fast = CountingSampler()
    slow_c = SampleController(Slow(), 600, minute_seconds=1.0)
    fast_c = SampleController(fast, 600, minute_seconds=1.0)
    slow_c.start()
    fast_c.start()
    time.sleep(0.25)
    fast_c.stop()
    slow_c.stop()
    assert fast_c.join(2.0) and slow_c.join(2.0)
    assert fast.calls >= 10
    assert slow_c.sample_count == 1
