"""Rate-controlled scheduler: drives one sampler on its own thread.

Each SampleController owns one worker thread that invokes its sampler at
`invocations_per_minute` (or at a fixed delay) until stop() is called.
Invocations are scheduled against a monotonic deadline so a slow sample only
postpones the next invocation of this controller, never accumulates drift,
and never affects other controllers.
"""

from __future__ import annotations

import threading
import time

from .exceptions import PostageRunnerError, SamplingError
from .logging_config import get_logger
from .results import ResultAggregate
from .sampler import Sampler

logger = get_logger("controller")

SECONDS_PER_MINUTE = 60.0


class SampleController:
    """Invoke a sampler repeatedly at a target rate until stopped.

    Args:
        sampler: The work to repeat
        invocations_per_minute: Target rate; the delay is minute_seconds / rate
        fixed_delay_seconds: When > 0, used as delay instead of the rate-derived one
        results: Aggregate that receives one error record per failed sample
        name: Thread and log name (defaults to the sampler name)
        minute_seconds: Length of one scheduling minute (60 outside of tests)
    """

    def __init__(
        self,
        sampler: Sampler,
        invocations_per_minute: float,
        fixed_delay_seconds: float | None = None,
        results: ResultAggregate | None = None,
        *,
        name: str | None = None,
        minute_seconds: float = SECONDS_PER_MINUTE,
    ) -> None:
        if fixed_delay_seconds is not None and fixed_delay_seconds > 0:
            self._delay = float(fixed_delay_seconds)
        else:
            if invocations_per_minute <= 0:
                raise ValueError("invocations_per_minute must be > 0 without a fixed delay")
            self._delay = minute_seconds / invocations_per_minute
        self._sampler = sampler
        self._results = results
        self._name = name or sampler.name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self._sample_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def sampler(self) -> Sampler:
        return self._sampler

    @property
    def delay_seconds(self) -> float:
        return self._delay

    @property
    def sample_count(self) -> int:
        """Completed invocations, failed ones included."""
        return self._sample_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive() and not self._stop_event.is_set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        """Spawn the worker thread. A controller is started at most once."""
        with self._start_lock:
            if self._thread is not None:
                raise PostageRunnerError("controller already started", context={"controller": self._name})
            self._thread = threading.Thread(target=self._run, name=f"sampler-{self._name}", daemon=True)
            self._thread.start()
        logger.debug("Started %s (delay %.3fs)", self._name, self._delay)

    def stop(self) -> None:
        """Ask the worker to leave its loop. Idempotent; an in-flight sample completes."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.debug("Stop requested for %s after %d sample(s)", self._name, self._sample_count)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker to exit. True if it is gone (or never started)."""
        t = self._thread
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    def _run(self) -> None:
        stopped = self._stop_event.is_set
        wait = self._stop_event.wait
        next_at = time.monotonic()
        while not stopped():
            self._sample_once()
            next_at += self._delay
            remaining = next_at - time.monotonic()
            if remaining < 0:
                # Sampling took longer than the delay: restart the schedule from now
                next_at = time.monotonic()
                remaining = 0.0
            if wait(remaining):
                break
        logger.debug("%s exited after %d sample(s), %d error(s)", self._name, self._sample_count, self._error_count)

    def _sample_once(self) -> None:
        try:
            self._sampler.do_sample()
        except SamplingError as e:
            self._error_count += 1
            logger.warning("Sample failed in %s: %s", self._name, e)
            if self._results is not None:
                self._results.record_error(self._name, str(e))
        except Exception as e:  # noqa: BLE001
            self._error_count += 1
            logger.exception("Unexpected error in %s", self._name)
            if self._results is not None:
                self._results.record_error(self._name, f"{type(e).__name__}: {e}")
        finally:
            self._sample_count += 1
