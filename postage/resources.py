"""Resource sampler: CPU and memory of the mail server process (or the whole host)."""

from __future__ import annotations

import time

import psutil

from .exceptions import SamplingError
from .logging_config import get_logger
from .models import ResourceSample
from .results import ResultAggregate
from .sampler import Sampler

logger = get_logger("resources")


class ResourceSampler(Sampler):
    """Samples one process when pid is given, the host otherwise."""

    def __init__(self, results: ResultAggregate, *, pid: int | None = None) -> None:
        self._results = results
        self.pid = pid
        self._process: psutil.Process | None = None

    @property
    def name(self) -> str:
        return f"resources-{self.pid}" if self.pid is not None else "resources-host"

    def check_availability(self) -> bool:
        if self.pid is None:
            return True
        try:
            self._process = psutil.Process(self.pid)
            # First cpu_percent() call only primes the counter
            self._process.cpu_percent(interval=None)
            return True
        except psutil.Error as e:
            logger.warning("Process %s not available for resource sampling: %s", self.pid, e)
            return False

    def do_sample(self) -> None:
        try:
            sample = self._sample_process() if self.pid is not None else self._sample_host()
        except psutil.Error as e:
            raise SamplingError(f"resource sampling failed: {e}", context={"pid": self.pid}, original_error=e) from e
        self._results.record_resource_sample(sample)

    def _sample_process(self) -> ResourceSample:
        if self._process is None:
            self._process = psutil.Process(self.pid)
        proc = self._process
        with proc.oneshot():
            mem = proc.memory_info()
            return ResourceSample(
                timestamp=time.time(),
                cpu_percent=proc.cpu_percent(interval=None),
                memory_percent=proc.memory_percent(),
                rss_bytes=mem.rss,
                threads=proc.num_threads(),
                target=f"pid:{self.pid}",
            )

    def _sample_host(self) -> ResourceSample:
        vm = psutil.virtual_memory()
        return ResourceSample(
            timestamp=time.time(),
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=vm.percent,
            rss_bytes=vm.used,
            threads=0,
            target="host",
        )
