"""Unit tests for ResourceSampler (psutil)."""

from __future__ import annotations

import os
from unittest.mock import patch

import psutil
import pytest

from postage.exceptions import SamplingError
from postage.resources import ResourceSampler
from postage.results import ResultAggregate


def test_host_sampling() -> None:
    results = ResultAggregate()
    sampler = ResourceSampler(results)
    assert sampler.name == "resources-host"
    assert sampler.check_availability()
    sampler.do_sample()
    sample = results.snapshot("t", 0).resource_samples[0]
    assert sample.target == "host"
    assert 0.0 <= sample.memory_percent <= 100.0


def test_process_sampling_of_own_pid() -> None:
    results = ResultAggregate()
    sampler = ResourceSampler(results, pid=os.getpid())
    assert sampler.name == f"resources-{os.getpid()}"
    assert sampler.check_availability()
    sampler.do_sample()
    sample = results.snapshot("t", 0).resource_samples[0]
    assert sample.target == f"pid:{os.getpid()}"
    assert sample.rss_bytes > 0
    assert sample.threads >= 1


def test_missing_process_unavailable() -> None:
    with patch("postage.resources.psutil.Process", side_effect=psutil.NoSuchProcess(999999)):
        assert ResourceSampler(ResultAggregate(), pid=999999).check_availability() is False


def test_sampling_failure_raises_sampling_error() -> None:
    sampler = ResourceSampler(ResultAggregate())
    with patch("postage.resources.psutil.virtual_memory", side_effect=psutil.AccessDenied()):
        with pytest.raises(SamplingError, match="resource sampling failed"):
            sampler.do_sample()
