"""The sampler capability: one repeatable unit of work driven by a SampleController."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Sampler(ABC):
    """A unit of repeatable work with an availability check.

    Implementations: outbound mail sender, inbound mailbox checker, relay
    interceptor and resource sampler. Protocol details stay behind these two
    operations so scheduling and correlation never depend on them.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def check_availability(self) -> bool:
        """True if the endpoint this sampler talks to can be reached right now."""

    @abstractmethod
    def do_sample(self) -> None:
        """Perform one sample. Raises SamplingError when this attempt failed."""
