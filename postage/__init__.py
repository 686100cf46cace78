"""
postage - Mail server load and delivery-correctness harness.

Sends synthetic test mail at configured rates over SMTP, checks that it
arrives in internal mailboxes (POP3) and at an external relay sink, and
records matched/unmatched/error counts per minute.
"""

from .exceptions import PostageConfigError, PostageError, PostageRunnerError, SamplingError, StartupError

__all__ = [
    "__version__",
    "PostageConfigError",
    "PostageError",
    "PostageRunnerError",
    "SamplingError",
    "StartupError",
]

__version__ = "1.0.0"
