"""Correlation of sent test mail with observed deliveries.

Senders register every test mail under a token that travels inside the message.
Observers (mailbox checker, relay interceptor) report the tokens they see.
The first observation of an outstanding token is a match; anything else is
unmatched. Counters live in the ResultAggregate; lock order is always
store lock first, aggregate lock second.
"""

from __future__ import annotations

import itertools
import secrets
import threading
import time

from .logging_config import get_logger
from .models import MatchEvent, MatchKind, TrackedMessage
from .results import ResultAggregate

logger = get_logger("correlation")


class CorrelationStore:
    """Outstanding test mail of one run. Every operation is atomic."""

    __slots__ = ("run_id", "_results", "_lock", "_outstanding", "_counter")

    def __init__(self, run_id: str, results: ResultAggregate) -> None:
        self.run_id = run_id
        self._results = results
        self._lock = threading.Lock()
        self._outstanding: dict[str, TrackedMessage] = {}
        self._counter = itertools.count(1)

    @property
    def results(self) -> ResultAggregate:
        return self._results

    def new_token(self) -> str:
        """Token unique within this run: run id, monotonic counter, random suffix."""
        with self._lock:
            n = next(self._counter)
        return f"{self.run_id}-{n:08d}-{secrets.token_hex(3)}"

    def record_sent(
        self,
        token: str,
        sender: str,
        recipient: str,
        timestamp: float | None = None,
    ) -> TrackedMessage:
        msg = TrackedMessage(token, sender, recipient, timestamp if timestamp is not None else time.time())
        with self._lock:
            if token in self._outstanding:
                raise ValueError(f"token already outstanding: {token}")
            self._outstanding[token] = msg
            self._results.record_sent()
        return msg

    def discard(self, token: str) -> bool:
        """Withdraw a registration whose send failed. False if it was already resolved."""
        with self._lock:
            if self._outstanding.pop(token, None) is None:
                return False
            self._results.retract_sent()
            return True

    def record_observed(
        self,
        token: str | None,
        observed_at: float | None = None,
        *,
        source: str = "",
    ) -> MatchEvent:
        """Resolve one observed delivery. token=None means mail without a token."""
        now = observed_at if observed_at is not None else time.time()
        with self._lock:
            msg = self._outstanding.pop(token, None) if token is not None else None
            if msg is not None:
                event = MatchEvent(
                    kind=MatchKind.MATCHED,
                    token=token,
                    observed_at=now,
                    source=source,
                    sender=msg.sender,
                    recipient=msg.recipient,
                    sent_at=msg.sent_at,
                    latency_seconds=max(0.0, now - msg.sent_at),
                )
            else:
                event = MatchEvent(kind=MatchKind.UNMATCHED, token=token, observed_at=now, source=source)
            self._results.record_match_event(event)
        if msg is None:
            logger.debug("Unmatched observation from %s: token=%s", source or "?", token)
        return event

    def sweep_outstanding(self) -> int:
        """Count every still-outstanding message as unmatched and clear the set."""
        now = time.time()
        with self._lock:
            swept = list(self._outstanding.values())
            self._outstanding.clear()
            for msg in swept:
                self._results.record_match_event(
                    MatchEvent(
                        kind=MatchKind.SWEPT,
                        token=msg.token,
                        observed_at=now,
                        source="sweep",
                        sender=msg.sender,
                        recipient=msg.recipient,
                        sent_at=msg.sent_at,
                    )
                )
        if swept:
            logger.info("Swept %d outstanding message(s) into unmatched", len(swept))
        return len(swept)

    @property
    def outstanding_count(self) -> int:
        with self._lock:
            return len(self._outstanding)

    def outstanding(self) -> list[TrackedMessage]:
        with self._lock:
            return list(self._outstanding.values())

    def is_outstanding(self, token: str) -> bool:
        with self._lock:
            return token in self._outstanding
