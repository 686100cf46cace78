"""Inbound delivery checker: fetches internal mailboxes over POP3 and reports tokens."""

from __future__ import annotations

import itertools
import poplib
import threading

from ..correlation import CorrelationStore
from ..exceptions import SamplingError
from ..logging_config import get_logger
from ..mail import extract_token
from ..results import ResultAggregate
from ..sampler import Sampler

logger = get_logger("clients.pop3")

DEFAULT_TIMEOUT_SEC = 30.0


class POP3Checker(Sampler):
    """Checks one mailbox per sample, round-robin over all accounts.

    Every retrieved message is reported to the correlation store (with its
    token, or as foreign mail without one) and deleted from the mailbox.
    """

    def __init__(
        self,
        host: str,
        port: int,
        accounts: list[tuple[str, str]],
        store: CorrelationStore,
        *,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        results: ResultAggregate | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.accounts = list(accounts)
        self._store = store
        self._timeout = timeout
        self._results = results
        self._cycle = itertools.cycle(self.accounts) if self.accounts else None
        # One mailbox session at a time: the exhaustive pass may overlap a late sample
        self._mailbox_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "pop3-checker"

    def check_availability(self) -> bool:
        try:
            conn = poplib.POP3(self.host, self.port, timeout=self._timeout)
        except (OSError, poplib.error_proto) as e:
            logger.warning("POP3 endpoint %s:%s not available: %s", self.host, self.port, e)
            return False
        try:
            logger.debug("POP3 greeting: %r", conn.getwelcome())
            return True
        finally:
            _quit_quietly(conn)

    def do_sample(self) -> None:
        if self._cycle is None:
            return
        username, password = next(self._cycle)
        self.check_mailbox(username, password)

    def check_mailbox(self, username: str, password: str) -> int:
        """Fetch, report and delete every message of one mailbox. Returns the number of messages."""
        with self._mailbox_lock:
            try:
                conn = poplib.POP3(self.host, self.port, timeout=self._timeout)
            except (OSError, poplib.error_proto) as e:
                raise SamplingError(
                    f"POP3 connect failed: {e}", context={"user": username}, original_error=e
                ) from e
            try:
                conn.user(username)
                conn.pass_(password)
                count, _size = conn.stat()
                for i in range(1, count + 1):
                    _resp, lines, _octets = conn.retr(i)
                    token = _token_of(b"\r\n".join(lines), username)
                    self._store.record_observed(token, source=f"pop3:{username}")
                    conn.dele(i)
                conn.quit()
                return count
            except Exception as e:
                # QUIT commits the deletions of messages already reported
                _quit_quietly(conn)
                raise SamplingError(
                    f"POP3 check failed: {e}", context={"user": username}, original_error=e
                ) from e

    def match_all_users(self) -> int:
        """Exhaustive pass over every account. Per-account failures are recorded, not raised."""
        total = 0
        for username, password in self.accounts:
            try:
                total += self.check_mailbox(username, password)
            except SamplingError as e:
                logger.warning("Final mailbox check failed for %s: %s", username, e)
                if self._results is not None:
                    self._results.record_error(self.name, str(e))
        logger.info("Final pass checked %d mailbox(es), %d message(s)", len(self.accounts), total)
        return total


def _token_of(raw: bytes, username: str) -> str | None:
    """Token of a retrieved message. An unparseable message counts as foreign mail."""
    try:
        return extract_token(raw)
    except (LookupError, UnicodeError, ValueError) as e:
        logger.warning("Unparseable message in mailbox %s: %s", username, e)
        return None


def _quit_quietly(conn: poplib.POP3) -> None:
    try:
        conn.quit()
    except (OSError, poplib.error_proto) as e:
        logger.debug("POP3 quit failed: %s", e)
