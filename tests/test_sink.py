"""RelayInterceptor tests against a real loopback SMTP session."""

from __future__ import annotations

import smtplib
import time

import pytest

from postage.correlation import CorrelationStore
from postage.exceptions import SamplingError
from postage.mail import build_test_message
from postage.results import ResultAggregate
from postage.sink import RelayInterceptor


@pytest.fixture
def interceptor(store: CorrelationStore):
    sink = RelayInterceptor(0, store, host="127.0.0.1")
    sink.initialize()
    yield sink
    sink.shutdown()


def _wait_received(sink: RelayInterceptor, n: int, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while sink.received_count < n and time.monotonic() < deadline:
        time.sleep(0.01)


def test_binds_ephemeral_port(interceptor: RelayInterceptor) -> None:
    assert interceptor.port > 0
    assert interceptor.check_availability()
    interceptor.do_sample()


def test_relayed_test_mail_matches(interceptor: RelayInterceptor, store: CorrelationStore, results: ResultAggregate) -> None:
    token = store.new_token()
    store.record_sent(token, "u1@mail.test", "x1@outside.test")
    msg = build_test_message(token, "u1@mail.test", "x1@outside.test", "relay", body_size=300)

    with smtplib.SMTP("127.0.0.1", interceptor.port, timeout=5) as smtp:
        smtp.ehlo()
        smtp.send_message(msg)
    _wait_received(interceptor, 1)

    assert interceptor.received_count == 1
    assert results.matched_count == 1
    assert store.outstanding_count == 0
    event = results.snapshot("t", 0).events[0]
    assert event.source == "relay:x1@outside.test"


def test_dot_stuffed_lines_and_foreign_mail(interceptor: RelayInterceptor, results: ResultAggregate) -> None:
    body = "Subject: hello\r\n\r\n.leading dot\r\n..two dots\r\n"
    with smtplib.SMTP("127.0.0.1", interceptor.port, timeout=5) as smtp:
        smtp.helo()
        smtp.sendmail("someone@else", ["x1@outside.test"], body)
    _wait_received(interceptor, 1)

    assert results.unmatched_count == 1
    assert results.matched_count == 0


def test_unknown_command_and_sequence_errors(interceptor: RelayInterceptor) -> None:
    with smtplib.SMTP("127.0.0.1", interceptor.port, timeout=5) as smtp:
        assert smtp.docmd("VRFY", "someone")[0] == 502
        assert smtp.docmd("RCPT", "TO:<a@b>")[0] == 503
        assert smtp.noop()[0] == 250
        assert smtp.rset()[0] == 250


def test_shutdown_is_idempotent_and_probe_fails(store: CorrelationStore) -> None:
    sink = RelayInterceptor(0, store, host="127.0.0.1")
    sink.initialize()
    sink.shutdown()
    sink.shutdown()
    assert not sink.check_availability()
    with pytest.raises(SamplingError):
        sink.do_sample()


def test_port_in_use_raises(interceptor: RelayInterceptor, store: CorrelationStore) -> None:
    other = RelayInterceptor(interceptor.port, store, host="127.0.0.1")
    with pytest.raises(OSError):
        other.initialize()
