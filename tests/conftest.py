"""Pytest fixtures for postage tests."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from postage.correlation import CorrelationStore
from postage.exceptions import SamplingError
from postage.factory import SamplerFactory
from postage.models import (
    MailSenderConfig,
    ResultSnapshot,
    ScenarioConfig,
    SendProfile,
    TestServerConfig,
    UserGroup,
    UserSide,
)
from postage.results import ResultAggregate
from postage.sampler import Sampler


@pytest.fixture
def tmp_path_scenario(tmp_path: Path) -> Path:
    """Write a minimal valid scenario to a temp file."""
    content = """
id: smoke
duration_minutes: 2
testserver:
  host: mail.test
  smtp_inbound_port: 2025
  pop3_port: 2110
  pop3_fetches_per_minute: 20
  smtp_forwarding_port: 0
internal_users:
  count: 4
  name_prefix: inbox
  password: secret
  domain: mail.test
external_users:
  count: 2
  domain: outside.test
profiles:
  - name: ext2int
    source: external
    target: internal
    senders:
      - send_per_minute: 6
        subject: hello
        size_min_bytes: 10
        size_max_bytes: 20
"""
    p = tmp_path / "scenario.yaml"
    p.write_text(content, encoding="utf-8")
    return p


def make_scenario(
    *,
    run_id: str = "t",
    duration_minutes: int = 2,
    send_per_minute: int = 6,
    internal_count: int = 2,
) -> ScenarioConfig:
    return ScenarioConfig(
        id=run_id,
        duration_minutes=duration_minutes,
        testserver=TestServerConfig(smtp_forwarding_port=0, resource_sampling=False),
        internal_users=UserGroup(count=internal_count, name_prefix="u", domain="mail.test", password="pw"),
        external_users=UserGroup(count=1, name_prefix="x", domain="outside.test"),
        profiles=[
            SendProfile(
                name="ext2int",
                source=UserSide.EXTERNAL,
                target=UserSide.INTERNAL,
                senders=[MailSenderConfig(send_per_minute=send_per_minute)],
            )
        ],
    )


@pytest.fixture
def scenario() -> ScenarioConfig:
    return make_scenario()


@pytest.fixture
def results() -> ResultAggregate:
    return ResultAggregate()


@pytest.fixture
def store(results: ResultAggregate) -> CorrelationStore:
    return CorrelationStore("t", results)


class FakeMailbox:
    """Delivered tokens waiting to be picked up by FakeChecker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: list[str | None] = []
        self.held: list[str | None] = []

    def deliver(self, token: str | None) -> None:
        with self._lock:
            self._tokens.append(token)

    def take_all(self) -> list[str | None]:
        with self._lock:
            tokens, self._tokens = self._tokens, []
        return tokens


class FakeSender(Sampler):
    """Registers a token and 'delivers' it to the mailbox unless told to hold it back."""

    def __init__(
        self,
        store: CorrelationStore,
        mailbox: FakeMailbox,
        *,
        available: bool = True,
        hold_back: bool = False,
        fail: bool = False,
    ) -> None:
        self._store = store
        self._mailbox = mailbox
        self.available = available
        self.hold_back = hold_back
        self.fail = fail
        self.sent = 0

    def check_availability(self) -> bool:
        return self.available

    def do_sample(self) -> None:
        if self.fail:
            raise SamplingError("connection refused")
        token = self._store.new_token()
        self._store.record_sent(token, "x1@outside.test", "u1@mail.test")
        self.sent += 1
        if self.hold_back:
            self._mailbox.held.append(token)
        else:
            self._mailbox.deliver(token)


class FakeChecker(Sampler):
    """Picks up delivered tokens; the final pass also sees held-back ones."""

    def __init__(self, store: CorrelationStore, mailbox: FakeMailbox, *, available: bool = True) -> None:
        self._store = store
        self._mailbox = mailbox
        self.available = available
        self.final_passes = 0

    def check_availability(self) -> bool:
        return self.available

    def do_sample(self) -> None:
        for token in self._mailbox.take_all():
            self._store.record_observed(token, source="fake")

    def match_all_users(self) -> int:
        self.final_passes += 1
        late, self._mailbox.held = self._mailbox.held, []
        for token in late:
            self._mailbox.deliver(token)
        tokens = self._mailbox.take_all()
        for token in tokens:
            self._store.record_observed(token, source="fake-final")
        return len(tokens)


class FakeFactory(SamplerFactory):
    """SamplerFactory wiring fake samplers instead of protocol clients."""

    def __init__(
        self,
        config: ScenarioConfig,
        *,
        checker_available: bool = True,
        hold_back: bool = False,
        sender_fails: bool = False,
        provisioner: object | None = None,
        interceptor: object | None = None,
    ) -> None:
        super().__init__(config)
        self.mailbox = FakeMailbox()
        self.checker_available = checker_available
        self.hold_back = hold_back
        self.sender_fails = sender_fails
        self.provisioner = provisioner
        self.interceptor = interceptor
        self.senders: list[FakeSender] = []
        self.checker: FakeChecker | None = None

    def create_provisioner(self):
        return self.provisioner

    def create_senders(self, store):
        out = []
        for profile in self.config.profiles:
            for s in profile.senders:
                sender = FakeSender(store, self.mailbox, hold_back=self.hold_back, fail=self.sender_fails)
                self.senders.append(sender)
                out.append((sender, s.send_per_minute))
        return out

    def create_inbound_checker(self, store, results):
        self.checker = FakeChecker(store, self.mailbox, available=self.checker_available)
        return self.checker

    def create_relay_interceptor(self, store, results):
        return self.interceptor

    def create_resource_sampler(self, results):
        return None


class MemorySink:
    """ResultSink keeping every flush in memory."""

    def __init__(self) -> None:
        self.flushes: list[tuple[ResultSnapshot, bool]] = []
        self._lock = threading.Lock()

    def write_snapshot(self, snapshot: ResultSnapshot, final_sweep_performed: bool) -> None:
        with self._lock:
            self.flushes.append((snapshot, final_sweep_performed))

    @property
    def last(self) -> tuple[ResultSnapshot, bool]:
        return self.flushes[-1]
