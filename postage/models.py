"""Data models for the postage test harness.

Scenario configuration, run phases, tracked test mail and the records that
end up in the result files:
- __slots__ on per-message classes (one instance per sent test mail)
- Frozen dataclasses for recorded outcomes, they never change once written
- Enum for phases and match kinds
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RunPhase(str, Enum):
    """Lifecycle of one scenario run."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    ABORTED = "aborted"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.ABORTED, RunPhase.COMPLETED)


class UserSide(str, Enum):
    """Which side of the mail server a profile sends from or to."""

    INTERNAL = "internal"  # Mailboxes hosted by the server under test
    EXTERNAL = "external"  # The outside world, reached through relaying


@dataclass(slots=True)
class UserGroup:
    """A set of generated accounts: prefix1 .. prefixN at one domain."""

    count: int
    name_prefix: str
    domain: str
    password: str = ""
    reuse_existing: bool = True

    def usernames(self) -> list[str]:
        return [f"{self.name_prefix}{i}" for i in range(1, self.count + 1)]

    def address(self, username: str) -> str:
        return f"{username}@{self.domain}"


@dataclass(slots=True)
class MailSenderConfig:
    """One stream of test mail inside a send profile."""

    send_per_minute: int
    subject: str = "postage test mail"
    size_min_bytes: int = 100
    size_max_bytes: int = 1000


@dataclass(slots=True)
class SendProfile:
    """Mail flowing from one side to another, at one or more rates."""

    name: str
    source: UserSide
    target: UserSide
    senders: list[MailSenderConfig] = field(default_factory=list)


@dataclass(slots=True)
class TestServerConfig:
    """Endpoints of the mail server under test. Ports <= 0 disable a part."""

    __test__ = False  # not a pytest test class

    host: str = "localhost"
    smtp_inbound_port: int = 25
    pop3_port: int = 110
    pop3_fetches_per_minute: int = 10
    smtp_forwarding_port: int = 2525
    smtp_forwarding_wait_seconds: float = 0.0
    webadmin_url: str | None = None
    webadmin_token: str | None = None
    resource_sampling: bool = True
    resource_pid: int | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class ScenarioConfig:
    """One scenario: who sends what to whom, for how long."""

    id: str
    duration_minutes: int
    testserver: TestServerConfig
    internal_users: UserGroup
    external_users: UserGroup
    profiles: list[SendProfile] = field(default_factory=list)

    @property
    def total_mails_per_minute(self) -> int:
        return sum(s.send_per_minute for p in self.profiles for s in p.senders)

    def users_for(self, side: UserSide) -> UserGroup:
        return self.internal_users if side == UserSide.INTERNAL else self.external_users


class TrackedMessage:
    """A sent test mail waiting for its delivery to be observed."""

    __slots__ = ("token", "sender", "recipient", "sent_at")

    def __init__(self, token: str, sender: str, recipient: str, sent_at: float) -> None:
        self.token = token
        self.sender = sender
        self.recipient = recipient
        self.sent_at = sent_at

    def __repr__(self) -> str:
        return f"TrackedMessage(token={self.token!r}, recipient={self.recipient!r}, sent_at={self.sent_at:.3f})"


class MatchKind(str, Enum):
    """Outcome of correlating one delivery (or one leftover send)."""

    MATCHED = "matched"
    UNMATCHED = "unmatched"  # Observed, but no outstanding send had this token
    SWEPT = "swept"  # Sent, never observed before the run completed


@dataclass(frozen=True, slots=True)
class MatchEvent:
    kind: MatchKind
    token: str | None
    observed_at: float
    source: str = ""
    sender: str = ""
    recipient: str = ""
    sent_at: float | None = None
    latency_seconds: float | None = None

    @property
    def counts_as_unmatched(self) -> bool:
        return self.kind != MatchKind.MATCHED


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    timestamp: float
    source: str
    message: str


@dataclass(frozen=True, slots=True)
class ResourceSample:
    """One resource reading of the server process (or the host)."""

    timestamp: float
    cpu_percent: float
    memory_percent: float
    rss_bytes: int
    threads: int
    target: str


@dataclass(frozen=True, slots=True)
class MinuteSnapshot:
    """Cumulative counts at the end of one checkpoint minute, plus that minute's deltas."""

    minute: int
    timestamp: float
    sent: int
    matched: int
    unmatched: int
    errors: int
    outstanding: int
    sent_delta: int = 0
    matched_delta: int = 0
    unmatched_delta: int = 0
    errors_delta: int = 0


@dataclass(slots=True)
class ResultSnapshot:
    """Everything a result sink gets at one flush."""

    run_id: str
    timestamp: float
    sent: int
    matched: int
    unmatched: int
    errors: int
    outstanding: int
    history: list[MinuteSnapshot] = field(default_factory=list)
    events: list[MatchEvent] = field(default_factory=list)
    error_records: list[ErrorRecord] = field(default_factory=list)
    resource_samples: list[ResourceSample] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    latency_p50_seconds: float = 0.0
    latency_p95_seconds: float = 0.0
    latency_avg_seconds: float = 0.0
