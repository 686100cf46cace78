"""Builds the samplers and collaborators of a run from its scenario."""

from __future__ import annotations

from .clients.pop3 import POP3Checker
from .clients.smtp import SMTPSender
from .clients.webadmin import WebAdminProvisioner
from .correlation import CorrelationStore
from .models import ScenarioConfig
from .resources import ResourceSampler
from .results import ResultAggregate
from .sampler import Sampler
from .sink import RelayInterceptor


class SamplerFactory:
    """Default wiring: real SMTP/POP3 clients, socket relay sink, psutil sampler.

    Every create_* method may return None when the scenario disables that part.
    Tests substitute fakes by overriding individual methods.
    """

    def __init__(self, config: ScenarioConfig) -> None:
        self.config = config

    def create_provisioner(self) -> WebAdminProvisioner | None:
        ts = self.config.testserver
        if not ts.webadmin_url:
            return None
        return WebAdminProvisioner(ts.webadmin_url, token=ts.webadmin_token, timeout=ts.timeout_seconds)

    def create_senders(self, store: CorrelationStore) -> list[tuple[Sampler, int]]:
        """(sender, sends per minute) for every configured sender with a rate >= 1."""
        ts = self.config.testserver
        if ts.smtp_inbound_port <= 0:
            return []
        senders: list[tuple[Sampler, int]] = []
        for profile in self.config.profiles:
            for sender_config in profile.senders:
                if sender_config.send_per_minute < 1:
                    continue
                sender = SMTPSender(
                    ts.host,
                    ts.smtp_inbound_port,
                    sender_config,
                    profile,
                    self.config.users_for(profile.source),
                    self.config.users_for(profile.target),
                    store,
                    timeout=ts.timeout_seconds,
                )
                senders.append((sender, sender_config.send_per_minute))
        return senders

    def create_inbound_checker(self, store: CorrelationStore, results: ResultAggregate) -> POP3Checker | None:
        ts = self.config.testserver
        if ts.pop3_port <= 0:
            return None
        users = self.config.internal_users
        accounts = [(u, users.password) for u in users.usernames()]
        return POP3Checker(ts.host, ts.pop3_port, accounts, store, timeout=ts.timeout_seconds, results=results)

    def create_relay_interceptor(self, store: CorrelationStore, results: ResultAggregate) -> RelayInterceptor | None:
        ts = self.config.testserver
        if ts.smtp_forwarding_port <= 0:
            return None
        return RelayInterceptor(ts.smtp_forwarding_port, store, results=results)

    def create_resource_sampler(self, results: ResultAggregate) -> ResourceSampler | None:
        ts = self.config.testserver
        if not ts.resource_sampling:
            return None
        return ResourceSampler(results, pid=ts.resource_pid)

