"""Unit tests for SamplerFactory wiring."""

from __future__ import annotations

from dataclasses import replace

from conftest import make_scenario
from postage.clients.pop3 import POP3Checker
from postage.clients.smtp import SMTPSender
from postage.clients.webadmin import WebAdminProvisioner
from postage.correlation import CorrelationStore
from postage.factory import SamplerFactory
from postage.models import MailSenderConfig
from postage.results import ResultAggregate
from postage.sink import RelayInterceptor


def test_senders_one_per_active_stream() -> None:
    config = make_scenario(send_per_minute=6)
    config.profiles[0].senders.append(MailSenderConfig(send_per_minute=0))
    config.profiles[0].senders.append(MailSenderConfig(send_per_minute=2))
    store = CorrelationStore("t", ResultAggregate())

    senders = SamplerFactory(config).create_senders(store)

    assert [rate for _, rate in senders] == [6, 2]
    assert all(isinstance(s, SMTPSender) for s, _ in senders)


def test_senders_disabled_without_smtp_port() -> None:
    config = make_scenario()
    config.testserver.smtp_inbound_port = 0
    assert SamplerFactory(config).create_senders(CorrelationStore("t", ResultAggregate())) == []


def test_inbound_checker_uses_internal_accounts() -> None:
    config = make_scenario(internal_count=3)
    results = ResultAggregate()
    checker = SamplerFactory(config).create_inbound_checker(CorrelationStore("t", results), results)
    assert isinstance(checker, POP3Checker)
    assert checker.accounts == [("u1", "pw"), ("u2", "pw"), ("u3", "pw")]


def test_optional_parts() -> None:
    config = make_scenario()
    factory = SamplerFactory(config)
    results = ResultAggregate()
    store = CorrelationStore("t", results)
    assert factory.create_provisioner() is None
    assert factory.create_relay_interceptor(store, results) is None
    assert factory.create_resource_sampler(results) is None

    config.testserver = replace(
        config.testserver, webadmin_url="http://admin.test", smtp_forwarding_port=2525, resource_sampling=True
    )
    provisioner = factory.create_provisioner()
    assert isinstance(provisioner, WebAdminProvisioner)
    provisioner.close()
    assert isinstance(factory.create_relay_interceptor(store, results), RelayInterceptor)
    assert factory.create_resource_sampler(results) is not None


def test_pop3_disabled() -> None:
    config = make_scenario()
    config.testserver.pop3_port = 0
    results = ResultAggregate()
    assert SamplerFactory(config).create_inbound_checker(CorrelationStore("t", results), results) is None
