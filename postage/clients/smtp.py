"""Outbound sender: submits test mail to the server under test over SMTP."""

from __future__ import annotations

import random
import smtplib

from ..correlation import CorrelationStore
from ..exceptions import SamplingError
from ..logging_config import get_logger
from ..mail import build_test_message
from ..models import MailSenderConfig, SendProfile, UserGroup
from ..sampler import Sampler

logger = get_logger("clients.smtp")

DEFAULT_TIMEOUT_SEC = 30.0


class SMTPSender(Sampler):
    """Sends one test mail per sample from a random source user to a random target user.

    The mail is registered in the correlation store before it is submitted, so
    a delivery that is observed before smtplib returns still matches. A failed
    submission withdraws the registration and raises SamplingError.
    """

    def __init__(
        self,
        host: str,
        port: int,
        sender_config: MailSenderConfig,
        profile: SendProfile,
        source_users: UserGroup,
        target_users: UserGroup,
        store: CorrelationStore,
        *,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        rng: random.Random | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.sender_config = sender_config
        self.profile = profile
        self.source_users = source_users.usernames()
        self.target_users = target_users.usernames()
        self._source_group = source_users
        self._target_group = target_users
        self._store = store
        self._timeout = timeout
        self._rng = rng or random.Random()

    @property
    def name(self) -> str:
        return f"smtp-{self.profile.name}-{self.sender_config.send_per_minute}pm"

    def check_availability(self) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self._timeout) as smtp:
                smtp.ehlo()
                code, _ = smtp.noop()
                return code == 250
        except (OSError, smtplib.SMTPException) as e:
            logger.warning("SMTP endpoint %s:%s not available: %s", self.host, self.port, e)
            return False

    def do_sample(self) -> None:
        if not self.source_users or not self.target_users:
            raise SamplingError("no users to send from or to", context={"profile": self.profile.name})
        sender = self._source_group.address(self._rng.choice(self.source_users))
        recipient = self._target_group.address(self._rng.choice(self.target_users))
        cfg = self.sender_config
        size = self._rng.randint(cfg.size_min_bytes, cfg.size_max_bytes)

        token = self._store.new_token()
        msg = build_test_message(token, sender, recipient, cfg.subject, size)
        self._store.record_sent(token, sender, recipient)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self._timeout) as smtp:
                smtp.send_message(msg, from_addr=sender, to_addrs=[recipient])
        except (OSError, smtplib.SMTPException) as e:
            self._store.discard(token)
            raise SamplingError(
                f"sending test mail failed: {e}",
                context={"profile": self.profile.name, "recipient": recipient},
                original_error=e,
            ) from e
        logger.debug("Sent %s -> %s (%d bytes, token %s)", sender, recipient, size, token)
