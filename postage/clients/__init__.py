"""Protocol clients used as samplers: SMTP submission, POP3 retrieval, account provisioning."""

from .pop3 import POP3Checker
from .smtp import SMTPSender
from .webadmin import WebAdminProvisioner

__all__ = ["POP3Checker", "SMTPSender", "WebAdminProvisioner"]
