"""Test mail codec: embed the correlation token in a message and find it again.

The token is written to three places so any observer can recover it even if
one of them is rewritten on the way (relays may fold headers, some servers
tag subjects): an X-Postage-Token header, a [postage:<token>] subject
fragment and a Postage-Token body line.
"""

from __future__ import annotations

import codecs
import re
from email import message_from_bytes, message_from_string, policy
from email.message import EmailMessage, Message
from email.utils import formatdate, make_msgid

TOKEN_HEADER = "X-Postage-Token"
SUBJECT_TOKEN_RE = re.compile(r"\[postage:([A-Za-z0-9_.\-]+)\]")
BODY_TOKEN_RE = re.compile(r"^Postage-Token:\s*([A-Za-z0-9_.\-]+)\s*$", re.MULTILINE)
# Filler line used to pad bodies up to the configured size
FILLER_LINE = "postage test mail filler " * 3


def build_test_message(
    token: str,
    sender: str,
    recipient: str,
    subject: str,
    body_size: int = 0,
) -> EmailMessage:
    """Build a plain-text test mail carrying `token`, padded to about body_size bytes."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = f"{subject} [postage:{token}]"
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(idstring=token.replace("-", ""))
    msg[TOKEN_HEADER] = token
    msg.set_content(_body(token, body_size))
    return msg


def _body(token: str, size: int) -> str:
    head = f"Postage-Token: {token}\n\n"
    if size <= len(head):
        return head
    lines = [head]
    remaining = size - len(head)
    while remaining > 0:
        line = FILLER_LINE[: max(1, min(len(FILLER_LINE), remaining - 1))] + "\n"
        lines.append(line)
        remaining -= len(line)
    return "".join(lines)


def parse_message(raw: bytes | str | Message) -> Message:
    if isinstance(raw, Message):
        return raw
    if isinstance(raw, bytes):
        return message_from_bytes(raw, policy=policy.compat32)
    return message_from_string(raw, policy=policy.compat32)


def _charset(part: Message) -> str:
    """Declared charset of a part, utf-8 when missing or unknown to Python."""
    name = part.get_content_charset() or "utf-8"
    try:
        codecs.lookup(name)
    except LookupError:
        return "utf-8"
    return name


def extract_token(raw: bytes | str | Message) -> str | None:
    """Recover the correlation token of a received mail; None for foreign mail."""
    msg = parse_message(raw)
    header = msg.get(TOKEN_HEADER)
    if header:
        value = str(header).strip()
        if value:
            return value
    subject = msg.get("Subject")
    if subject:
        m = SUBJECT_TOKEN_RE.search(str(subject))
        if m:
            return m.group(1)
    for part in msg.walk():
        if part.is_multipart():
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        text = payload.decode(_charset(part), errors="replace")
        m = BODY_TOKEN_RE.search(text)
        if m:
            return m.group(1)
    return None
