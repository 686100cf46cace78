"""Relay interceptor: a minimal SMTP server standing in for the outside world.

The server under test relays mail for external recipients to this listener.
Every received message is parsed for its correlation token and reported to
the correlation store as it arrives. The scheduled sample is only a liveness
probe of the listener thread.
"""

from __future__ import annotations

import socketserver
import threading

from .correlation import CorrelationStore
from .exceptions import SamplingError
from .logging_config import get_logger
from .mail import extract_token
from .results import ResultAggregate
from .sampler import Sampler

logger = get_logger("sink")

# Per-connection idle timeout (seconds)
CONNECTION_TIMEOUT_SEC = 60.0
# Upper bound for one received message; larger DATA is rejected
MAX_MESSAGE_BYTES = 32 * 1024 * 1024
MAX_LINE_BYTES = 8192


def _address(arg: str) -> str:
    """Mailbox of a MAIL FROM:<..> or RCPT TO:<..> argument, ESMTP parameters dropped."""
    path = arg.partition(":")[2].strip()
    if path.startswith("<"):
        return path[1:].partition(">")[0]
    return path.split(" ", 1)[0]


class _ThreadedSMTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """TCP server handling each SMTP connection on its own thread."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], interceptor: "RelayInterceptor") -> None:
        self.interceptor = interceptor
        super().__init__(address, _SMTPSessionHandler)


class _SMTPSessionHandler(socketserver.StreamRequestHandler):
    """Just enough SMTP to accept relayed mail: HELO/EHLO, MAIL, RCPT, DATA, RSET, NOOP, QUIT."""

    timeout = CONNECTION_TIMEOUT_SEC

    def _reply(self, line: str) -> None:
        self.wfile.write(line.encode("ascii") + b"\r\n")
        self.wfile.flush()

    def handle(self) -> None:
        interceptor: RelayInterceptor = self.server.interceptor  # type: ignore[attr-defined]
        self._reply("220 postage mail sink ready")
        mail_from: str | None = None
        rcpt_to: list[str] = []
        try:
            while True:
                raw = self.rfile.readline(MAX_LINE_BYTES)
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                verb, _, arg = line.partition(" ")
                verb = verb.upper()
                if verb in ("HELO", "EHLO"):
                    if verb == "EHLO":
                        self.wfile.write(b"250-postage\r\n")
                        self._reply(f"250 SIZE {MAX_MESSAGE_BYTES}")
                    else:
                        self._reply("250 postage")
                elif verb == "MAIL":
                    mail_from = _address(arg)
                    rcpt_to = []
                    self._reply("250 OK")
                elif verb == "RCPT":
                    if mail_from is None:
                        self._reply("503 need MAIL first")
                        continue
                    rcpt_to.append(_address(arg))
                    self._reply("250 OK")
                elif verb == "DATA":
                    if not rcpt_to:
                        self._reply("503 need RCPT first")
                        continue
                    self._reply("354 end data with <CR><LF>.<CR><LF>")
                    data = self._read_data()
                    if data is None:
                        self._reply("552 message too large")
                    else:
                        interceptor.on_message(data, mail_from or "", list(rcpt_to))
                        self._reply("250 OK queued")
                    mail_from, rcpt_to = None, []
                elif verb == "RSET":
                    mail_from, rcpt_to = None, []
                    self._reply("250 OK")
                elif verb == "NOOP":
                    self._reply("250 OK")
                elif verb == "QUIT":
                    self._reply("221 bye")
                    return
                else:
                    self._reply("502 command not implemented")
        except OSError as e:
            logger.debug("SMTP session from %s ended: %s", self.client_address, e)

    def _read_data(self) -> bytes | None:
        chunks: list[bytes] = []
        size = 0
        too_large = False
        while True:
            raw = self.rfile.readline(MAX_LINE_BYTES)
            if not raw:
                raise ConnectionResetError("connection closed during DATA")
            if raw.rstrip(b"\r\n") == b".":
                break
            if raw.startswith(b".."):
                raw = raw[1:]
            size += len(raw)
            if size > MAX_MESSAGE_BYTES:
                too_large = True
                continue
            chunks.append(raw)
        return None if too_large else b"".join(chunks)


class RelayInterceptor(Sampler):
    """Mail sink for relayed (outbound) test mail."""

    def __init__(
        self,
        port: int,
        store: CorrelationStore,
        *,
        host: str = "0.0.0.0",
        results: ResultAggregate | None = None,
    ) -> None:
        self.host = host
        self._requested_port = port
        self._store = store
        self._results = results
        self._server: _ThreadedSMTPServer | None = None
        self._thread: threading.Thread | None = None
        self._received = 0
        self._count_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "relay-interceptor"

    @property
    def port(self) -> int:
        """Bound port once initialized (resolves port 0), otherwise the requested one."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._requested_port

    @property
    def received_count(self) -> int:
        return self._received

    def initialize(self) -> None:
        """Bind the listener and start accepting connections. Raises OSError if the port is taken."""
        if self._server is not None:
            return
        self._server = _ThreadedSMTPServer((self.host, self._requested_port), self)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="relay-interceptor-accept",
            daemon=True,
        )
        self._thread.start()
        logger.info("Relay interceptor listening on %s:%d", self.host, self.port)

    def shutdown(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.info("Relay interceptor stopped after %d message(s)", self._received)

    def on_message(self, data: bytes, mail_from: str, rcpt_to: list[str]) -> None:
        with self._count_lock:
            self._received += 1
        try:
            token = extract_token(data)
        except Exception as e:  # noqa: BLE001
            logger.warning("Unparseable relayed message from %s: %s", mail_from, e)
            token = None
        self._store.record_observed(token, source=f"relay:{','.join(rcpt_to)}")

    def check_availability(self) -> bool:
        return self._server is not None and self._thread is not None and self._thread.is_alive()

    def do_sample(self) -> None:
        logger.debug("sampling while mails are coming in (%d received)", self._received)
        if not self.check_availability():
            raise SamplingError("relay interceptor is not listening", context={"port": self.port})
