"""SMTP output channel."""

from __future__ import annotations

import logging
import smtplib
import socket
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

from lastsignal.config.loader import EmailOutputConfig
from lastsignal.errors import (
    ChannelAuthenticationFailed,
    ChannelError,
    ChannelRateLimited,
    ChannelUnknownError,
    ChannelUnreachable,
    InvalidRecipient,
)

logger = logging.getLogger(__name__)

# Transient "try again later" replies.
RATE_LIMIT_CODES = frozenset({421, 450, 451, 452})


def format_subject(prefix: str, subject: str) -> str:
    """Every outgoing subject starts with ``"<prefix> Notification"`` so replies can be found."""
    head = f"{prefix} Notification"
    return f"{head}: {subject}" if subject else head


class EmailChannel:
    """Delivers messages to one address over SMTP with STARTTLS."""

    name = "email"

    def __init__(self, config: EmailOutputConfig) -> None:
        self.config = config

    @property
    def recipient_id(self) -> str:
        return f"email:{self.config.to}"

    def __repr__(self) -> str:
        return f"EmailChannel(to={self.config.to!r}, host={self.config.smtp_host!r})"

    # ------------------------------------------------------------------
    # OutputChannel
    # ------------------------------------------------------------------

    def health_check(self) -> None:
        with self._translate_errors():
            server = self._connect()
            try:
                code, reply = server.noop()
                if code != 250:
                    raise smtplib.SMTPResponseException(code, reply)
            finally:
                self._close(server)
        logger.debug("[EMAIL] %s healthy", self.config.smtp_host)

    def send(self, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = self.config.from_address
        msg["To"] = self.config.to
        msg["Subject"] = format_subject(self.config.subject_prefix, subject)
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid(domain="lastsignal")

        with self._translate_errors():
            server = self._connect()
            try:
                refused = server.send_message(msg)
            finally:
                self._close(server)
        if refused:
            raise InvalidRecipient(self.name, f"refused: {', '.join(sorted(refused))}")
        logger.info("[EMAIL] Sent %r to %s", msg["Subject"], self.config.to)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _connect(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout)
        try:
            server.starttls()
            server.login(self.config.username, self.config.password)
        except BaseException:
            self._close(server)
            raise
        return server

    @staticmethod
    def _close(server: smtplib.SMTP) -> None:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.debug("[EMAIL] Ignoring error while closing SMTP session: %s", exc)

    def _translate_errors(self) -> "_SmtpErrorMapper":
        return _SmtpErrorMapper(self.name)


class _SmtpErrorMapper:
    """Context manager turning smtplib / socket errors into ``ChannelError``s."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def __enter__(self) -> "_SmtpErrorMapper":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or isinstance(exc, ChannelError):
            return False
        mapped = map_smtp_error(self.channel, exc)
        if mapped is None:
            return False
        raise mapped from exc


def map_smtp_error(channel: str, exc: BaseException) -> ChannelError | None:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return ChannelAuthenticationFailed(channel, _smtp_detail(exc))
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return InvalidRecipient(channel, ", ".join(sorted(exc.recipients)))
    if isinstance(exc, smtplib.SMTPConnectError):
        return ChannelUnreachable(channel, _smtp_detail(exc))
    if isinstance(exc, smtplib.SMTPResponseException):
        if exc.smtp_code in RATE_LIMIT_CODES:
            return ChannelRateLimited(channel, _smtp_detail(exc))
        return ChannelUnknownError(channel, _smtp_detail(exc))
    if isinstance(exc, smtplib.SMTPServerDisconnected):
        return ChannelUnreachable(channel, str(exc))
    if isinstance(exc, smtplib.SMTPException):
        return ChannelUnknownError(channel, str(exc))
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ChannelUnreachable(channel, "timed out")
    if isinstance(exc, OSError):
        return ChannelUnreachable(channel, str(exc))
    return None


def _smtp_detail(exc: smtplib.SMTPResponseException) -> str:
    message = exc.smtp_error
    if isinstance(message, bytes):
        message = message.decode("utf-8", "replace")
    return f"{exc.smtp_code} {message}".strip()
