"""Replies to reminder emails, read over IMAP, count as check-ins."""

from __future__ import annotations

import email
import imaplib
import logging
import socket
from datetime import datetime
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import List, Optional

from lastsignal.config.loader import EmailOutputConfig
from lastsignal.errors import ProviderAuthExpired, ProviderError
from lastsignal.services.state_store import ensure_utc

logger = logging.getLogger(__name__)


class EmailReplyProvider:
    """Searches the owner's INBOX for ``RE: <prefix> Notification`` replies."""

    name = "email_reply"
    # App passwords do not expire; a login failure is a real misconfiguration.
    auth_failure_counts_as_checkin = False

    def __init__(self, config: EmailOutputConfig) -> None:
        self.config = config

    def refresh_token(self) -> None:
        # Nothing to refresh; the next poll simply logs in again.
        return None

    def search_criteria(self, since: Optional[datetime]) -> List[str]:
        # Only the owner's own replies count; a recipient answering the last
        # signal from a shared mailbox must not look like proof of life.
        criteria = [
            "FROM", f'"{self.config.to}"',
            "SUBJECT", f'"RE: {self.config.subject_prefix} Notification"',
        ]
        if since is not None:
            # IMAP SINCE has day granularity; exact filtering happens on the Date header.
            criteria = ["SINCE", ensure_utc(since).strftime("%d-%b-%Y")] + criteria
        return criteria

    def poll_new_activity(self, since: Optional[datetime]) -> Optional[datetime]:
        try:
            conn = imaplib.IMAP4_SSL(self.config.imap_host, self.config.imap_port, timeout=self.config.timeout)
        except (OSError, socket.timeout) as exc:
            raise ProviderError(self.name, f"cannot reach {self.config.imap_host}: {exc}") from exc

        try:
            try:
                conn.login(self.config.username, self.config.password)
            except imaplib.IMAP4.error as exc:
                raise ProviderAuthExpired(self.name, f"IMAP login rejected: {exc}") from exc

            newest = self._newest_reply(conn, since)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ProviderError(self.name, f"IMAP error: {exc}") from exc
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.debug("[EMAIL_REPLY] Ignoring error during logout: %s", exc)

        if newest is not None:
            logger.info("[EMAIL_REPLY] Reply found dated %s", newest.isoformat())
        return newest

    def _newest_reply(self, conn: imaplib.IMAP4, since: Optional[datetime]) -> Optional[datetime]:
        status, _ = conn.select("INBOX", readonly=True)
        if status != "OK":
            raise ProviderError(self.name, "cannot select INBOX")

        status, data = conn.search(None, *self.search_criteria(since))
        if status != "OK":
            raise ProviderError(self.name, "IMAP search failed")
        ids = data[0].split() if data and data[0] else []
        logger.debug("[EMAIL_REPLY] %d candidate message(s)", len(ids))

        newest: Optional[datetime] = None
        owner = self.config.to.strip().lower()
        for msg_id in ids:
            status, parts = conn.fetch(msg_id, "(BODY.PEEK[HEADER.FIELDS (DATE FROM)])")
            if status != "OK":
                continue
            headers = _headers(parts)
            if headers is None:
                continue
            # IMAP FROM is a substring match; require the exact address.
            sender = parseaddr(headers.get("From", ""))[1].strip().lower()
            if sender != owner:
                logger.debug("[EMAIL_REPLY] Ignoring reply from %r", sender)
                continue
            sent_at = _header_date(headers)
            if sent_at is None:
                continue
            if since is not None and sent_at <= ensure_utc(since):
                continue
            if newest is None or sent_at > newest:
                newest = sent_at
        return newest


def _headers(parts) -> Optional[Message]:
    for part in parts or []:
        if isinstance(part, tuple) and len(part) >= 2:
            return email.message_from_bytes(part[1])
    return None


def _header_date(headers: Message) -> Optional[datetime]:
    raw = headers.get("Date")
    if not raw:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(raw))
    except (TypeError, ValueError):
        logger.debug("[EMAIL_REPLY] Unparseable Date header: %r", raw)
        return None
