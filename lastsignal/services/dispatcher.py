"""Ordered failover (or broadcast) delivery over a list of output channels.

``dispatch()`` walks the channels in configured order: an unhealthy channel
is skipped, a healthy one is asked to send, and the first successful send
ends the attempt.  Failover never sleeps between channels; the only waiting
is the retry gate measured against the caller's last *successful* attempt.

The dispatcher never touches the state file.  Callers record the outcome
(see ``EscalationEngine``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Collection, List, Optional, Sequence

from lastsignal.errors import ChannelError
from lastsignal.services.interfaces import OutputChannel

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    SENT = "sent"
    DEFERRED = "deferred"
    FAILED = "failed"
    # broadcast only: some recipients reached, others still pending
    PARTIAL = "partial"


@dataclass(frozen=True)
class ChannelAttempt:
    channel: str
    recipient_id: str
    stage: str  # "health_check" or "send"
    ok: bool
    error: str = ""

    def describe(self) -> str:
        if self.ok:
            return f"{self.channel} ({self.recipient_id}): sent"
        return f"{self.channel} ({self.recipient_id}): {self.stage} failed: {self.error}"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    channel: Optional[str] = None
    attempts: List[ChannelAttempt] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    next_attempt_at: Optional[datetime] = None

    @property
    def sent(self) -> bool:
        return self.status is DispatchStatus.SENT

    def summary(self) -> str:
        if self.status is DispatchStatus.DEFERRED:
            return f"deferred until {self.next_attempt_at.isoformat() if self.next_attempt_at else '?'}"
        parts = "; ".join(a.describe() for a in self.attempts) or "no channels configured"
        return f"{self.status.value}: {parts}"


class OutputDispatcher:
    """Delivers a message over an ordered list of channels.

    Args:
        channels: Channels in priority order.
        retry_delay: Minimum spacing between two successful deliveries.
        label: Name used in logs ("checkin", "recipient").
    """

    def __init__(self, channels: Sequence[OutputChannel], retry_delay: timedelta, label: str = "dispatch") -> None:
        self.channels = list(channels)
        self.retry_delay = retry_delay
        self.label = label

    def gate(self, last_attempt: Optional[datetime], now: datetime) -> Optional[datetime]:
        """Return the time the next attempt is allowed, or None if allowed now."""
        if last_attempt is None:
            return None
        allowed_at = last_attempt + self.retry_delay
        if now < allowed_at:
            return allowed_at
        return None

    def dispatch(
        self,
        subject: str,
        body: str,
        *,
        last_attempt: Optional[datetime],
        now: datetime,
    ) -> DispatchResult:
        """Send through the first channel that is healthy and accepts the message."""
        allowed_at = self.gate(last_attempt, now)
        if allowed_at is not None:
            logger.debug("[DISPATCH] %s deferred until %s", self.label, allowed_at.isoformat())
            return DispatchResult(DispatchStatus.DEFERRED, next_attempt_at=allowed_at)

        attempts: List[ChannelAttempt] = []
        for channel in self.channels:
            attempt = self._try_channel(channel, subject, body)
            attempts.append(attempt)
            if attempt.ok:
                logger.info("[DISPATCH] %s delivered via %s", self.label, channel.name)
                return DispatchResult(
                    DispatchStatus.SENT,
                    channel=channel.name,
                    attempts=attempts,
                    delivered=[channel.recipient_id],
                )

        if not self.channels:
            logger.error("[DISPATCH] %s has no channels configured", self.label)
        else:
            logger.error("[DISPATCH] %s failed on all %d channel(s)", self.label, len(self.channels))
        return DispatchResult(DispatchStatus.FAILED, attempts=attempts)

    def broadcast(
        self,
        subject: str,
        body: str,
        *,
        skip_recipients: Collection[str] = (),
        on_delivered: Optional[Callable[[str], None]] = None,
    ) -> DispatchResult:
        """Send to every channel whose recipient has not been reached yet.

        ``on_delivered(recipient_id)`` runs right after each successful send,
        before the next channel is tried.
        """
        attempts: List[ChannelAttempt] = []
        delivered: List[str] = []
        pending = 0

        for channel in self.channels:
            if channel.recipient_id in skip_recipients:
                logger.debug("[DISPATCH] %s already notified %s", self.label, channel.recipient_id)
                continue
            attempt = self._try_channel(channel, subject, body)
            attempts.append(attempt)
            if attempt.ok:
                delivered.append(channel.recipient_id)
                if on_delivered is not None:
                    on_delivered(channel.recipient_id)
            else:
                pending += 1

        if pending == 0 and self.channels:
            status = DispatchStatus.SENT
        elif delivered:
            status = DispatchStatus.PARTIAL
        else:
            status = DispatchStatus.FAILED
        logger.log(
            logging.INFO if status is DispatchStatus.SENT else logging.ERROR,
            "[DISPATCH] %s broadcast %s (delivered=%d, pending=%d)",
            self.label,
            status.value,
            len(delivered),
            pending,
        )
        return DispatchResult(status, attempts=attempts, delivered=delivered)

    def health_check_all(self) -> List[ChannelAttempt]:
        """Health-check every channel; used by ``lastsignal test``."""
        results = []
        for channel in self.channels:
            try:
                channel.health_check()
            except ChannelError as exc:
                results.append(ChannelAttempt(channel.name, channel.recipient_id, "health_check", False, str(exc)))
            else:
                results.append(ChannelAttempt(channel.name, channel.recipient_id, "health_check", True))
        return results

    # ------------------------------------------------------------------

    def _try_channel(self, channel: OutputChannel, subject: str, body: str) -> ChannelAttempt:
        try:
            channel.health_check()
        except ChannelError as exc:
            logger.warning("[DISPATCH] %s: %s unhealthy, skipping: %s", self.label, channel.name, exc)
            return ChannelAttempt(channel.name, channel.recipient_id, "health_check", False, str(exc))
        except Exception as exc:
            logger.exception("[DISPATCH] %s: %s health check raised", self.label, channel.name)
            return ChannelAttempt(channel.name, channel.recipient_id, "health_check", False, repr(exc))

        try:
            channel.send(subject, body)
        except ChannelError as exc:
            logger.warning("[DISPATCH] %s: send via %s failed: %s", self.label, channel.name, exc)
            return ChannelAttempt(channel.name, channel.recipient_id, "send", False, str(exc))
        except Exception as exc:
            logger.exception("[DISPATCH] %s: send via %s raised", self.label, channel.name)
            return ChannelAttempt(channel.name, channel.recipient_id, "send", False, repr(exc))
        return ChannelAttempt(channel.name, channel.recipient_id, "send", True)
