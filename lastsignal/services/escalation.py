"""Escalation state machine.

Phases (derived from ``last_checkin`` on every tick, never stored):

  - NORMAL: checked in recently. Nothing to do.
  - AWAITING_CHECKIN: ``duration_between_checkins`` has passed. Send a
    reminder over the check-in outputs, at most once per retry delay.
  - ESCALATED: ``max_time_since_last_checkin`` has passed. Send the
    emergency message to the recipients, exactly once per episode.

An episode runs from one check-in to the next.  A state mutation is
written only after the dispatch that justifies it succeeded, so a crash
between the two can repeat a message but never lose one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from lastsignal.errors import TemplateError
from lastsignal.services.composer import MessageComposer
from lastsignal.services.dispatcher import DispatchResult, DispatchStatus, OutputDispatcher
from lastsignal.services.state_store import PersistedState, StateStore, ensure_utc

logger = logging.getLogger(__name__)
audit = logging.getLogger("lastsignal.audit")


class Phase(str, Enum):
    NORMAL = "normal"
    AWAITING_CHECKIN = "awaiting_checkin"
    ESCALATED = "escalated"


def derive_phase(
    last_checkin: Optional[datetime],
    now: datetime,
    duration_between_checkins: timedelta,
    max_time_since_last_checkin: timedelta,
) -> Phase:
    # No check-in yet: ask for one, but never escalate without a baseline.
    if last_checkin is None:
        return Phase.AWAITING_CHECKIN
    elapsed = ensure_utc(now) - ensure_utc(last_checkin)
    if elapsed < duration_between_checkins:
        return Phase.NORMAL
    if elapsed < max_time_since_last_checkin:
        return Phase.AWAITING_CHECKIN
    return Phase.ESCALATED


class Action(str, Enum):
    NONE = "none"
    REMINDER = "reminder"
    LAST_SIGNAL = "last_signal"
    ALREADY_FIRED = "already_fired"


@dataclass(frozen=True)
class TickOutcome:
    phase: Phase
    action: Action = Action.NONE
    result: Optional[DispatchResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return self.result is None or self.result.status in (DispatchStatus.SENT, DispatchStatus.DEFERRED)


class EscalationEngine:
    def __init__(
        self,
        store: StateStore,
        checkin_dispatcher: OutputDispatcher,
        recipient_dispatcher: OutputDispatcher,
        composer: MessageComposer,
        duration_between_checkins: timedelta,
        max_time_since_last_checkin: timedelta,
        *,
        broadcast: bool = False,
    ) -> None:
        self.store = store
        self.checkin_dispatcher = checkin_dispatcher
        self.recipient_dispatcher = recipient_dispatcher
        self.composer = composer
        self.duration_between_checkins = duration_between_checkins
        self.max_time_since_last_checkin = max_time_since_last_checkin
        self.broadcast = broadcast

    def phase(self, state: PersistedState, now: datetime) -> Phase:
        return derive_phase(
            state.last_checkin, now, self.duration_between_checkins, self.max_time_since_last_checkin
        )

    def tick(self, now: datetime) -> TickOutcome:
        """Run one evaluation. ``StateIOError`` propagates to the caller."""
        now = ensure_utc(now)
        state = self.store.load()
        phase = self.phase(state, now)
        logger.debug("[ENGINE] phase=%s last_checkin=%s", phase.value, state.last_checkin)

        if phase is Phase.NORMAL:
            return TickOutcome(phase)
        if phase is Phase.AWAITING_CHECKIN:
            return self._send_reminder(state, now)
        return self._fire_last_signal(state, now)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _send_reminder(self, state: PersistedState, now: datetime) -> TickOutcome:
        subject, body = self.composer.reminder_message()
        result = self.checkin_dispatcher.dispatch(subject, body, last_attempt=state.last_checkin_request, now=now)
        if result.status is DispatchStatus.SENT:
            self.store.record_checkin_request(now)
            audit.info("REMINDER sent via %s (request #%d)", result.channel, state.checkin_request_count + 1)
        elif result.status is DispatchStatus.FAILED:
            audit.error("REMINDER failed: %s", result.summary())
        return TickOutcome(Phase.AWAITING_CHECKIN, Action.REMINDER, result)

    def _fire_last_signal(self, state: PersistedState, now: datetime) -> TickOutcome:
        if state.signal_fired_this_episode():
            logger.debug("[ENGINE] Last signal already fired at %s", state.last_signal_fired)
            return TickOutcome(Phase.ESCALATED, Action.ALREADY_FIRED)

        try:
            subject, body = self.composer.last_signal_message(state, now)
        except TemplateError as exc:
            logger.critical("[ENGINE] Cannot compose last signal message: %s", exc)
            audit.critical("LAST_SIGNAL not sent: %s", exc)
            return TickOutcome(Phase.ESCALATED, Action.LAST_SIGNAL, error=str(exc))

        logger.warning("[ENGINE] No check-in since %s; sending last signal", state.last_checkin)
        if self.broadcast:
            result = self.recipient_dispatcher.broadcast(
                subject,
                body,
                skip_recipients=set(state.last_signal_recipients_notified),
                on_delivered=lambda recipient: self.store.record_recipient_notified(recipient, now),
            )
        else:
            # Any last_signal_fired still on record belongs to an earlier
            # episode and must not defer this one.
            result = self.recipient_dispatcher.dispatch(subject, body, last_attempt=None, now=now)

        if result.status is DispatchStatus.SENT:
            self.store.record_signal_fired(now)
            audit.critical("LAST_SIGNAL sent (%s)", ", ".join(result.delivered) or result.channel)
        elif result.status is DispatchStatus.PARTIAL:
            audit.error("LAST_SIGNAL partially delivered (%s): %s", ", ".join(result.delivered), result.summary())
        elif result.status is DispatchStatus.FAILED:
            audit.error("LAST_SIGNAL failed: %s", result.summary())
        return TickOutcome(Phase.ESCALATED, Action.LAST_SIGNAL, result)
