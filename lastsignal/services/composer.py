"""Reminder and emergency message text.

The emergency template is a plain UTF-8 file with ``{name}`` placeholders.
It is read at composition time, so edits take effect without a restart.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Mapping, Optional

import pytz

from lastsignal.errors import TemplateError
from lastsignal.services.state_store import PersistedState, ensure_utc
from lastsignal.utils.atomic import atomic_write_text
from lastsignal.utils.duration import humanize

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

TIME_FORMAT = "%Y-%m-%d %H:%M:%S %Z"

REMINDER_SUBJECT = "Check-in requested"
LAST_SIGNAL_SUBJECT = "Urgent: please check on me"

REMINDER_BODY = (
    "Hello! This is your scheduled check-in reminder from LastSignal.\n\n"
    "Please respond to confirm you're okay. If you don't respond within the configured "
    "timeframe, the emergency contacts will be notified.\n\n"
    "To check in, reply to this message or run `lastsignal checkin`."
)

DEFAULT_TEMPLATE = """This is an automated message from LastSignal.

I have not checked in since {last_checkin} ({elapsed} ago).
This message is being sent as a precautionary measure to ensure my wellbeing.

If you are receiving this message, please:
1. Try to contact me through normal means
2. If you cannot reach me, consider checking on me in person
3. Contact emergency services if necessary

This system was set up to ensure my safety and peace of mind.

Generated at: {timestamp}

LastSignal - Automated Safety System
"""


def render_template(template: str, values: Mapping[str, str]) -> str:
    """Substitute every ``{name}`` in *template*.

    Text that does not form a placeholder (``{}``, ``{ x }``, ``{1}``) is
    kept as-is.

    Raises:
        TemplateError: A placeholder has no entry in *values*.
    """

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            raise TemplateError(name)
        return str(values[name])

    return _PLACEHOLDER_RE.sub(_sub, template)


class MessageComposer:
    """Builds the emergency message from the template file and current state."""

    def __init__(
        self,
        template_path: Path,
        extra_values: Optional[Mapping[str, str]] = None,
        tz_name: str = "UTC",
        max_time_since_last_checkin: Optional[timedelta] = None,
    ) -> None:
        self.template_path = Path(template_path)
        self.extra_values = dict(extra_values or {})
        try:
            self.tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            logger.warning("[COMPOSER] Unknown timezone %r; using UTC", tz_name)
            self.tz = pytz.utc
        self.max_time_since_last_checkin = max_time_since_last_checkin

    def load_template(self) -> str:
        """Return the template text, writing the default one if the file is missing.

        Raises:
            TemplateError: The file exists but cannot be read as UTF-8.
        """
        if not self.template_path.exists():
            try:
                atomic_write_text(self.template_path, DEFAULT_TEMPLATE)
            except OSError as exc:
                logger.warning("[COMPOSER] Cannot create default message file %s: %s", self.template_path, exc)
            else:
                logger.info("[COMPOSER] Created default message file at %s", self.template_path)
            return DEFAULT_TEMPLATE.strip()
        try:
            return self.template_path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise TemplateError(detail=f"Cannot read message file {self.template_path}: {exc}") from exc

    def format_time(self, value: Optional[datetime]) -> str:
        if value is None:
            return "never"
        return ensure_utc(value).astimezone(self.tz).strftime(TIME_FORMAT)

    def values_for(self, state: PersistedState, now: datetime) -> dict:
        values = dict(self.extra_values)
        values.update(
            timestamp=self.format_time(now),
            last_checkin=self.format_time(state.last_checkin),
            elapsed=humanize(now - state.last_checkin) if state.last_checkin else "unknown",
            checkin_request_count=str(state.checkin_request_count),
        )
        if self.max_time_since_last_checkin is not None:
            values["max_time_since_last_checkin"] = humanize(self.max_time_since_last_checkin)
        return values

    def last_signal_message(self, state: PersistedState, now: datetime) -> tuple[str, str]:
        """Return ``(subject, body)``. Raises ``TemplateError``."""
        body = render_template(self.load_template(), self.values_for(state, now))
        return LAST_SIGNAL_SUBJECT, body

    @staticmethod
    def reminder_message() -> tuple[str, str]:
        return REMINDER_SUBJECT, REMINDER_BODY
