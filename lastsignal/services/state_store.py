"""Durable check-in / escalation state.

The state file is the single source of truth shared by the daemon and the
one-shot commands.  Every mutation is a locked load-modify-save:

1. take the advisory state lock (fail fast with ``StateContention``);
2. re-read the file, so an update from another process is never lost;
3. apply the change and write it with ``atomic_write_json``.

A reader therefore only ever sees the previous or the next complete file.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from lastsignal import __version__
from lastsignal.config import settings
from lastsignal.errors import StateContention, StateIOError
from lastsignal.services.file_lock import LockHeld, file_lock
from lastsignal.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_ts(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise StateIOError(f"State field {field_name!r} is not a timestamp: {value!r}")
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise StateIOError(f"State field {field_name!r} has an invalid timestamp: {value!r}") from exc


@dataclass(frozen=True)
class PersistedState:
    """Snapshot of everything LastSignal remembers between runs."""

    last_checkin: Optional[datetime] = None
    last_checkin_request: Optional[datetime] = None
    last_signal_fired: Optional[datetime] = None
    checkin_request_count: int = 0
    # recipient id -> time the emergency message reached it (broadcast delivery)
    last_signal_recipients_notified: Dict[str, datetime] = field(default_factory=dict)
    version: str = __version__

    def signal_fired_this_episode(self) -> bool:
        """True once the emergency message went out since the last check-in."""
        if self.last_signal_fired is None:
            return False
        if self.last_checkin is None:
            return True
        return self.last_signal_fired >= self.last_checkin

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_checkin": _format_ts(self.last_checkin),
            "last_checkin_request": _format_ts(self.last_checkin_request),
            "last_signal_fired": _format_ts(self.last_signal_fired),
            "checkin_request_count": self.checkin_request_count,
            "last_signal_recipients_notified": {
                recipient: _format_ts(ts)
                for recipient, ts in sorted(self.last_signal_recipients_notified.items())
            },
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedState":
        if not isinstance(data, dict):
            raise StateIOError("State file does not contain a JSON object")

        count = data.get("checkin_request_count", 0)
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise StateIOError(f"Invalid checkin_request_count: {count!r}")

        notified_raw = data.get("last_signal_recipients_notified") or {}
        if not isinstance(notified_raw, dict):
            raise StateIOError("last_signal_recipients_notified must be an object")
        notified = {
            str(recipient): _parse_ts(ts, f"last_signal_recipients_notified.{recipient}")
            for recipient, ts in notified_raw.items()
            if ts is not None
        }

        return cls(
            last_checkin=_parse_ts(data.get("last_checkin"), "last_checkin"),
            last_checkin_request=_parse_ts(data.get("last_checkin_request"), "last_checkin_request"),
            last_signal_fired=_parse_ts(data.get("last_signal_fired"), "last_signal_fired"),
            checkin_request_count=count,
            last_signal_recipients_notified=notified,
            version=str(data.get("version", __version__)),
        )


class StateStore:
    """File-backed store for ``PersistedState``.

    Not thread-safe; the daemon drives it from a single thread and other
    processes are kept out by the advisory lock.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_retries: int = settings.STATE_LOCK_RETRIES,
        lock_backoff_seconds: float = settings.STATE_LOCK_BACKOFF_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + settings.STATE_LOCK_SUFFIX)
        self._lock_retries = lock_retries
        self._lock_backoff_seconds = lock_backoff_seconds

    @classmethod
    def in_directory(cls, data_directory: Path) -> "StateStore":
        return cls(Path(data_directory) / settings.STATE_FILENAME)

    # ------------------------------------------------------------------
    # Raw persistence
    # ------------------------------------------------------------------

    def load(self) -> PersistedState:
        """Read the state file; a missing file is a fresh, default state."""
        if not self.path.exists():
            logger.info("[STATE] No state file at %s; starting fresh", self.path)
            return PersistedState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StateIOError(f"Failed to read state file {self.path}: {exc}") from exc
        return PersistedState.from_dict(raw)

    def save(self, state: PersistedState) -> None:
        try:
            atomic_write_json(self.path, state.to_dict())
        except OSError as exc:
            raise StateIOError(f"Failed to write state file {self.path}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[list]:
        """Locked load-modify-save.

        Yields a one-element list holding the current state; replace
        ``box[0]`` to have the new state saved when the block exits without
        an exception.
        """
        try:
            with file_lock(
                self.lock_path,
                retries=self._lock_retries,
                backoff_seconds=self._lock_backoff_seconds,
            ):
                box = [self.load()]
                original = box[0]
                yield box
                if box[0] is not original:
                    self.save(box[0])
        except LockHeld as exc:
            raise StateContention(
                f"State file {self.path} is being updated by another process (pid={exc.owner_pid}); retry shortly"
            ) from exc
        except OSError as exc:
            raise StateIOError(f"Failed to lock state file {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def record_checkin(self, now: datetime) -> PersistedState:
        """Start a new escalation episode at *now*."""
        now = ensure_utc(now)
        with self.transaction() as box:
            current = box[0]
            if current.last_checkin is not None and now < current.last_checkin:
                logger.info(
                    "[STATE] Ignoring check-in at %s older than recorded %s",
                    now.isoformat(),
                    current.last_checkin.isoformat(),
                )
                return current
            box[0] = replace(
                current,
                last_checkin=now,
                checkin_request_count=0,
                last_signal_recipients_notified={},
                version=__version__,
            )
        logger.info("[STATE] Check-in recorded at %s", now.isoformat())
        return box[0]

    def record_checkin_request(self, now: datetime) -> PersistedState:
        now = ensure_utc(now)
        with self.transaction() as box:
            current = box[0]
            box[0] = replace(
                current,
                last_checkin_request=now,
                checkin_request_count=current.checkin_request_count + 1,
                version=__version__,
            )
        logger.info(
            "[STATE] Check-in request #%d recorded at %s",
            box[0].checkin_request_count,
            now.isoformat(),
        )
        return box[0]

    def record_signal_fired(self, now: datetime) -> PersistedState:
        now = ensure_utc(now)
        with self.transaction() as box:
            box[0] = replace(box[0], last_signal_fired=now, version=__version__)
        logger.warning("[STATE] Last signal recorded as fired at %s", now.isoformat())
        return box[0]

    def record_recipient_notified(self, recipient_id: str, now: datetime) -> PersistedState:
        now = ensure_utc(now)
        with self.transaction() as box:
            current = box[0]
            notified = dict(current.last_signal_recipients_notified)
            notified[recipient_id] = now
            box[0] = replace(current, last_signal_recipients_notified=notified, version=__version__)
        logger.info("[STATE] Recipient %s notified at %s", recipient_id, now.isoformat())
        return box[0]
