from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol


class OutputChannel(Protocol):
    """A way of delivering a message: email, messenger, ..."""

    name: str

    @property
    def recipient_id(self) -> str:
        """Stable identifier of who this channel reaches, e.g. ``email:a@b.c``."""
        ...

    def health_check(self) -> None:
        """Cheap check of reachability and credentials. Raises ``ChannelError``."""
        ...

    def send(self, subject: str, body: str) -> None:
        """Deliver the message. Raises ``ChannelError``."""
        ...


class CheckinProvider(Protocol):
    """An automatic source of proof-of-life (activity tracker, inbox, ...)."""

    name: str

    # Treat an unrecoverable authentication failure as a check-in.
    auth_failure_counts_as_checkin: bool

    def poll_new_activity(self, since: Optional[datetime]) -> Optional[datetime]:
        """Return the newest qualifying activity after *since*, or None.

        Raises ``ProviderAuthExpired`` or ``ProviderRateLimited`` (or another
        ``ProviderError``) when the source cannot be read.
        """
        ...

    def refresh_token(self) -> None:
        """Renew credentials after ``ProviderAuthExpired``. Raises ``ProviderError``."""
        ...
