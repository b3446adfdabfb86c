"""Shared fixtures: in-memory channels, a controllable clock, a temp state store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from lastsignal.errors import ChannelError, ChannelUnreachable
from lastsignal.services.state_store import StateStore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeChannel:
    """OutputChannel double that records calls into a shared log."""

    def __init__(
        self,
        name: str,
        *,
        healthy: bool = True,
        send_error: Optional[ChannelError] = None,
        log: Optional[List[str]] = None,
        recipient: Optional[str] = None,
    ) -> None:
        self.name = name
        self.healthy = healthy
        self.send_error = send_error
        self.log = log if log is not None else []
        self.sent: List[tuple] = []
        self._recipient = recipient or f"fake:{name}"

    @property
    def recipient_id(self) -> str:
        return self._recipient

    def health_check(self) -> None:
        self.log.append(f"{self.name}.health_check")
        if not self.healthy:
            raise ChannelUnreachable(self.name, "down")

    def send(self, subject: str, body: str) -> None:
        self.log.append(f"{self.name}.send")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((subject, body))


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.json", lock_retries=0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
