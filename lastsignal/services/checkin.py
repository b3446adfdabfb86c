"""Check-in aggregation: manual check-ins plus automatic provider polling."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from lastsignal.errors import ProviderAuthExpired, ProviderError, ProviderRateLimited
from lastsignal.services.interfaces import CheckinProvider
from lastsignal.services.state_store import PersistedState, StateStore, ensure_utc

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckinAggregator:
    """Funnels every proof-of-life into ``StateStore.record_checkin``.

    Provider failures are contained here: ``poll()`` logs them and moves on,
    so a broken integration never takes the daemon down.
    """

    def __init__(
        self,
        store: StateStore,
        providers: Sequence[CheckinProvider] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.providers = list(providers)
        self.clock = clock

    def manual_checkin(self) -> PersistedState:
        now = self.clock()
        logger.info("[CHECKIN] Manual check-in at %s", now.isoformat())
        return self.store.record_checkin(now)

    def poll(self) -> Optional[datetime]:
        """Poll every provider once; record and return the newest check-in, if any.

        Activity only counts when it is newer than the last check-in or, before
        the first one, newer than the last reminder. With neither on record
        there is no baseline yet and providers are not consulted: stale
        activity must never become the first check-in.
        """
        if not self.providers:
            return None

        now = ensure_utc(self.clock())
        state = self.store.load()
        since = state.last_checkin or state.last_checkin_request
        if since is None:
            logger.debug("[CHECKIN] No check-in or reminder on record yet; skipping provider poll")
            return None
        newest: Optional[datetime] = None

        for provider in self.providers:
            found = self._poll_one(provider, since, now)
            if found is None:
                continue
            found = min(ensure_utc(found), now)
            if found <= since:
                continue
            if newest is None or found > newest:
                newest = found

        if newest is None:
            return None
        self.store.record_checkin(newest)
        logger.info("[CHECKIN] Automatic check-in recorded at %s", newest.isoformat())
        return newest

    def _poll_one(self, provider: CheckinProvider, since: Optional[datetime], now: datetime) -> Optional[datetime]:
        try:
            return provider.poll_new_activity(since)
        except ProviderAuthExpired as exc:
            logger.info("[CHECKIN] %s credentials expired (%s); refreshing", provider.name, exc.detail)
        except ProviderRateLimited as exc:
            logger.warning("[CHECKIN] %s rate limited (retry_after=%s); skipping this cycle",
                           provider.name, exc.retry_after_seconds)
            return None
        except ProviderError as exc:
            logger.warning("[CHECKIN] %s poll failed: %s", provider.name, exc)
            return None

        try:
            provider.refresh_token()
            return provider.poll_new_activity(since)
        except ProviderAuthExpired as exc:
            return self._auth_failed(provider, exc, now)
        except ProviderRateLimited as exc:
            logger.warning("[CHECKIN] %s rate limited after refresh (retry_after=%s)",
                           provider.name, exc.retry_after_seconds)
        except ProviderError as exc:
            logger.warning("[CHECKIN] %s poll after refresh failed: %s", provider.name, exc)
        return None

    def _auth_failed(self, provider: CheckinProvider, exc: ProviderError, now: datetime) -> Optional[datetime]:
        if provider.auth_failure_counts_as_checkin:
            logger.warning("[CHECKIN] %s authentication still failing (%s); counting as check-in",
                           provider.name, exc)
            return now
        logger.error("[CHECKIN] %s authentication still failing after refresh: %s", provider.name, exc)
        return None

