"""WHOOP wearable as an automatic check-in source.

Any cycle, sleep or recovery record updated after the last check-in is
treated as proof of life.  OAuth tokens live in a JSON file in the data
directory, written by an external authorization step; this module only
refreshes them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from lastsignal.config import settings
from lastsignal.config.loader import WhoopProviderConfig
from lastsignal.errors import ProviderAuthExpired, ProviderError, ProviderRateLimited
from lastsignal.services.state_store import ensure_utc
from lastsignal.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)

ACTIVITY_ENDPOINTS = ("/cycle", "/activity/sleep", "/recovery")


def _parse_iso(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return ensure_utc(datetime.fromisoformat(text))


@dataclass
class WhoopTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def expires_soon(self, now: datetime, buffer_seconds: float = settings.TOKEN_REFRESH_BUFFER_SECONDS) -> bool:
        return now + timedelta(seconds=buffer_seconds) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WhoopTokens":
        return cls(
            access_token=str(d["access_token"]),
            refresh_token=str(d["refresh_token"]),
            expires_at=_parse_iso(str(d["expires_at"])),
            token_type=str(d.get("token_type", "bearer")),
        )


class WhoopProvider:
    """Polls the WHOOP developer API for recent activity."""

    name = "whoop"

    def __init__(
        self,
        config: WhoopProviderConfig,
        *,
        api_base: str = settings.WHOOP_API_BASE,
        token_url: str = settings.WHOOP_TOKEN_URL,
    ) -> None:
        self.config = config
        self.auth_failure_counts_as_checkin = config.auth_failure_counts_as_checkin
        self.api_base = api_base.rstrip("/")
        self.token_url = token_url
        self._tokens: Optional[WhoopTokens] = None

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _load_tokens(self) -> WhoopTokens:
        if self._tokens is not None:
            return self._tokens
        path = Path(self.config.token_file)
        if not path.exists():
            raise ProviderAuthExpired(self.name, f"no token file at {path}; authorize WHOOP first")
        try:
            self._tokens = WhoopTokens.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as exc:
            raise ProviderError(self.name, f"unreadable token file {path}: {exc}") from exc
        return self._tokens

    def refresh_token(self) -> None:
        tokens = self._load_tokens()
        form = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": tokens.refresh_token,
            "scope": "offline",
        }
        try:
            with httpx.Client(timeout=self.config.timeout) as client:
                response = client.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"token refresh request failed: {type(exc).__name__}") from exc

        if response.status_code in (400, 401):
            # refresh token revoked or expired: only a new authorization helps
            self._tokens = None
            raise ProviderAuthExpired(self.name, f"token refresh rejected (HTTP {response.status_code})")
        if response.status_code == 429:
            raise ProviderRateLimited(self.name, "token refresh rate limited",
                                      retry_after_seconds=_retry_after(response))
        if not response.is_success:
            raise ProviderError(self.name, f"token refresh failed (HTTP {response.status_code})")

        try:
            body = response.json()
            refreshed = WhoopTokens(
                access_token=str(body["access_token"]),
                refresh_token=str(body.get("refresh_token") or tokens.refresh_token),
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(body["expires_in"])),
                token_type=str(body.get("token_type", "bearer")),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(self.name, f"malformed token response: {exc}") from exc

        atomic_write_json(Path(self.config.token_file), refreshed.to_dict())
        self._tokens = refreshed
        logger.info("[WHOOP] Access token refreshed; expires at %s", refreshed.expires_at.isoformat())

    # ------------------------------------------------------------------
    # CheckinProvider
    # ------------------------------------------------------------------

    def poll_new_activity(self, since: Optional[datetime]) -> Optional[datetime]:
        tokens = self._load_tokens()
        if tokens.expires_soon(datetime.now(timezone.utc)):
            logger.info("[WHOOP] Access token expires at %s; refreshing first", tokens.expires_at.isoformat())
            self.refresh_token()
            tokens = self._load_tokens()

        newest: Optional[datetime] = None
        failures = []
        with httpx.Client(timeout=self.config.timeout) as client:
            for endpoint in ACTIVITY_ENDPOINTS:
                try:
                    found = self._latest_update(client, endpoint, tokens.access_token)
                except (ProviderAuthExpired, ProviderRateLimited):
                    raise
                except ProviderError as exc:
                    logger.warning("[WHOOP] %s", exc)
                    failures.append(endpoint)
                    continue
                if found is not None and (newest is None or found > newest):
                    newest = found

        if len(failures) == len(ACTIVITY_ENDPOINTS):
            raise ProviderError(self.name, "all activity endpoints failed")
        if newest is None:
            logger.debug("[WHOOP] No activity records")
            return None
        if since is not None and newest <= ensure_utc(since):
            logger.debug("[WHOOP] Latest activity %s is not newer than %s", newest.isoformat(), since.isoformat())
            return None
        logger.info("[WHOOP] Activity detected at %s", newest.isoformat())
        return newest

    def _latest_update(self, client: httpx.Client, endpoint: str, access_token: str) -> Optional[datetime]:
        try:
            response = client.get(
                f"{self.api_base}{endpoint}",
                params={"limit": 1},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{endpoint}: request failed ({type(exc).__name__})") from exc

        if response.status_code == 401:
            raise ProviderAuthExpired(self.name, f"{endpoint}: HTTP 401")
        if response.status_code == 429:
            raise ProviderRateLimited(self.name, f"{endpoint}: HTTP 429", retry_after_seconds=_retry_after(response))
        if not response.is_success:
            raise ProviderError(self.name, f"{endpoint}: HTTP {response.status_code}")

        try:
            records = response.json().get("records") or []
            if not records:
                return None
            return _parse_iso(str(records[0]["updated_at"]))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ProviderError(self.name, f"{endpoint}: malformed response ({exc})") from exc


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
