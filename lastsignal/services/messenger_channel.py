"""Facebook Messenger output channel (Graph API Send API).

The page access token travels as the ``access_token`` query parameter and
is never written to logs; error details are built from the Graph error body
and the status code only.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from lastsignal.config import settings
from lastsignal.config.loader import MessengerOutputConfig
from lastsignal.errors import (
    ChannelAuthenticationFailed,
    ChannelError,
    ChannelRateLimited,
    ChannelUnknownError,
    ChannelUnreachable,
    InvalidRecipient,
)

logger = logging.getLogger(__name__)

# Graph API error codes, see developers.facebook.com/docs/graph-api/guides/error-handling
AUTH_ERROR_CODES = frozenset({190})
RATE_LIMIT_ERROR_CODES = frozenset({4, 613})
RECIPIENT_ERROR_CODES = frozenset({100, 551})


class MessengerChannel:
    """Sends plain-text messages to one Messenger user."""

    name = "facebook_messenger"

    def __init__(self, config: MessengerOutputConfig, base_url: str = settings.MESSENGER_API_BASE) -> None:
        self.config = config
        self.base_url = f"{base_url.rstrip('/')}/{config.api_version}"

    @property
    def recipient_id(self) -> str:
        return f"facebook_messenger:{self.config.user_id}"

    def __repr__(self) -> str:
        return f"MessengerChannel(user_id={self.config.user_id!r})"

    def health_check(self) -> None:
        data = self._request("GET", "/me")
        if "id" not in data:
            raise ChannelUnknownError(self.name, "unexpected /me response")
        logger.debug("[MESSENGER] Page %s reachable", data.get("id"))

    def send(self, subject: str, body: str) -> None:
        text = f"{subject}\n\n{body}" if subject else body
        payload = {
            "recipient": {"id": self.config.user_id},
            "messaging_type": "MESSAGE_TAG",
            "tag": "ACCOUNT_UPDATE",
            "message": {"text": text},
        }
        data = self._request("POST", "/me/messages", json=payload)
        logger.info("[MESSENGER] Sent message to %s (message_id=%s)", self.config.user_id, data.get("message_id"))

    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = {"access_token": self.config.access_token}
        try:
            with httpx.Client(timeout=self.config.timeout) as client:
                response = client.request(method, f"{self.base_url}{path}", params=params, json=json)
        except httpx.TimeoutException as exc:
            raise ChannelUnreachable(self.name, "timed out") from exc
        except httpx.TransportError as exc:
            # str(exc) may embed the request URL, so only the class name is kept.
            raise ChannelUnreachable(self.name, type(exc).__name__) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if response.is_success and not error:
            return data
        raise classify_graph_error(self.name, response.status_code, error if isinstance(error, dict) else {})


def classify_graph_error(channel: str, status_code: int, error: Dict[str, Any]) -> ChannelError:
    code = error.get("code")
    message = str(error.get("message") or f"HTTP {status_code}")
    detail = f"HTTP {status_code}: {message}" if code is None else f"HTTP {status_code}, code {code}: {message}"

    if status_code in (401, 403) or code in AUTH_ERROR_CODES:
        return ChannelAuthenticationFailed(channel, detail)
    if status_code == 429 or code in RATE_LIMIT_ERROR_CODES:
        return ChannelRateLimited(channel, detail)
    if code in RECIPIENT_ERROR_CODES:
        return InvalidRecipient(channel, detail)
    return ChannelUnknownError(channel, detail)
