"""Exception taxonomy shared by every LastSignal subsystem."""

from __future__ import annotations

from typing import Optional


class LastSignalError(Exception):
    """Base class for all LastSignal errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(LastSignalError, ValueError):
    """Invalid or incomplete configuration. Fatal at startup."""


class InvalidDurationFormat(ConfigError):
    """A duration string could not be parsed (e.g. ``"7"`` or ``"5x"``)."""


# ---------------------------------------------------------------------------
# State persistence
# ---------------------------------------------------------------------------

class StateIOError(LastSignalError):
    """The state file could not be read or durably written."""


class StateContention(StateIOError):
    """Another process holds the state lock. Safe to retry later."""


class InstanceAlreadyRunning(LastSignalError, RuntimeError):
    """Raised when another daemon already holds the instance lock."""


# ---------------------------------------------------------------------------
# Output channels
# ---------------------------------------------------------------------------

class ChannelError(LastSignalError):
    """A health check or send against an output channel failed."""

    kind = "unknown"

    def __init__(self, channel: str, detail: str = "") -> None:
        message = f"{channel}: {self.kind}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.channel = channel
        self.detail = detail


class ChannelUnreachable(ChannelError):
    kind = "unreachable"


class ChannelAuthenticationFailed(ChannelError):
    kind = "authentication failed"


class ChannelRateLimited(ChannelError):
    kind = "rate limited"


class InvalidRecipient(ChannelError):
    kind = "invalid recipient"


class ChannelUnknownError(ChannelError):
    kind = "unknown error"


# ---------------------------------------------------------------------------
# Automatic check-in providers
# ---------------------------------------------------------------------------

class ProviderError(LastSignalError):
    """An automatic check-in source could not be polled."""

    def __init__(self, provider: str, detail: str = "") -> None:
        super().__init__(f"{provider}: {detail}" if detail else provider)
        self.provider = provider
        self.detail = detail


class ProviderAuthExpired(ProviderError):
    """Credentials expired; a token refresh should be attempted."""


class ProviderRateLimited(ProviderError):
    def __init__(self, provider: str, detail: str = "", *, retry_after_seconds: float | None = None) -> None:
        super().__init__(provider, detail)
        self.retry_after_seconds = retry_after_seconds


# ---------------------------------------------------------------------------
# Message composition
# ---------------------------------------------------------------------------

class TemplateError(LastSignalError):
    """The emergency template is unreadable or references a placeholder with no value."""

    def __init__(self, placeholder: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"No value supplied for template placeholder {{{placeholder}}}")
        self.placeholder = placeholder
