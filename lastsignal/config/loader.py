"""Load and validate the user configuration (``~/.lastsignal/config.toml``).

Example::

    [checkin]
    duration_between_checkins = "7d"
    output_retry_delay = "24h"

    [[checkin.outputs]]
    type = "email"
    bidirectional = true
    [checkin.outputs.config]
    to = "me@example.com"
    smtp_host = "smtp.gmail.com"
    smtp_port = 587
    username = "me@example.com"
    password = "app-password"

    [recipient]
    max_time_since_last_checkin = "14d"
    output_retry_delay = "12h"

    [[recipient.last_signal_outputs]]
    type = "facebook_messenger"
    config = { user_id = "1234567890", access_token = "..." }

    [last_signal]
    message_file = "message.txt"
    timezone = "Europe/Berlin"
    placeholders = { name = "Alex", phone = "+49 ..." }

    [app]
    data_directory = "~/.lastsignal"
    log_level = "info"
    check_interval = "1h"

Each output entry is turned into one of a closed set of typed records, so a
known ``type`` with a missing field is rejected here instead of failing at
send time.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from lastsignal.config import settings
from lastsignal.errors import ConfigError, InvalidDurationFormat
from lastsignal.utils.duration import parse_timedelta

VALID_LOG_LEVELS = ("trace", "debug", "info", "warn", "warning", "error")
DELIVERY_MODES = ("failover", "broadcast")


# ---------------------------------------------------------------------------
# Output / provider descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmailOutputConfig:
    to: str
    smtp_host: str
    smtp_port: int
    username: str
    password: str
    from_address: str
    subject_prefix: str = settings.DEFAULT_SUBJECT_PREFIX
    timeout: float = settings.CHANNEL_TIMEOUT_SECONDS
    # Replies to reminders found over IMAP count as check-ins.
    bidirectional: bool = False
    imap_host: str = ""
    imap_port: int = 993

    type = "email"


@dataclass(frozen=True)
class MessengerOutputConfig:
    user_id: str
    access_token: str
    api_version: str = settings.MESSENGER_API_VERSION
    timeout: float = settings.CHANNEL_TIMEOUT_SECONDS

    type = "facebook_messenger"


OutputDescriptor = Union[EmailOutputConfig, MessengerOutputConfig]


@dataclass(frozen=True)
class WhoopProviderConfig:
    client_id: str
    client_secret: str
    token_file: Path
    timeout: float = settings.CHANNEL_TIMEOUT_SECONDS
    auth_failure_counts_as_checkin: bool = False

    type = "whoop"


ProviderDescriptor = WhoopProviderConfig


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckinConfig:
    duration_between_checkins: timedelta
    output_retry_delay: timedelta
    outputs: tuple[OutputDescriptor, ...]
    providers: tuple[ProviderDescriptor, ...] = ()


@dataclass(frozen=True)
class RecipientConfig:
    max_time_since_last_checkin: timedelta
    output_retry_delay: timedelta
    last_signal_outputs: tuple[OutputDescriptor, ...]
    delivery: str = "failover"


@dataclass(frozen=True)
class LastSignalConfig:
    message_file: Path
    placeholders: Mapping[str, str] = field(default_factory=dict)
    timezone: str = "UTC"


@dataclass(frozen=True)
class AppConfig:
    data_directory: Path
    log_level: str = "info"
    check_interval: timedelta = field(default_factory=lambda: parse_timedelta(settings.DEFAULT_CHECK_INTERVAL))


@dataclass(frozen=True)
class Config:
    checkin: CheckinConfig
    recipient: RecipientConfig
    last_signal: LastSignalConfig
    app: AppConfig
    source: Optional[Path] = None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(path: Path | None = None) -> Config:
    """Read, parse and validate the TOML configuration at *path*."""
    path = Path(path or settings.CONFIG_FILE).expanduser()
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config file {path} as TOML: {exc}") from exc
    return parse_config(raw, source=path)


def parse_config(raw: Mapping[str, Any], *, source: Path | None = None) -> Config:
    app = _parse_app(_section(raw, "app", required=False))
    checkin = _parse_checkin(_section(raw, "checkin"), app.data_directory)
    recipient = _parse_recipient(_section(raw, "recipient"))
    last_signal = _parse_last_signal(_section(raw, "last_signal", required=False), app.data_directory)

    if recipient.max_time_since_last_checkin <= checkin.duration_between_checkins:
        raise ConfigError(
            "recipient.max_time_since_last_checkin must be longer than checkin.duration_between_checkins"
        )
    return Config(checkin=checkin, recipient=recipient, last_signal=last_signal, app=app, source=source)


def _section(raw: Mapping[str, Any], name: str, *, required: bool = True) -> Mapping[str, Any]:
    value = raw.get(name)
    if value is None:
        if required:
            raise ConfigError(f"Missing required section [{name}]")
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _duration(section: Mapping[str, Any], key: str, context: str, default: str | None = None) -> timedelta:
    value = section.get(key, default)
    if value is None:
        raise ConfigError(f"{context}.{key} is required")
    try:
        return parse_timedelta(value)
    except InvalidDurationFormat as exc:
        raise InvalidDurationFormat(f"{context}.{key}: {exc}") from exc


def _expand_path(value: str, base: Path | None = None) -> Path:
    path = Path(value).expanduser()
    if base is not None and not path.is_absolute():
        path = base / path
    return path


def _parse_app(section: Mapping[str, Any]) -> AppConfig:
    data_directory = _expand_path(str(section.get("data_directory") or settings.LASTSIGNAL_HOME))
    log_level = str(section.get("log_level", "info")).lower()
    if log_level not in VALID_LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {log_level}. Must be one of: {', '.join(VALID_LOG_LEVELS)}")
    check_interval = _duration(section, "check_interval", "app", default=settings.DEFAULT_CHECK_INTERVAL)
    return AppConfig(data_directory=data_directory, log_level=log_level, check_interval=check_interval)


def _parse_checkin(section: Mapping[str, Any], data_directory: Path) -> CheckinConfig:
    outputs = section.get("outputs") or []
    if not isinstance(outputs, list) or not outputs:
        raise ConfigError("At least one checkin output must be configured")
    providers = section.get("providers") or []
    if not isinstance(providers, list):
        raise ConfigError("checkin.providers must be an array of tables")
    return CheckinConfig(
        duration_between_checkins=_duration(section, "duration_between_checkins", "checkin"),
        output_retry_delay=_duration(section, "output_retry_delay", "checkin"),
        outputs=tuple(parse_output(entry, "checkin", allow_bidirectional=True) for entry in outputs),
        providers=tuple(parse_provider(entry, data_directory) for entry in providers),
    )


def _parse_recipient(section: Mapping[str, Any]) -> RecipientConfig:
    outputs = section.get("last_signal_outputs") or []
    if not isinstance(outputs, list) or not outputs:
        raise ConfigError("At least one last signal output must be configured")
    delivery = str(section.get("delivery", "failover")).lower()
    if delivery not in DELIVERY_MODES:
        raise ConfigError(f"recipient.delivery must be one of: {', '.join(DELIVERY_MODES)}")
    return RecipientConfig(
        max_time_since_last_checkin=_duration(section, "max_time_since_last_checkin", "recipient"),
        output_retry_delay=_duration(section, "output_retry_delay", "recipient"),
        last_signal_outputs=tuple(parse_output(entry, "last_signal") for entry in outputs),
        delivery=delivery,
    )


def _parse_last_signal(section: Mapping[str, Any], data_directory: Path) -> LastSignalConfig:
    adapter_type = str(section.get("adapter_type", "file")).lower()
    if adapter_type != "file":
        raise ConfigError(f"Unknown message adapter type: {adapter_type}")
    message_file = _expand_path(
        str(section.get("message_file") or settings.DEFAULT_MESSAGE_FILENAME), base=data_directory
    )
    placeholders = section.get("placeholders") or {}
    if not isinstance(placeholders, Mapping):
        raise ConfigError("last_signal.placeholders must be a table")
    timezone = str(section.get("timezone", "UTC"))
    return LastSignalConfig(
        message_file=message_file,
        placeholders={str(k): str(v) for k, v in placeholders.items()},
        timezone=timezone,
    )


# ---------------------------------------------------------------------------
# Tagged variants
# ---------------------------------------------------------------------------

def _require(bundle: Mapping[str, Any], key: str, kind: str, context: str) -> str:
    value = bundle.get(key)
    if value is None or str(value).strip() == "":
        raise ConfigError(f"{kind} output in {context} missing {key!r}")
    return str(value)


def _port(value: Any, key: str, context: str) -> int:
    try:
        port = int(str(value))
    except ValueError as exc:
        raise ConfigError(f"Invalid {key} {value!r} in {context} output") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid {key} {value!r} in {context} output")
    return port


def _timeout(bundle: Mapping[str, Any], context: str) -> float:
    if "timeout" not in bundle:
        return settings.CHANNEL_TIMEOUT_SECONDS
    return _duration(bundle, "timeout", context).total_seconds()


def parse_output(entry: Mapping[str, Any], context: str, *, allow_bidirectional: bool = False) -> OutputDescriptor:
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Output entries in {context} must be tables")
    kind = str(entry.get("type", "")).strip().lower()
    bundle = entry.get("config") or {}
    if not isinstance(bundle, Mapping):
        raise ConfigError(f"{kind or 'output'} in {context}: 'config' must be a table")

    if kind == "email":
        bidirectional = bool(entry.get("bidirectional", bundle.get("bidirectional", False)))
        if bidirectional and not allow_bidirectional:
            raise ConfigError(f"bidirectional email is only supported for checkin outputs, not {context}")
        smtp_host = _require(bundle, "smtp_host", kind, context)
        username = _require(bundle, "username", kind, context)
        return EmailOutputConfig(
            to=_require(bundle, "to", kind, context),
            smtp_host=smtp_host,
            smtp_port=_port(_require(bundle, "smtp_port", kind, context), "smtp_port", context),
            username=username,
            password=_require(bundle, "password", kind, context),
            from_address=str(bundle.get("from") or username),
            subject_prefix=str(bundle.get("subject_prefix") or settings.DEFAULT_SUBJECT_PREFIX),
            timeout=_timeout(bundle, f"{context}.email"),
            bidirectional=bidirectional,
            imap_host=str(bundle.get("imap_host") or smtp_host.replace("smtp", "imap")),
            imap_port=_port(bundle.get("imap_port", 993), "imap_port", context),
        )

    if kind in ("facebook_messenger", "messenger"):
        return MessengerOutputConfig(
            user_id=_require(bundle, "user_id", "facebook_messenger", context),
            access_token=_require(bundle, "access_token", "facebook_messenger", context),
            api_version=str(bundle.get("api_version") or settings.MESSENGER_API_VERSION),
            timeout=_timeout(bundle, f"{context}.facebook_messenger"),
        )

    raise ConfigError(f"Unknown output type {kind!r} in {context}")


def parse_provider(entry: Mapping[str, Any], data_directory: Path) -> ProviderDescriptor:
    if not isinstance(entry, Mapping):
        raise ConfigError("checkin.providers entries must be tables")
    kind = str(entry.get("type", "")).strip().lower()
    bundle = entry.get("config") or {}
    if not isinstance(bundle, Mapping):
        raise ConfigError(f"{kind or 'provider'}: 'config' must be a table")

    if kind == "whoop":
        token_file = bundle.get("token_file") or settings.WHOOP_TOKENS_FILENAME
        return WhoopProviderConfig(
            client_id=_require(bundle, "client_id", kind, "checkin.providers"),
            client_secret=_require(bundle, "client_secret", kind, "checkin.providers"),
            token_file=_expand_path(str(token_file), base=data_directory),
            timeout=_timeout(bundle, "checkin.providers.whoop"),
            auth_failure_counts_as_checkin=bool(entry.get("auth_failure_counts_as_checkin", False)),
        )

    raise ConfigError(f"Unknown check-in provider type {kind!r}")
