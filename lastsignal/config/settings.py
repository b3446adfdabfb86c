from __future__ import annotations

import os
from pathlib import Path

# Home of the default config file, state file and logs.
LASTSIGNAL_HOME: Path = Path(
    os.getenv("LASTSIGNAL_HOME") or (Path.home() / ".lastsignal")
).expanduser()

# User configuration (TOML). Overridden by ``lastsignal --config``.
CONFIG_FILE: Path = Path(
    os.getenv("LASTSIGNAL_CONFIG") or (LASTSIGNAL_HOME / "config.toml")
).expanduser()

STATE_FILENAME: str = "state.json"
STATE_LOCK_SUFFIX: str = ".lock"
DAEMON_LOCK_FILENAME: str = "daemon.lock"
DEFAULT_MESSAGE_FILENAME: str = "message.txt"
WHOOP_TOKENS_FILENAME: str = "whoop_tokens.json"

# Logging. The config file's [app].log_level is used unless the env var is set.
LOG_DIR: Path = Path(os.getenv("LASTSIGNAL_LOG_DIR") or (LASTSIGNAL_HOME / "logs")).expanduser()
LOG_FILE_NAME: str = "lastsignal.log"
AUDIT_LOG_FILE_NAME: str = "dispatch_audit.log"
LOG_LEVEL_OVERRIDE: str | None = (os.getenv("LASTSIGNAL_LOG_LEVEL") or "").strip().upper() or None

# Daemon tick used when [app].check_interval is absent.
DEFAULT_CHECK_INTERVAL: str = "1h"

# Back-off after an unexpected error in a tick (capped by the check interval).
ERROR_BACKOFF_SECONDS: float = float(os.getenv("LASTSIGNAL_ERROR_BACKOFF", "300"))

# Per-channel network timeout (seconds) when an output does not set one.
CHANNEL_TIMEOUT_SECONDS: float = float(os.getenv("LASTSIGNAL_CHANNEL_TIMEOUT", "30"))

# Retry behavior when another process holds the state lock
STATE_LOCK_RETRIES: int = int(os.getenv("LASTSIGNAL_STATE_LOCK_RETRIES", "3"))
STATE_LOCK_BACKOFF_SECONDS: float = float(os.getenv("LASTSIGNAL_STATE_LOCK_BACKOFF", "0.2"))

# Refresh OAuth access tokens this many seconds before they expire.
TOKEN_REFRESH_BUFFER_SECONDS: int = 5 * 60

# Subject line prefix for reminder and emergency messages.
DEFAULT_SUBJECT_PREFIX: str = "LastSignal"

# Graph API version for the messenger channel.
MESSENGER_API_VERSION: str = os.getenv("LASTSIGNAL_MESSENGER_API_VERSION", "v18.0")
MESSENGER_API_BASE: str = "https://graph.facebook.com"

# WHOOP developer API
WHOOP_API_BASE: str = "https://api.prod.whoop.com/developer/v1"
WHOOP_TOKEN_URL: str = "https://api.prod.whoop.com/oauth/oauth2/token"
