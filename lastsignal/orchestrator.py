"""Application wiring and the daemon loop.

``LastSignalApp.from_config`` builds every component from a loaded
``Config``; the CLI then calls one of ``run`` / ``checkin`` / ``status`` /
``test_outputs``.

Daemon tick:
  1. Poll automatic check-in providers (``CheckinAggregator.poll``).
  2. Evaluate the escalation phase and dispatch (``EscalationEngine.tick``).
  3. Wait ``check_interval`` on the stop event.

SIGINT/SIGTERM only set the stop event, so a tick in progress always
finishes (and records its outcome) before the process exits.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from lastsignal.config import settings
from lastsignal.config.loader import Config, EmailOutputConfig, MessengerOutputConfig, OutputDescriptor
from lastsignal.errors import ConfigError
from lastsignal.services.checkin import CheckinAggregator, utc_now
from lastsignal.services.composer import MessageComposer
from lastsignal.services.dispatcher import ChannelAttempt, OutputDispatcher
from lastsignal.services.email_channel import EmailChannel
from lastsignal.services.email_reply_provider import EmailReplyProvider
from lastsignal.services.escalation import EscalationEngine, TickOutcome
from lastsignal.services.file_lock import acquire_instance_lock
from lastsignal.services.interfaces import CheckinProvider, OutputChannel
from lastsignal.services.messenger_channel import MessengerChannel
from lastsignal.services.state_store import StateStore
from lastsignal.services.whoop_provider import WhoopProvider
from lastsignal.utils.duration import format_duration, humanize

logger = logging.getLogger(__name__)

_LEVEL_NAMES = {"trace": "DEBUG", "debug": "DEBUG", "info": "INFO", "warn": "WARNING",
                "warning": "WARNING", "error": "ERROR"}


def configure_logging(log_level: str = "info", log_dir: Path = settings.LOG_DIR) -> None:
    """Install file + console handlers and the dispatch audit log (once per process)."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if any(isinstance(h, logging.FileHandler) for h in root_logger.handlers):
        return

    level_name = settings.LOG_LEVEL_OVERRIDE or _LEVEL_NAMES.get(log_level.lower(), "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / settings.LOG_FILE_NAME, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # httpx logs every request URL at INFO, and Graph URLs carry the access token.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Every reminder / emergency outcome, kept apart from the chatty main log
    audit_logger = logging.getLogger("lastsignal.audit")
    audit_logger.propagate = False
    audit_handler = logging.FileHandler(log_dir / settings.AUDIT_LOG_FILE_NAME, encoding="utf-8")
    audit_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)


def build_channel(descriptor: OutputDescriptor) -> OutputChannel:
    if isinstance(descriptor, EmailOutputConfig):
        return EmailChannel(descriptor)
    if isinstance(descriptor, MessengerOutputConfig):
        return MessengerChannel(descriptor)
    raise ConfigError(f"Unsupported output descriptor: {descriptor!r}")


def build_providers(config: Config) -> List[CheckinProvider]:
    providers: List[CheckinProvider] = [WhoopProvider(p) for p in config.checkin.providers]
    for output in config.checkin.outputs:
        if isinstance(output, EmailOutputConfig) and output.bidirectional:
            providers.append(EmailReplyProvider(output))
    return providers


@dataclass
class HealthReport:
    checkin: List[ChannelAttempt] = field(default_factory=list)
    recipient: List[ChannelAttempt] = field(default_factory=list)

    @property
    def all_healthy(self) -> bool:
        return all(a.ok for a in self.checkin + self.recipient)


class LastSignalApp:
    def __init__(
        self,
        config: Config,
        store: StateStore,
        aggregator: CheckinAggregator,
        engine: EscalationEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.store = store
        self.aggregator = aggregator
        self.engine = engine
        self.clock = clock

    @classmethod
    def from_config(cls, config: Config, *, clock: Callable[[], datetime] = utc_now) -> "LastSignalApp":
        store = StateStore.in_directory(config.app.data_directory)
        checkin_dispatcher = OutputDispatcher(
            [build_channel(o) for o in config.checkin.outputs], config.checkin.output_retry_delay, label="checkin"
        )
        recipient_dispatcher = OutputDispatcher(
            [build_channel(o) for o in config.recipient.last_signal_outputs],
            config.recipient.output_retry_delay,
            label="recipient",
        )
        composer = MessageComposer(
            config.last_signal.message_file,
            extra_values=config.last_signal.placeholders,
            tz_name=config.last_signal.timezone,
            max_time_since_last_checkin=config.recipient.max_time_since_last_checkin,
        )
        engine = EscalationEngine(
            store,
            checkin_dispatcher,
            recipient_dispatcher,
            composer,
            config.checkin.duration_between_checkins,
            config.recipient.max_time_since_last_checkin,
            broadcast=config.recipient.delivery == "broadcast",
        )
        aggregator = CheckinAggregator(store, build_providers(config), clock=clock)
        return cls(config, store, aggregator, engine, clock=clock)

    # ------------------------------------------------------------------
    # One-shot commands
    # ------------------------------------------------------------------

    def checkin(self) -> datetime:
        state = self.aggregator.manual_checkin()
        return state.last_checkin

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot of the persisted state and the derived phase."""
        state = self.store.load()
        now = self.clock()
        checkin_cfg, recipient_cfg = self.config.checkin, self.config.recipient
        report: Dict[str, Any] = {
            "now": now,
            "phase": self.engine.phase(state, now),
            "last_checkin": state.last_checkin,
            "last_checkin_request": state.last_checkin_request,
            "checkin_request_count": state.checkin_request_count,
            "last_signal_fired": state.last_signal_fired,
            "signal_fired_this_episode": state.signal_fired_this_episode(),
            "duration_between_checkins": format_duration(checkin_cfg.duration_between_checkins),
            "max_time_since_last_checkin": format_duration(recipient_cfg.max_time_since_last_checkin),
            "reminders_due_at": None,
            "last_signal_due_at": None,
            "time_since_checkin": None,
        }
        if state.last_checkin is not None:
            report["reminders_due_at"] = state.last_checkin + checkin_cfg.duration_between_checkins
            report["last_signal_due_at"] = state.last_checkin + recipient_cfg.max_time_since_last_checkin
            report["time_since_checkin"] = humanize(now - state.last_checkin)
        return report

    def test_outputs(self) -> HealthReport:
        return HealthReport(
            checkin=self.engine.checkin_dispatcher.health_check_all(),
            recipient=self.engine.recipient_dispatcher.health_check_all(),
        )

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    def tick(self) -> TickOutcome:
        self.aggregator.poll()
        return self.engine.tick(self.clock())

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        lock_path = Path(self.config.app.data_directory) / settings.DAEMON_LOCK_FILENAME
        with acquire_instance_lock(lock_path):
            previous = self._install_signal_handlers(stop_event)
            try:
                self._run_main_loop(stop_event)
            finally:
                for signum, handler in previous.items():
                    if handler is not None:
                        signal.signal(signum, handler)

    def _run_main_loop(self, stop_event: threading.Event) -> None:
        interval = self.config.app.check_interval.total_seconds()
        backoff = min(settings.ERROR_BACKOFF_SECONDS, interval)

        state = self.store.load()
        if state.signal_fired_this_episode():
            logger.warning(
                "[DAEMON] Last signal already fired at %s for this episode; waiting for a check-in",
                state.last_signal_fired.isoformat(),
            )
        logger.info("[DAEMON] Running. Check interval=%s", format_duration(self.config.app.check_interval))

        while not stop_event.is_set():
            wait = interval
            try:
                outcome = self.tick()
                logger.info(
                    "[DAEMON] Tick: phase=%s action=%s%s",
                    outcome.phase.value,
                    outcome.action.value,
                    f" ({outcome.result.summary()})" if outcome.result else "",
                )
            except Exception as exc:
                logger.exception("[DAEMON] Tick failed: %s", exc)
                wait = backoff
            stop_event.wait(wait)
        logger.info("[DAEMON] Stopped.")

    @staticmethod
    def _install_signal_handlers(stop_event: threading.Event) -> Dict[int, Any]:
        """Route SIGINT/SIGTERM to *stop_event*; returns the handlers they replaced."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def _stop(signum, frame):
            logger.info("[DAEMON] Received %s; finishing current tick", signal.Signals(signum).name)
            stop_event.set()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _stop)
        return previous

