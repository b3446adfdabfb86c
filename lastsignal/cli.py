"""
LastSignal CLI

Usage:
    lastsignal run              Run the daemon (foreground)
    lastsignal checkin          Record a manual check-in
    lastsignal status           Show check-in / escalation state
    lastsignal test             Health-check every configured output
    lastsignal version          Print version

Global option ``-c/--config`` selects the TOML file
(default: ``$LASTSIGNAL_CONFIG`` or ``~/.lastsignal/config.toml``).
"""

import argparse
import json
import sys
from datetime import datetime

from lastsignal.config import settings
from lastsignal.config.loader import load_config
from lastsignal.errors import LastSignalError
from lastsignal.orchestrator import LastSignalApp, configure_logging


def _load_app(args, *, log=True):
    config = load_config(args.config)
    if log:
        configure_logging(config.app.log_level)
    return LastSignalApp.from_config(config)


def _fmt(value):
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    if value is None:
        return "-"
    return str(getattr(value, "value", value))


def cmd_run(args):
    """Run the daemon until SIGINT/SIGTERM."""
    app = _load_app(args)
    print(f"🛰️  LastSignal running (config: {app.config.source})")
    app.run()


def cmd_checkin(args):
    """Record a manual check-in."""
    app = _load_app(args)
    at = app.checkin()
    print(f"✅ Check-in recorded at {_fmt(at)}")


def cmd_status(args):
    """Print the persisted state and derived phase."""
    app = _load_app(args, log=False)
    report = app.status()
    if args.json:
        print(json.dumps({k: (_fmt(v) if v is not None else None) for k, v in report.items()}, indent=2))
        return

    print(f"📍 Phase: {_fmt(report['phase'])}")
    print(f"   Last check-in:        {_fmt(report['last_checkin'])}")
    if report["time_since_checkin"]:
        print(f"   └─ {report['time_since_checkin']} ago")
    print(f"   Reminders due at:     {_fmt(report['reminders_due_at'])} (every {report['duration_between_checkins']})")
    print(f"   Last signal due at:   {_fmt(report['last_signal_due_at'])} (after {report['max_time_since_last_checkin']})")
    print(f"   Reminders sent:       {report['checkin_request_count']} (last: {_fmt(report['last_checkin_request'])})")
    fired = report["last_signal_fired"]
    if report["signal_fired_this_episode"]:
        print(f"   🚨 Last signal fired:  {_fmt(fired)}")
    else:
        print(f"   Last signal fired:    {_fmt(fired)}")


def cmd_test(args):
    """Health-check every output and report each result."""
    app = _load_app(args)
    report = app.test_outputs()
    for label, attempts in (("Check-in outputs", report.checkin), ("Last signal outputs", report.recipient)):
        print(f"{label}:")
        for attempt in attempts:
            mark = "✅" if attempt.ok else "❌"
            suffix = "" if attempt.ok else f": {attempt.error}"
            print(f"   {mark} {attempt.channel} ({attempt.recipient_id}){suffix}")
    if not report.all_healthy:
        sys.exit(1)


def cmd_version(args):
    """Print version."""
    from lastsignal import __version__
    print(f"lastsignal {__version__}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="lastsignal",
        description="LastSignal - dead man's switch"
    )
    parser.add_argument(
        "--config", "-c",
        default=str(settings.CONFIG_FILE),
        help=f"Configuration file (default: {settings.CONFIG_FILE})"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p_run = subparsers.add_parser("run", help="Run the daemon")
    p_run.set_defaults(func=cmd_run)

    p_checkin = subparsers.add_parser("checkin", help="Record a manual check-in")
    p_checkin.set_defaults(func=cmd_checkin)

    p_status = subparsers.add_parser("status", help="Show current state")
    p_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")
    p_status.set_defaults(func=cmd_status)

    p_test = subparsers.add_parser("test", help="Health-check all outputs")
    p_test.set_defaults(func=cmd_test)

    p_version = subparsers.add_parser("version", help="Print version")
    p_version.set_defaults(func=cmd_version)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except LastSignalError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
