"""
LastSignal - a dead man's switch.

Expects periodic proof-of-life from its owner. When check-ins stop it first
sends reminders over the configured check-in outputs, then delivers a single
emergency message to the designated recipients.

Usage:
    lastsignal -c ~/.lastsignal/config.toml run      # daemon
    lastsignal checkin                               # manual proof-of-life
    lastsignal status
    lastsignal test                                  # health-check every output
"""

__version__ = "0.1.0"
