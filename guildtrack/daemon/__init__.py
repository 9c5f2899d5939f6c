"""Daemon module for guildtrack.

Runs the scheduled refresh registry as a long-lived process.
"""

from guildtrack.daemon.service import GuildtrackDaemon, run_daemon

__all__ = [
    "GuildtrackDaemon",
    "run_daemon",
]
