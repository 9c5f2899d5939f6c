"""Timed job registry for one-shot scheduled refreshes.

The registry keeps live timers in memory only; the scheduled refresh
service restores them from the database when the process starts.
"""

from guildtrack.scheduler.job_registry import TimedJobHandle, TimedJobRegistry

__all__ = [
    "TimedJobHandle",
    "TimedJobRegistry",
]
