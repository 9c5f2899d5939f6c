"""Exception hierarchy for guildtrack.

Every error raised by the scheduling and batch services derives from
GuildtrackError so the CLI can map it to an exit code without knowing
which service raised it.
"""

from typing import Any

from guildtrack.cli.exit_codes import ExitCode


class GuildtrackError(Exception):
    """Base exception for guildtrack.

    Attributes:
        message: Error message
        exit_code: Exit code to use when the CLI terminates on this error
        details: Optional dictionary of additional error details
    """

    exit_code: int = ExitCode.GENERAL_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(GuildtrackError):
    """Required configuration is missing or invalid.

    Raised at construction time; components refuse to start rather than
    run with an undefined policy.
    """

    exit_code = ExitCode.CONFIGURATION_ERROR


class ValidationError(GuildtrackError):
    """Caller input was rejected (e.g. a schedule time that is not in the future)."""

    exit_code = ExitCode.INVALID_ARGUMENT


class NotFoundError(GuildtrackError):
    """A guild or schedule does not exist."""

    exit_code = ExitCode.NOT_FOUND


class InvalidScheduleStateError(GuildtrackError):
    """The schedule exists but its status does not allow the operation."""

    exit_code = ExitCode.SCHEDULING_ERROR


class SchedulerNotReadyError(GuildtrackError):
    """New schedules were requested before pending schedules were recovered."""

    exit_code = ExitCode.SCHEDULING_ERROR


class JobAlreadyScheduledError(GuildtrackError):
    """A timed job with the same id is already registered."""

    exit_code = ExitCode.SCHEDULING_ERROR


class QueueError(GuildtrackError):
    """Submitting a batch to the scrape queue failed."""

    exit_code = ExitCode.PROCESSING_ERROR
