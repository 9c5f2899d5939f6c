"""Standard exit codes for the guildtrack CLI.

Codes follow common Unix conventions where possible so the commands
can be scripted from the bot host's tooling.
"""


class ExitCode:
    """Standard exit codes for guildtrack.

    - 0: Success
    - 1: General error
    - 2: Configuration error
    - 3: Scheduling error (schedule not in a state that allows the operation)
    - 4: Processing error (batch refresh or queue submission failed)
    - 5: Storage error
    - 7: Invalid argument
    - 8: Not found
    - 130: Cancelled by Ctrl+C (128 + SIGINT)
    """

    SUCCESS = 0
    GENERAL_ERROR = 1

    CONFIGURATION_ERROR = 2
    SCHEDULING_ERROR = 3
    PROCESSING_ERROR = 4
    STORAGE_ERROR = 5
    INVALID_ARGUMENT = 7
    NOT_FOUND = 8

    CANCELLED = 130

    @classmethod
    def get_name(cls, code: int) -> str:
        """Get the name of an exit code.

        Args:
            code: The exit code value

        Returns:
            Human-readable name for the exit code
        """
        names = {
            cls.SUCCESS: "SUCCESS",
            cls.GENERAL_ERROR: "GENERAL_ERROR",
            cls.CONFIGURATION_ERROR: "CONFIGURATION_ERROR",
            cls.SCHEDULING_ERROR: "SCHEDULING_ERROR",
            cls.PROCESSING_ERROR: "PROCESSING_ERROR",
            cls.STORAGE_ERROR: "STORAGE_ERROR",
            cls.INVALID_ARGUMENT: "INVALID_ARGUMENT",
            cls.NOT_FOUND: "NOT_FOUND",
            cls.CANCELLED: "CANCELLED",
        }
        return names.get(code, f"UNKNOWN({code})")
