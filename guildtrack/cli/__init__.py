"""CLI command modules for guildtrack.

Command modules are registered by guildtrack.main. This package stays
import-light because guildtrack.exceptions depends on the exit code table.
"""

from guildtrack.cli.exit_codes import ExitCode

__all__ = ["ExitCode"]
