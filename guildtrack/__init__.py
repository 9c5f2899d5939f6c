"""Guildtrack - scheduled tracker refreshes for Discord league guilds."""

__app_name__ = "guildtrack"
__version__ = "0.3.0"
