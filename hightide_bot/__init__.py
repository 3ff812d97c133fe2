"""
High Tide permissions bot core package.

Issues one-time authorization codes, turns them into time-boxed grants of a
special guild role, revokes those grants on expiry, and mirrors the activity
of elevated members into audit-log channels.
"""

from .services.coordinator import PermissionCoordinator
from .services.discord_bot import HighTideDiscordApp

__all__ = ["HighTideDiscordApp", "PermissionCoordinator"]
