from .coordinator import PermissionCoordinator
from .discord_bot import HighTideDiscordApp

__all__ = ["HighTideDiscordApp", "PermissionCoordinator"]
