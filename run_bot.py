#!/usr/bin/env python3
"""
Entry point for running the High Tide permissions bot.

Usage:
    python run_bot.py

Environment:
    - HIGHTIDE_DISCORD__TOKEN
    - HIGHTIDE_DISCORD__GUILD_ID
    - HIGHTIDE_ROLES__SPECIAL_ROLE_ID
    - HIGHTIDE_CHANNELS__AUTH_LOG / __PERM_LOG / __SPECIAL_ACTIVITY_LOG

The script loads configuration via BotSettings (reads .env by default), syncs
the guild slash commands and runs the bot until Ctrl+C.
"""

import asyncio

from hightide_bot import HighTideDiscordApp
from hightide_bot.config import BotSettings


async def _main() -> None:
    settings = BotSettings()
    app = HighTideDiscordApp(settings)
    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\n\n🛑 Bot shutdown requested by user.")
