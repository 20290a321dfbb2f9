#!/usr/bin/env python3
"""
UOI membership bot.

Loads settings from the environment, wires the extension loader and runs the
Discord client. Commands live in the Extensions/ folder.
"""

import logging

import discord
from discord.ext import commands

from config import Settings
from extension_loader import ExtensionLoader, configure_logging

logger = logging.getLogger("bot")


class MembershipBot(commands.Bot):
    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=settings.command_prefix, intents=intents)
        self.settings = settings

    async def setup_hook(self):
        loader = ExtensionLoader(
            self,
            extensions_dir=self.settings.extensions_dir,
            auto_load=self.settings.auto_load_extensions,
        )
        await self.add_cog(loader)
        if loader.auto_load:
            await loader.load_all_extensions()

        synced = await self.tree.sync()
        logger.info(f"Synced {len(synced)} application commands")

    async def on_ready(self):
        logger.info(f"UOI SYSTEM ONLINE: {self.user} ({self.user.id})")


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    if not settings.discord_token:
        raise SystemExit("DISCORD_TOKEN is not set. Add it to your environment or .env file.")

    bot = MembershipBot(settings)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
