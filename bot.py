# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Encore Playback Controller
========================================================
VERSION: 1.0.0
========================================================

Runtime wiring for the per-guild playback engines on top of disnake.

Builds the shared collaborators (content cache, yt-dlp resolver, stream
pipeline, guild settings store, voice sink) once and hands them to every
engine through get_player(). Command handling lives outside this module.
"""

import asyncio
import os
import signal
from pathlib import Path

import disnake
from disnake.ext import commands
from dotenv import load_dotenv
from loguru import logger

# Load environment variables
load_dotenv()

from core.player import Services, get_player, players, shutdown_players
from core.stream import StreamPipeline
from systems.cache import ContentCache
from systems.resolver import YtDlpResolver
from systems.voice_manager import DisnakeVoiceSink
from utils.config import ConfigManager
from utils.discord_helpers import format_guild_log
from utils.logging import setup_logging
from utils.state import GuildSettings, GuildSettingsStore

BASE_DIR = Path(__file__).parent
CONFIG_PATH = Path(os.getenv("CONFIG_PATH") or BASE_DIR / "config")
DATA_PATH = Path(os.getenv("DATA_PATH") or BASE_DIR / "data")


# =============================================================================
# SERVICE SETUP
# =============================================================================

def build_services(config: ConfigManager, bot=None) -> tuple[Services, GuildSettingsStore, DisnakeVoiceSink]:
    """
    Create the collaborators shared by every guild engine.

    Args:
        config: Loaded ConfigManager
        bot: Bot instance (for voice routing and human-readable logging)

    Returns:
        (services, settings_store, voice_sink)
    """
    cache_cfg = config.section("cache")
    ffmpeg_cfg = config.section("ffmpeg")

    cache = None
    if cache_cfg["enabled"]:
        cache_root = Path(cache_cfg["path"])
        if not cache_root.is_absolute():
            cache_root = BASE_DIR / cache_root
        cache = ContentCache(cache_root)
        logger.info(f"content cache at {cache_root}")
    else:
        logger.info("content cache disabled")

    resolver = YtDlpResolver({"format": config.get("resolver.format")})
    pipeline = StreamPipeline(
        resolver,
        cache,
        executable=ffmpeg_cfg["executable"],
        before_options=ffmpeg_cfg["before_options"],
        reconnect_options=ffmpeg_cfg["reconnect_options"],
        bitrate=ffmpeg_cfg["bitrate"],
        max_cache_length=cache_cfg["max_length_seconds"],
    )

    settings_store = GuildSettingsStore(
        DATA_PATH,
        GuildSettings(seconds_to_wait_after_queue_empties=config.get("playback.idle_wait_seconds")),
    )
    sink = DisnakeVoiceSink(bot, executable=ffmpeg_cfg["executable"])

    services = Services(pipeline=pipeline, sink=sink, settings=settings_store, bot=bot)
    return services, settings_store, sink


def create_bot(config: ConfigManager) -> commands.InteractionBot:
    """Build the disnake client and register its event handlers."""
    intents = disnake.Intents.default()
    intents.voice_states = True

    bot = commands.InteractionBot(intents=intents)
    services, settings_store, sink = build_services(config, bot)
    bot.services = services

    @bot.event
    async def on_ready():
        """Bot connected to Discord; make sure every guild has stored settings."""
        await settings_store.load()
        for guild in bot.guilds:
            await settings_store.ensure(guild.id)
        logger.log("NOTICE", f"connected as {bot.user} in {len(bot.guilds)} guild(s)")

    @bot.event
    async def on_guild_join(guild):
        await settings_store.ensure(guild.id)
        logger.info(f"joined {format_guild_log(guild)}")

    @bot.event
    async def on_guild_remove(guild):
        """Bot removed from guild - cleanup."""
        logger.info(f"removed from {format_guild_log(guild)}")
        player = players.pop(guild.id, None)
        if player is not None:
            await player.shutdown()

    @bot.event
    async def on_voice_state_update(member, before, after):
        """Route the bot's own voice disconnects to the sink (becomes a DISCONNECTED event)."""
        sink.handle_voice_state_update(member, before, after)

    return bot


async def open_player(bot: commands.InteractionBot, channel: disnake.VoiceChannel):
    """Get the guild's engine and bind it to channel. Entry point for command handlers."""
    player = await get_player(channel.guild.id, bot.services)
    await player.connect(channel)
    return player


# =============================================================================
# GRACEFUL SHUTDOWN
# =============================================================================

async def shutdown_bot(bot: commands.InteractionBot) -> None:
    """
    Gracefully shutdown every engine, then close the gateway connection.

    Called by signal handlers (SIGTERM, SIGINT) for clean shutdown.
    """
    logger.info("initiating graceful shutdown")
    logger.info(f"shutting down {len(players)} player(s)")
    await shutdown_players()
    logger.info("closing bot connection")
    await bot.close()


def install_signal_handlers(bot: commands.InteractionBot) -> None:
    """Run shutdown_bot on SIGINT (Ctrl+C) and SIGTERM (systemd stop / kill)."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: _on_signal(bot, s))
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            logger.debug(f"cannot install handler for {sig.name}")


def _on_signal(bot: commands.InteractionBot, sig: signal.Signals) -> None:
    logger.info(f"received {sig.name}, shutting down")
    asyncio.ensure_future(shutdown_bot(bot))


# =============================================================================
# MAIN
# =============================================================================

async def main() -> int:
    setup_logging(os.getenv("LOG_LEVEL", "verbose"))

    config = ConfigManager(CONFIG_PATH)
    await config.load()
    setup_logging(config.get("logging.level"))

    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("DISCORD_BOT_TOKEN not found in environment - bot cannot start")
        return 1

    bot = create_bot(config)
    install_signal_handlers(bot)

    logger.log("NOTICE", "Encore v1.0.0 - Copyright (C) 2026 grodz")
    logger.info("starting bot")
    try:
        await bot.start(token)
    finally:
        if not bot.is_closed():
            await shutdown_bot(bot)
    return 0


if __name__ == '__main__':
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("bot stopped by user (Ctrl+C)")
