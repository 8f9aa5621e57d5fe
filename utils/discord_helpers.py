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
Discord API Helper Functions

Safe wrappers around the voice operations the sink performs. All functions
gracefully handle None values and Discord API errors.
"""

import disnake
from loguru import logger


def format_guild_log(guild_or_id, bot=None) -> str:
    """
    Format guild for logging with human-readable name.

    Args:
        guild_or_id: Guild object, guild ID (int), or None (for DMs)
        bot: Bot instance (optional if guild object provided)

    Returns:
        "ServerName", "DM", or "guild #123" when the name is unknown

    Examples:
        >>> format_guild_log(None)
        'DM'
        >>> format_guild_log(123456)
        'guild #123456'
    """
    if guild_or_id is None:
        return "DM"

    if isinstance(guild_or_id, int):
        guild = bot.get_guild(guild_or_id) if bot else None
        guild_id = guild_or_id
    else:
        guild = guild_or_id
        guild_id = getattr(guild, 'id', None)

    if guild is not None and getattr(guild, 'name', None):
        return guild.name

    # Fallback for unknown guilds (bot kicked, no bot reference, etc.)
    return f"guild #{guild_id}" if guild_id else "unknown"


async def safe_disconnect(voice_client: disnake.VoiceClient | None, force: bool = True) -> bool:
    """
    Safely disconnect from voice channel with error handling.

    Args:
        voice_client: Voice client to disconnect (None is safe)
        force: Force disconnect even if playing

    Returns:
        bool: True if disconnected successfully or None (idempotent no-op), False on error
    """
    if not voice_client:
        return True  # No-op success for idempotency
    try:
        await voice_client.disconnect(force=force)
        return True
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug(f"disconnect failed (non-critical): {e}")
        return False
    except Exception as e:
        # Catch aiohttp transport errors during shutdown (e.g., ClientConnectionResetError)
        logger.debug(f"disconnect failed with transport error (non-critical): {e}")
        return False


async def safe_voice_state_change(guild: disnake.Guild, channel: disnake.VoiceChannel, self_deaf: bool = True) -> bool:
    """
    Safely change bot's voice state (e.g., self-deafen) with error handling.

    Returns:
        bool: True if state changed successfully, False otherwise
    """
    try:
        await guild.change_voice_state(channel=channel, self_deaf=self_deaf)
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug(f"voice state change failed (non-critical): {e}")
        return False
    else:
        return True
