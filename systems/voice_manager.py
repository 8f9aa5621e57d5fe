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
Voice Management System

The voice sink the playback engine streams into. The engine talks to the
VoiceSink / VoiceSession protocols; DisnakeVoiceSink is the production
implementation on top of disnake voice clients.

Sink callbacks (stream finished, connection dropped) never call into the
engine directly. They are posted as PlayerEvents through the emit callable
the engine hands to bind(), which is safe to call from disnake's audio thread.
"""

from enum import Enum
from typing import Any, Callable, Protocol

import disnake
from loguru import logger

from core.errors import StreamError
from core.playback import EventKind, PlaybackSession, PlayerEvent
from core.stream import AudioStream
from utils.discord_helpers import format_guild_log, safe_disconnect, safe_voice_state_change

EmitEvent = Callable[[PlayerEvent], None]


class PlaybackState(Enum):
    """
    Current state of voice playback.

    IDLE: Bot is not playing anything (may or may not be connected to voice)
    PLAYING: Bot is actively playing a track
    PAUSED: Bot is connected and has a track loaded, but playback is paused
    """
    IDLE = 0
    PLAYING = 1
    PAUSED = 2


class VoiceSession(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def play(self, stream: AudioStream, fmt: str, session: PlaybackSession) -> Any:
        """Start streaming; returns an audio handle. Replaces any current stream."""
        ...

    def pause(self) -> None: ...

    def unpause(self) -> None: ...

    def stop(self) -> None: ...

    async def disconnect(self) -> None: ...


class VoiceSink(Protocol):
    async def bind(self, channel: Any, emit: EmitEvent) -> VoiceSession:
        """Join (or move to) channel and return the session for it."""
        ...


# =============================================================================
# disnake implementation
# =============================================================================

class GuardedStream:
    """
    AudioStream view handed to disnake's pipe writer thread.

    disnake does not catch errors from read() in that thread; an exception
    kills it without closing the remuxer's stdin, so the player never ends
    and after() never fires. Stream failures are stored here instead and
    reported as EOF, which lets playback finish normally.

    Attributes:
        error: StreamError raised by the underlying stream, if any
    """

    def __init__(self, stream: AudioStream) -> None:
        self.stream = stream
        self.error: StreamError | None = None

    def read(self, size: int = -1) -> bytes:
        if self.error is not None:
            return b''
        try:
            return self.stream.read(size)
        except StreamError as e:
            logger.warning(f"stream for {self.stream.label or 'track'} failed mid-playback: {e}")
            self.error = e
            return b''

    def close(self) -> None:
        self.stream.close()


class DisnakeVoiceSession:
    """
    One guild's voice connection.

    Streams are webm/opus; disnake's FFmpegOpusAudio remuxes them to ogg with
    codec copy (no re-encode) while reading from the AudioStream in its pipe
    writer thread.
    """

    def __init__(self, voice_client: disnake.VoiceClient, emit: EmitEvent, guild_id: int,
                 bot=None, executable: str = 'ffmpeg'):
        self.voice_client = voice_client
        self.guild_id = guild_id
        self.bot = bot
        self.executable = executable
        self._emit = emit
        self.active = True

    @property
    def is_connected(self) -> bool:
        return self.active and self.get_voice_state_safe(self.voice_client) is not None

    @staticmethod
    def get_voice_state_safe(voice_client: disnake.VoiceClient | None) -> tuple[bool, bool] | None:
        """
        Safely get voice state.

        Returns:
            Tuple of (is_playing, is_paused) or None if not connected or error
        """
        if not voice_client or not voice_client.is_connected():
            return None

        try:
            return (voice_client.is_playing(), voice_client.is_paused())
        except (disnake.ClientException, RuntimeError) as e:
            logger.debug(f"voice state check failed: {e}")
            return None

    def play(self, stream: AudioStream, fmt: str, session: PlaybackSession) -> disnake.AudioSource:
        state = self.get_voice_state_safe(self.voice_client)
        if state is None:
            stream.close()
            raise disnake.ClientException("not connected to voice")

        if any(state):
            # The replaced stream's after() still fires; its session id is stale
            # by now so the engine ignores it.
            self.voice_client.stop()

        guarded = GuardedStream(stream)
        source = disnake.FFmpegOpusAudio(
            guarded,
            pipe=True,
            codec='copy',
            executable=self.executable,
            before_options=f'-f {fmt}',
        )
        guild_id = self.guild_id
        emit = self._emit

        def after_track(error):
            """
            Fires in disnake's audio thread when the source is exhausted or stopped.

            Only closes the stream and posts an event; all state changes
            happen on the engine's event worker.
            """
            if error:
                logger.error(f"guild {guild_id} playback error: {error}")
            try:
                stream.close()
            except (OSError, RuntimeError):
                logger.opt(exception=True).debug(f"guild {guild_id}: stream close failed")
            emit(PlayerEvent(EventKind.IDLE, session_id=session.id, error=error or guarded.error))

        self.voice_client.play(source, after=after_track)
        return source

    def pause(self) -> None:
        try:
            self.voice_client.pause()
        except (disnake.ClientException, AttributeError) as e:
            logger.debug(f"guild {self.guild_id}: pause failed: {e}")

    def unpause(self) -> None:
        try:
            self.voice_client.resume()
        except (disnake.ClientException, AttributeError) as e:
            logger.debug(f"guild {self.guild_id}: resume failed: {e}")

    def stop(self) -> None:
        try:
            self.voice_client.stop()
        except (disnake.ClientException, AttributeError) as e:
            logger.debug(f"guild {self.guild_id}: stop failed: {e}")

    async def disconnect(self) -> None:
        self.active = False
        await safe_disconnect(self.voice_client, force=True)

    def connection_lost(self) -> None:
        """Called by the sink when the gateway reports the bot left voice."""
        if not self.active:
            return
        self.active = False
        logger.info(f"{format_guild_log(self.guild_id, self.bot)}: voice connection dropped")
        self._emit(PlayerEvent(EventKind.DISCONNECTED, voice=self))


class DisnakeVoiceSink:
    """
    VoiceSink over disnake voice channels.

    The bot must forward its own voice state updates to
    handle_voice_state_update() so dropped connections reach the engine.
    """

    def __init__(self, bot=None, executable: str = 'ffmpeg'):
        self.bot = bot
        self.executable = executable
        self._sessions: dict[int, DisnakeVoiceSession] = {}

    async def bind(self, channel: disnake.VoiceChannel, emit: EmitEvent) -> DisnakeVoiceSession:
        guild = channel.guild
        voice_client = guild.voice_client

        if voice_client and voice_client.is_connected():
            if voice_client.channel != channel:
                await voice_client.move_to(channel)
        else:
            voice_client = await channel.connect()

        # Self-deafen (bot doesn't need to hear users)
        await safe_voice_state_change(guild, channel, self_deaf=True)

        previous = self._sessions.get(guild.id)
        if previous is not None:
            previous.active = False

        session = DisnakeVoiceSession(voice_client, emit, guild.id, bot=self.bot, executable=self.executable)
        self._sessions[guild.id] = session
        logger.info(f"{format_guild_log(guild, self.bot)}: joined {channel.name}")
        return session

    def handle_voice_state_update(self, member: disnake.Member, before: disnake.VoiceState,
                                  after: disnake.VoiceState) -> None:
        """Route the bot's own disconnects to the owning session."""
        if self.bot is None or self.bot.user is None or member.id != self.bot.user.id:
            return
        if before.channel is not None and after.channel is None:
            session = self._sessions.pop(member.guild.id, None)
            if session is not None:
                session.connection_lost()
