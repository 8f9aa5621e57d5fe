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
Playback Engine - Per-Guild State Management

Owns the queue, the cursor, transport state, elapsed-time tracking and the
idle-disconnect timer for one guild. Drives the stream pipeline and reacts to
events posted by the voice sink.

Queue model: queue[:cursor] played ← queue[cursor] current → queue[cursor+1:] upcoming

Concurrency:
    - Coroutine operations (play, seek, forward, back, disconnect, stop) are
      serialized by a per-engine asyncio.Lock
    - Sync operations (pause, queue mutators) run atomically on the loop thread
    - Sink callbacks arrive as PlayerEvents on an asyncio.Queue, consumed by a
      single worker task
"""

import asyncio
import random
from dataclasses import dataclass
from time import monotonic
from typing import Any

from loguru import logger

from core.errors import (
    IndexOutOfRange,
    NoMoreTracks,
    NoPreviousTrack,
    NotConnected,
    NotPlaying,
    QueueEmpty,
    SeekOutOfRange,
)
from core.playback import EventKind, PlaybackSession, PlayerEvent, PositionTracker
from core.stream import STREAM_FORMAT, StreamPipeline
from core.track import Track
from systems.voice_manager import PlaybackState, VoiceSession, VoiceSink
from utils.context_managers import cursor_rollback
from utils.discord_helpers import format_guild_log
from utils.state import SettingsProvider


class PlaybackEngine:
    """
    Per-guild playback state machine over IDLE / PLAYING / PAUSED.

    Collaborators are injected:
    - pipeline: StreamPipeline (or anything with the same get_stream signature)
    - sink: VoiceSink to bind voice sessions from
    - settings: SettingsProvider for the idle-disconnect delay

    Attributes:
        guild_id: Discord guild ID
        queue: Ordered tracks (played, current and upcoming)
        cursor: Index of the current track, 0 <= cursor <= len(queue)
        state: Current PlaybackState
        loop_current: Replay the current track when it ends
        voice: Bound VoiceSession, None when disconnected
        audio_handle: Handle returned by the sink for the active stream
        now_playing: Track most recently started
    """

    def __init__(self, guild_id: int, pipeline: StreamPipeline, sink: VoiceSink,
                 settings: SettingsProvider, *, tick_interval: float = 1.0, bot=None):
        """
        Initialize engine for a guild.

        Args:
            guild_id: Discord guild ID
            pipeline: Stream source for tracks
            sink: Voice sink used by connect()
            settings: Guild settings provider
            tick_interval: Seconds between position ticks
            bot: Bot instance (for human-readable logging)
        """
        self.guild_id = guild_id
        self.bot = bot
        self.pipeline = pipeline
        self.sink = sink
        self.settings = settings

        # Queue model
        self.queue: list[Track] = []
        self.cursor: int = 0

        # Playback state
        self.state = PlaybackState.IDLE
        self.loop_current: bool = False
        self.now_playing: Track | None = None
        self._last_track_url: str | None = None
        self._tracker = PositionTracker(tick_interval)

        # Voice connection
        self.voice: VoiceSession | None = None
        self.audio_handle: Any = None

        # Session token used to discard events from superseded streams
        self._playback_session: PlaybackSession | None = None

        self._lock = asyncio.Lock()
        self._disconnect_task: asyncio.Task | None = None

        # Event channel from the voice sink
        self.events: asyncio.Queue[PlayerEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task | None = None

    @property
    def _log_prefix(self) -> str:
        return format_guild_log(self.guild_id, self.bot)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the event worker. Must be called from the running loop."""
        self._loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_events())

    async def shutdown(self) -> None:
        """Stop playback, drop the queue and cancel background tasks."""
        await self.stop()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # =========================================================================
    # Queue inspection
    # =========================================================================

    def get_current(self) -> Track | None:
        if 0 <= self.cursor < len(self.queue):
            return self.queue[self.cursor]
        return None

    def get_upcoming(self) -> tuple[Track, ...]:
        """Tracks strictly after the cursor (current track excluded)."""
        return tuple(self.queue[self.cursor + 1:])

    def queue_size(self) -> int:
        return len(self.get_upcoming())

    def is_queue_empty(self) -> bool:
        return self.queue_size() == 0

    @property
    def position(self) -> float:
        """Elapsed seconds into the current track."""
        return self._tracker.seconds

    def can_go_forward(self, skip: int) -> bool:
        return self.cursor + skip - 1 < len(self.queue)

    def can_go_back(self) -> bool:
        return self.cursor - 1 >= 0

    # =========================================================================
    # Queue mutators
    # =========================================================================

    def enqueue(self, track: Track, immediate: bool = False) -> None:
        """
        Add a track.

        Tracks from a playlist, and any track without immediate, go to the end.
        Otherwise the track becomes the next one to play.
        """
        if track.playlist or not immediate:
            self.queue.append(track)
        else:
            self.queue.insert(self.cursor + 1, track)

    def shuffle(self) -> None:
        """Shuffle upcoming tracks; current and played tracks keep their order."""
        upcoming = self.queue[self.cursor + 1:]
        random.shuffle(upcoming)
        self.queue[self.cursor + 1:] = upcoming

    def clear(self) -> None:
        """Drop everything except the current track."""
        current = self.get_current()
        self.queue = [current] if current else []
        self.cursor = 0

    def remove_at(self, offset_from_next: int, count: int = 1) -> None:
        """Remove count tracks starting offset_from_next places after the current one."""
        start = self.cursor + 1 + offset_from_next
        del self.queue[start:start + count]

    def remove_current(self) -> None:
        """Delete the current track; the next one slides under the cursor."""
        if self.get_current() is not None:
            del self.queue[self.cursor]

    def move(self, from_pos: int, to_pos: int) -> Track:
        """
        Move a track within the upcoming view.

        Positions are 1-based into get_upcoming() (1 = next track).

        Returns:
            The moved track

        Raises:
            IndexOutOfRange: Either position is outside 1..queue_size()
        """
        size = self.queue_size()
        if not (1 <= from_pos <= size and 1 <= to_pos <= size):
            raise IndexOutOfRange()

        track = self.queue.pop(self.cursor + from_pos)
        self.queue.insert(self.cursor + to_pos, track)
        return track

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self, channel: Any) -> None:
        """Bind to a voice session for channel."""
        if self._loop is None:
            self.start()
        self.voice = await self.sink.bind(channel, self.post_event)

    async def disconnect(self) -> None:
        """Pause if playing, cancel loop mode and tear down the voice session. Idempotent."""
        async with self._lock:
            await self._disconnect()

    async def _disconnect(self) -> None:
        if self.voice is None:
            return

        if self.state is PlaybackState.PLAYING:
            self.pause()

        self.loop_current = False
        self._cancel_disconnect_timer()

        voice, self.voice = self.voice, None
        self.cancel_active_session()
        voice.stop()
        await voice.disconnect()
        self.audio_handle = None
        logger.info(f"{self._log_prefix}: disconnected")

    async def stop(self) -> None:
        """Disconnect and empty the queue."""
        async with self._lock:
            await self._disconnect()
            self._cancel_disconnect_timer()
            self._tracker.reset()
            self.cursor = 0
            self.queue = []

    # =========================================================================
    # Transport
    # =========================================================================

    async def play(self) -> None:
        """Start or resume the current track."""
        async with self._lock:
            await self._play()

    async def _play(self) -> None:
        if self.voice is None:
            raise NotConnected()

        track = self.get_current()
        if track is None:
            raise QueueEmpty()

        self._cancel_disconnect_timer()

        # Resume from paused state
        if self.state is PlaybackState.PAUSED and self.now_playing and track.url == self.now_playing.url:
            if self.audio_handle is not None:
                self.voice.unpause()
                self.state = PlaybackState.PLAYING
                self._tracker.start()
                logger.debug(f"{self._log_prefix}: resumed {track.display_name}")
                return

            # Stream was lost (reconnect) - pick up where it stopped
            if not track.is_live:
                await self._seek(self.position)
                return

        try:
            seek, stop_at = track.clip_bounds()
            self._start_stream(track, await self._open_stream(track, seek, stop_at))

            if track.url == self._last_track_url:
                self._tracker.start()
            else:
                self._tracker.start(0)
                self._last_track_url = track.url
            logger.info(f"{self._log_prefix}: now playing {track.display_name}")
        except Exception as error:
            await self._skip_unplayable(track, error)

    async def _skip_unplayable(self, track: Track, error: Exception) -> None:
        """Move past a track that failed to start, then decide whether to surface the error."""
        await self._forward(1)

        if getattr(error, 'gone', False):
            logger.warning(f"{self._log_prefix}: {track.display_name} is unavailable, skipped")
            return

        logger.warning(f"{self._log_prefix}: failed to play {track.display_name}: {error}")
        raise error

    def pause(self) -> None:
        if self.state is not PlaybackState.PLAYING:
            raise NotPlaying()

        self.state = PlaybackState.PAUSED
        if self.voice is not None:
            self.voice.pause()
        self._tracker.stop()

    async def seek(self, position_seconds: float) -> None:
        async with self._lock:
            await self._seek(position_seconds)

    async def _seek(self, position_seconds: float) -> None:
        if self.voice is None:
            raise NotConnected()

        track = self.get_current()
        if track is None:
            raise QueueEmpty()

        if position_seconds < 0 or position_seconds > track.length:
            raise SeekOutOfRange(position_seconds, track.length)

        real_position = position_seconds
        stop_at = None
        if track.offset:
            real_position += track.offset
            stop_at = track.offset + track.length

        self._tracker.stop()
        self._cancel_disconnect_timer()
        self._start_stream(track, await self._open_stream(track, real_position, stop_at))
        self._last_track_url = track.url
        self._tracker.start(position_seconds)
        logger.debug(f"{self._log_prefix}: seeked {track.display_name} to {position_seconds:g}s")

    async def forward_seek(self, delta: float) -> None:
        async with self._lock:
            await self._seek(self.position + delta)

    async def forward(self, skip: int = 1) -> None:
        async with self._lock:
            await self._forward(skip)

    async def _forward(self, skip: int) -> None:
        prior = self.cursor
        self._manual_forward(skip)

        with cursor_rollback(self, prior):
            if self.get_current() is not None and self.state is not PlaybackState.PAUSED:
                await self._play()
            else:
                await self._go_idle()

    def _manual_forward(self, skip: int) -> None:
        if not self.can_go_forward(skip):
            raise NoMoreTracks()

        self.cursor += skip
        self._tracker.reset()

    async def back(self) -> None:
        async with self._lock:
            if not self.can_go_back():
                raise NoPreviousTrack()

            self.cursor -= 1
            self._tracker.reset()

            if self.state is not PlaybackState.PAUSED:
                await self._play()

    # =========================================================================
    # Stream plumbing
    # =========================================================================

    async def _open_stream(self, track: Track, seek: float | None, stop_at: float | None):
        """Fetch a stream under a fresh session; the previous session is cancelled first."""
        self.cancel_active_session()
        session = PlaybackSession(track_url=track.url)
        self._playback_session = session
        stream = await self.pipeline.get_stream(track, seek=seek, stop_at=stop_at, token=session.token)
        return session, stream

    def _start_stream(self, track: Track, opened) -> None:
        session, stream = opened
        if session.cancelled or self.voice is None:
            # Superseded or disconnected while the fetch was in flight
            stream.close()
            return

        self.audio_handle = self.voice.play(stream, STREAM_FORMAT, session)
        self.state = PlaybackState.PLAYING
        self.now_playing = track

    def cancel_active_session(self) -> None:
        """Invalidate the current playback session and kill its stream.

        Any later event that still carries the old session id is ignored.
        """
        session = self._playback_session
        if session is not None:
            session.cancel()
            logger.debug(
                f"{self._log_prefix}: playback session {session.id} superseded "
                f"after {monotonic() - session.started_at:.1f}s"
            )
        self._playback_session = None

    # =========================================================================
    # Idle disconnect
    # =========================================================================

    async def _go_idle(self) -> None:
        """Queue ran out (or engine is paused past the end): stop and schedule a disconnect."""
        self.cancel_active_session()
        if self.voice is not None:
            self.voice.stop()
        self.audio_handle = None
        self.state = PlaybackState.IDLE
        self._tracker.stop()

        settings = await self.settings.get_settings(self.guild_id)
        wait = settings.seconds_to_wait_after_queue_empties
        if wait != 0:
            self._arm_disconnect_timer(wait)

    def _arm_disconnect_timer(self, seconds: float) -> None:
        self._cancel_disconnect_timer()
        self._disconnect_task = asyncio.create_task(self._disconnect_when_idle(seconds))
        logger.debug(f"{self._log_prefix}: idle, disconnecting in {seconds}s")

    def _cancel_disconnect_timer(self) -> None:
        task = self._disconnect_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._disconnect_task = None

    async def _disconnect_when_idle(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        async with self._lock:
            if self._disconnect_task is asyncio.current_task():
                self._disconnect_task = None
            # Make sure we are not accidentally playing when disconnecting
            if self.state is PlaybackState.IDLE:
                logger.info(f"{self._log_prefix}: idle timeout reached")
                await self._disconnect()

    @property
    def disconnect_pending(self) -> bool:
        return self._disconnect_task is not None and not self._disconnect_task.done()

    # =========================================================================
    # Sink events
    # =========================================================================

    def post_event(self, event: PlayerEvent) -> None:
        """Queue an event from any thread (voice sink callbacks run off-loop)."""
        if self._loop is None:
            logger.warning(f"{self._log_prefix}: dropping {event.kind.name} event, engine not started")
            return
        self._loop.call_soon_threadsafe(self.events.put_nowait, event)

    async def _process_events(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.opt(exception=True).error(f"{self._log_prefix}: failed handling {event.kind.name} event")
            finally:
                self.events.task_done()

    async def handle_event(self, event: PlayerEvent) -> None:
        """Apply one sink event to the state machine."""
        async with self._lock:
            if event.kind is EventKind.DISCONNECTED:
                if event.voice is not None and event.voice is not self.voice:
                    logger.debug(f"{self._log_prefix}: ignoring disconnect from a replaced voice session")
                    return
                await self._disconnect()
                return

            session = self._playback_session
            if session is None or event.session_id != session.id:
                logger.debug(f"{self._log_prefix}: ignoring event from superseded playback session")
                return

            if self.state is not PlaybackState.PLAYING:
                return

            if event.error is not None:
                # A broken stream would fail the same way on replay - move on
                logger.warning(f"{self._log_prefix}: stream for {session.track_url} failed: {event.error}")
            elif self.loop_current:
                await self._seek(0)
                return

            # Automatically advance queued track at end

            await self._forward(1)


# =============================================================================
# Engine Management (Global)
# =============================================================================

@dataclass
class Services:
    """Collaborators shared by every guild engine."""

    pipeline: StreamPipeline
    sink: VoiceSink
    settings: SettingsProvider
    tick_interval: float = 1.0
    bot: Any = None


# Global engine storage
players: dict[int, PlaybackEngine] = {}
players_lock = asyncio.Lock()


async def get_player(guild_id: int, services: Services) -> PlaybackEngine:
    """
    Get or create the engine for a guild (thread-safe).

    Args:
        guild_id: Discord guild ID
        services: Shared collaborators

    Returns:
        PlaybackEngine instance for the guild
    """
    # Fast path - no lock
    if guild_id in players:
        return players[guild_id]

    # Slow path - need lock for creation
    async with players_lock:
        # Double-check
        if guild_id in players:
            return players[guild_id]

        player = PlaybackEngine(
            guild_id,
            services.pipeline,
            services.sink,
            services.settings,
            tick_interval=services.tick_interval,
            bot=services.bot,
        )
        player.start()
        players[guild_id] = player

    return players[guild_id]


async def shutdown_players() -> None:
    """Shut every engine down (bot exit)."""
    async with players_lock:
        engines = list(players.values())
        players.clear()

    for player in engines:
        try:
            await player.shutdown()
        except Exception:
            logger.opt(exception=True).warning(f"guild {player.guild_id}: shutdown failed")
