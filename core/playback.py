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
Playback Sessions, Events and Position Tracking

Support types for the playback engine: session tokens that scope sink
callbacks to one started stream, the events the voice sink posts back to the
engine, and the elapsed-time ticker.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from time import monotonic as _now
from typing import Any

from loguru import logger

from core.stream import CancelToken

_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes callbacks and the stream of one play attempt.

    Each playback session receives a unique ``id`` so events from the voice
    sink can be matched against the most recent stream. ``track_url`` is kept
    for logging, while ``started_at`` captures diagnostic timing data.
    Cancelling the session also cancels its ``token``, which kills the
    transcoder feeding the stream.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    track_url: str | None = None
    started_at: float = field(default_factory=_now)
    token: CancelToken = field(default_factory=CancelToken)
    cancelled: bool = False

    def cancel(self) -> None:
        """Mark the session as cancelled and abandon its stream."""
        self.cancelled = True
        self.token.cancel()


class EventKind(Enum):
    """
    Transitions reported by the voice sink.

    IDLE: A stream reached its end (or was stopped)
    DISCONNECTED: The voice connection dropped
    """
    IDLE = 0
    DISCONNECTED = 1


@dataclass(frozen=True, slots=True)
class PlayerEvent:
    """
    Message from the voice sink to the engine's event worker.

    Attributes:
        kind: What happened
        session_id: PlaybackSession the finished stream belonged to (IDLE)
        error: Failure that ended the stream early, if any
        voice: Voice session that reported the event (DISCONNECTED)
    """

    kind: EventKind
    session_id: int | None = None
    error: BaseException | None = None
    voice: Any = None


class PositionTracker:
    """
    Elapsed-time counter for the current track.

    Ticks once per interval while running. At most one tick task exists at a
    time: start() replaces any running task, stop() freezes the count.

    Attributes:
        seconds: Elapsed seconds into the current track
    """

    def __init__(self, interval: float = 1.0) -> None:
        self.interval = interval
        self.seconds: float = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, initial: float | None = None) -> None:
        """Start ticking, optionally resetting the counter first."""
        if initial is not None:
            self.seconds = initial
        self.stop()
        self._task = asyncio.create_task(self._tick())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def reset(self) -> None:
        """Stop and zero the counter (track change)."""
        self.stop()
        self.seconds = 0

    async def _tick(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                self.seconds += 1
        except asyncio.CancelledError:
            logger.trace("position tracking stopped")
            raise
