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
Player Errors

Every failure the playback engine can surface to a caller. Transport
precondition errors are raised unmodified; StreamError subclasses come out of
the stream pipeline and drive the skip-and-continue behavior in play().
"""


class PlayerError(Exception):
    """Base class for all playback errors."""


class NotConnected(PlayerError):
    def __init__(self, message: str = "not connected to a voice channel") -> None:
        super().__init__(message)


class QueueEmpty(PlayerError):
    def __init__(self, message: str = "queue empty") -> None:
        super().__init__(message)


class NotPlaying(PlayerError):
    def __init__(self, message: str = "not currently playing") -> None:
        super().__init__(message)


class SeekOutOfRange(PlayerError):
    def __init__(self, position: float, length: float) -> None:
        super().__init__(f"seek position {position}s is outside the track (0-{length}s)")
        self.position = position
        self.length = length


class NoMoreTracks(PlayerError):
    def __init__(self, message: str = "no tracks in queue to forward to") -> None:
        super().__init__(message)


class NoPreviousTrack(PlayerError):
    def __init__(self, message: str = "no tracks in queue to go back to") -> None:
        super().__init__(message)


class IndexOutOfRange(PlayerError):
    def __init__(self, message: str = "move index is outside the range of the queue") -> None:
        super().__init__(message)


class SettingsNotFound(PlayerError):
    def __init__(self, guild_id: int) -> None:
        super().__init__(f"could not find settings for guild {guild_id}")
        self.guild_id = guild_id


# =============================================================================
# Stream failures
# =============================================================================

class StreamError(PlayerError):
    """Raised while acquiring or decoding a track's audio."""


class NoSuitableFormat(StreamError):
    def __init__(self, url: str) -> None:
        super().__init__(f"can't find suitable format for {url}")
        self.url = url


class TranscodeFailure(StreamError):
    """The transcoder could not be started or exited with an error."""


class FetchFailure(StreamError):
    """
    Upstream lookup failed.

    Attributes:
        gone: True when the upstream reported the source as permanently
            unavailable (removed, private, HTTP 410). play() skips such tracks
            without surfacing the error.
    """

    def __init__(self, message: str, *, gone: bool = False) -> None:
        super().__init__(message)
        self.gone = gone
