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
Track Model

Represents queued tracks and the playlist they were requested from.
"""

from dataclasses import dataclass
from enum import Enum


class MediaSource(Enum):
    """
    Where a track's audio comes from.

    STANDARD: Regular on-demand media, resolved into candidate formats
    LIVE_SEGMENT: URL is already a playable segmented stream (HLS)
    """
    STANDARD = 0
    LIVE_SEGMENT = 1


@dataclass(frozen=True, slots=True)
class QueuedPlaylist:
    """Playlist a batch of tracks was enqueued from."""

    title: str
    source: str


@dataclass(frozen=True, slots=True)
class Track:
    """
    A single queued playable unit.

    Attributes:
        title: Display title
        artist: Uploader or artist name
        url: Canonical URL (also the cache identity)
        length: Duration in seconds (of the clip, when offset is set)
        offset: Start offset in seconds for virtual clips (0 = whole track)
        playlist: Playlist this track was queued from, or None for single requests
        is_live: Source is a live broadcast
        thumbnail_url: Optional artwork URL
        source: MediaSource kind
        requested_by: Requester identity (user ID as string)
        added_in_channel_id: Text channel the request came from

    Design notes:
        - Immutable after creation; the engine never rewrites queued tracks
        - Equality is structural, so the same URL queued twice by the same
          requester compares equal (the engine tracks position, not identity)
    """

    title: str
    artist: str
    url: str
    length: float
    offset: float = 0
    playlist: QueuedPlaylist | None = None
    is_live: bool = False
    thumbnail_url: str | None = None
    source: MediaSource = MediaSource.STANDARD
    requested_by: str = ""
    added_in_channel_id: int | None = None

    @property
    def display_name(self) -> str:
        """Format "Artist - Title" for logs, falling back to title alone."""
        if self.artist:
            return f"{self.artist} - {self.title}"
        return self.title

    def clip_bounds(self) -> tuple[float | None, float | None]:
        """
        Stream bounds for playing this track from its start.

        Returns:
            (seek, stop_at) in source seconds, or (None, None) for whole tracks
        """
        if self.offset:
            return self.offset, self.offset + self.length
        return None, None
