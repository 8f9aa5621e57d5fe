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
Source Resolution

Turns a track URL into the media streams that can be fetched for it. The
pipeline only depends on the SourceResolver protocol; YtDlpResolver is the
production implementation.
"""

import asyncio
import functools
import re
from dataclasses import dataclass
from typing import Any, Protocol

import yt_dlp
from loguru import logger

from core.errors import FetchFailure

# yt-dlp appends a "please report this issue" footer to extractor errors
_REPORT_FOOTER = re.compile(r";?\s*please report this issue on .*$", re.IGNORECASE | re.DOTALL)

# Upstream phrases that mean the source will never come back
_GONE_PATTERN = re.compile(
    r"video unavailable|no longer available|has been removed|private video|"
    r"account .* terminated|http error 410",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class Candidate:
    """
    One fetchable encoding of a track.

    Attributes:
        url: Direct media URL
        format_id: Upstream format tag (itag on YouTube)
        codec: Audio codec name ("opus", "mp4a.40.2", ...)
        container: Container/extension ("webm", "m4a", ...)
        sample_rate: Audio sample rate in Hz, if known
        audio_bitrate: Audio bitrate in kbps, if known
        average_bitrate: Average bitrate in kbps, if known
        peak_bitrate: Explicit peak bitrate tag, None when the upstream omits it
        is_live: Candidate is a live stream
        duration: Media duration in seconds, if known
    """

    url: str
    format_id: str = ""
    codec: str | None = None
    container: str | None = None
    sample_rate: int | None = None
    audio_bitrate: float | None = None
    average_bitrate: float | None = None
    peak_bitrate: float | None = None
    is_live: bool = False
    duration: float | None = None

    @property
    def has_peak_bitrate(self) -> bool:
        return self.peak_bitrate is not None


@dataclass(frozen=True, slots=True)
class ResolvedMedia:
    """Everything the resolver learned about a track URL."""

    candidates: tuple[Candidate, ...]
    duration: float | None = None
    is_live: bool = False


class SourceResolver(Protocol):
    async def resolve(self, url: str) -> ResolvedMedia:
        """
        Look up candidate streams for url.

        Raises:
            FetchFailure: Lookup failed (gone=True if permanently unavailable)
        """
        ...


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class YtDlpResolver:
    """
    SourceResolver backed by yt-dlp metadata extraction.

    extract_info() is blocking, so it runs in the default executor.

    Field mapping from yt-dlp format dicts:
        abr           -> audio_bitrate, average_bitrate
        tbr (muxed)   -> peak_bitrate (only formats that also carry video)
        asr           -> sample_rate
        acodec / ext  -> codec / container

    Formats without audio or without a URL (storyboards, video-only) are dropped.
    """

    DEFAULT_OPTIONS = {
        'quiet': True,
        'no_warnings': True,
        'noplaylist': True,
        'skip_download': True,
        'nocheckcertificate': True,
        'source_address': '0.0.0.0',  # bind to ipv4 since ipv6 addresses cause issues sometimes
    }

    def __init__(self, options: dict | None = None) -> None:
        self._options = {**self.DEFAULT_OPTIONS, **(options or {})}
        self._ytdl = yt_dlp.YoutubeDL(self._options)

    async def resolve(self, url: str) -> ResolvedMedia:
        loop = asyncio.get_running_loop()
        extract = functools.partial(self._ytdl.extract_info, url, download=False)
        try:
            info = await loop.run_in_executor(None, extract)
        except (yt_dlp.utils.DownloadError, yt_dlp.utils.ExtractorError) as e:
            message = _REPORT_FOOTER.sub('', str(e)).strip()
            gone = bool(_GONE_PATTERN.search(message))
            logger.debug(f"resolve failed for {url} (gone={gone}): {message}")
            raise FetchFailure(message, gone=gone) from e

        if info is None:
            raise FetchFailure(f"no metadata returned for {url}")

        if 'entries' in info:
            # take first item from a playlist
            entries = [entry for entry in info['entries'] if entry]
            if not entries:
                raise FetchFailure(f"playlist {url} has no playable entries")
            info = entries[0]

        return self.parse_info(info)

    @staticmethod
    def parse_info(info: dict) -> ResolvedMedia:
        """Convert a yt-dlp info dict into ResolvedMedia."""
        is_live = bool(info.get('is_live'))
        duration = _as_float(info.get('duration'))

        candidates = []
        for fmt in info.get('formats') or []:
            if not fmt.get('url') or fmt.get('acodec') == 'none':
                continue
            has_video = fmt.get('vcodec') not in (None, 'none')
            abr = _as_float(fmt.get('abr'))
            candidates.append(Candidate(
                url=fmt['url'],
                format_id=str(fmt.get('format_id', '')),
                codec=fmt.get('acodec'),
                container=fmt.get('ext'),
                sample_rate=_as_int(fmt.get('asr')),
                audio_bitrate=abr,
                average_bitrate=abr,
                peak_bitrate=_as_float(fmt.get('tbr')) if has_video else None,
                is_live=is_live,
                duration=duration,
            ))

        return ResolvedMedia(candidates=tuple(candidates), duration=duration, is_live=is_live)
