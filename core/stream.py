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
Stream Pipeline

Produces a time-bounded webm/opus byte stream for a track.

Resolution order for standard media:
    1. ContentCache hit  -> transcode the cached blob with trim arguments
    2. SourceResolver    -> pick a candidate format, transcode it from the network
                            (reconnect-on-drop), tee the output into the cache
                            when the fetch is cacheable

Live segment tracks skip both and go straight to the transcoder.

The returned AudioStream is a blocking file-like object: the voice sink reads
it from its own audio thread. Closing the stream, or cancelling the
CancelToken it was opened with, kills the transcoder immediately.
"""

import asyncio
import shlex
import subprocess
import threading
from typing import Callable

from loguru import logger

from core.errors import NoSuitableFormat, TranscodeFailure
from core.track import MediaSource, Track
from systems.cache import CacheMiss, CacheWriter, ContentCache, cache_key
from systems.resolver import Candidate, ResolvedMedia, SourceResolver

# =============================================================================
# FORMAT SELECTION
# =============================================================================

# Codec/container/sample-rate the voice sink consumes without re-encoding
TARGET_CODEC = 'opus'
TARGET_CONTAINER = 'webm'
TARGET_SAMPLE_RATE = 48000

# Format tags accepted for live content (HLS audio tiers)
LIVE_FORMAT_TIERS = (128, 127, 120, 96, 95, 94, 93)

# Longest source (seconds) that will be written to the cache
MAX_CACHE_LENGTH_SECONDS = 30 * 60

# Output format handed to the voice sink
STREAM_FORMAT = 'webm'


def is_target_format(candidate: Candidate) -> bool:
    """True if the candidate is already opus in webm at 48kHz."""
    return (
        candidate.codec == TARGET_CODEC
        and candidate.container == TARGET_CONTAINER
        and candidate.sample_rate == TARGET_SAMPLE_RATE
    )


def _format_tier(candidate: Candidate) -> int | None:
    try:
        return int(candidate.format_id)
    except (TypeError, ValueError):
        return None


def select_format(candidates: tuple[Candidate, ...] | list[Candidate], *, live: bool) -> Candidate | None:
    """
    Pick the candidate to stream.

    Selection order:
        1. First candidate already in the target format (no re-encode needed)
        2. Live: highest audio bitrate whose format tag is in LIVE_FORMAT_TIERS
        3. Otherwise: among candidates with a known average bitrate, sorted by
           average bitrate (descending), the first one without an explicit
           peak bitrate tag, else the highest
        4. None if nothing qualifies

    Args:
        candidates: Formats returned by the resolver
        live: Whether the content is a live broadcast

    Returns:
        Chosen Candidate, or None
    """
    exact = next((c for c in candidates if is_target_format(c)), None)
    if exact:
        return exact

    if not candidates:
        return None

    if live:
        ranked = sorted(candidates, key=lambda c: c.audio_bitrate or 0, reverse=True)
        return next((c for c in ranked if _format_tier(c) in LIVE_FORMAT_TIERS), None)

    ranked = sorted(
        (c for c in candidates if c.average_bitrate),
        key=lambda c: c.average_bitrate,
        reverse=True,
    )
    if not ranked:
        return None
    return next((c for c in ranked if not c.has_peak_bitrate), ranked[0])


def is_cacheable(
    media: ResolvedMedia,
    seek: float | None = None,
    stop_at: float | None = None,
    max_length: float = MAX_CACHE_LENGTH_SECONDS,
) -> bool:
    """
    Decide whether a fetch may populate the cache.

    Only full, non-live fetches of media shorter than max_length qualify.
    Partial fetches (seek or stop bound) would cache a truncated blob.
    """
    if media.is_live or media.duration is None:
        return False
    return media.duration < max_length and not seek and not stop_at


# =============================================================================
# CANCELLATION
# =============================================================================

class CancelToken:
    """
    One-shot cancellation signal shared between the engine and a stream.

    Callbacks registered after cancellation run immediately. Safe to use from
    any thread.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.opt(exception=True).warning("cancel callback failed")


# =============================================================================
# AUDIO STREAM
# =============================================================================

class AudioStream:
    """
    Readable transcoder output, optionally tee'd into a cache entry.

    read() is blocking and meant for the voice sink's audio thread. Each chunk
    handed to the reader is also written to the cache writer; the entry is
    committed only when the transcoder exits cleanly without the stream having
    been closed first.

    Error handling:
        - Transcoder exits non-zero while the stream is open -> TranscodeFailure
        - Anything after close() -> read() returns b'' (late errors are ignored)
    """

    CHUNK_SIZE = 8192

    def __init__(
        self,
        process: subprocess.Popen,
        *,
        label: str = "",
        token: CancelToken | None = None,
        cache_writer: CacheWriter | None = None,
    ) -> None:
        self._process = process
        self.label = label
        self._cache_writer = cache_writer
        self._closed = False
        self._finished = False
        self._lock = threading.Lock()
        self.token = token or CancelToken()
        self.token.add_callback(self.close)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    def read(self, size: int = -1) -> bytes:
        if self._closed or self._finished:
            return b''

        try:
            data = self._process.stdout.read1(size if size > 0 else self.CHUNK_SIZE)
        except (OSError, ValueError) as e:
            # Pipe torn down by close() on another thread
            if self._closed:
                return b''
            raise TranscodeFailure(f"reading transcoder output failed: {e}") from e

        if data:
            self._tee(data)
            return data

        self._finish()
        return b''

    def _tee(self, data: bytes) -> None:
        with self._lock:
            writer = self._cache_writer
            if writer is None:
                return
            try:
                writer.write(data)
            except (OSError, ValueError):
                logger.opt(exception=True).warning(f"cache write failed for {self.label}, dropping entry")
                writer.abort()
                self._cache_writer = None

    def _finish(self) -> None:
        """Reap the transcoder at EOF and settle the cache entry."""
        returncode = self._process.wait()
        with self._lock:
            if self._finished:
                return
            self._finished = True
            writer, self._cache_writer = self._cache_writer, None
            closed = self._closed

        if closed:
            if writer:
                writer.abort()
            return

        if returncode != 0:
            if writer:
                writer.abort()
            logger.warning(f"transcoder for {self.label} exited with code {returncode}")
            raise TranscodeFailure(f"transcoder exited with code {returncode}")

        if writer:
            writer.commit()

    def close(self) -> None:
        """Kill the transcoder (SIGKILL) and discard any partial cache entry."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            writer, self._cache_writer = self._cache_writer, None

        if writer:
            writer.abort()

        if self._process.poll() is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            logger.debug(f"killed transcoder for {self.label} (pid {self._process.pid})")
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"transcoder pid {self._process.pid} did not exit after kill")

        if self._process.stdout:
            try:
                self._process.stdout.close()
            except (OSError, ValueError):
                pass

        self.token.cancel()

    def __enter__(self) -> "AudioStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# =============================================================================
# PIPELINE
# =============================================================================

class StreamPipeline:
    """
    Builds AudioStreams for tracks.

    Args:
        resolver: SourceResolver for cache misses
        cache: ContentCache, or None to disable caching
        executable: ffmpeg binary
        before_options: Global ffmpeg options placed before input options
        reconnect_options: Input options used for network sources
        bitrate: Opus bitrate (kbps) when re-encoding
        max_cache_length: Longest cacheable source in seconds
    """

    def __init__(
        self,
        resolver: SourceResolver,
        cache: ContentCache | None = None,
        *,
        executable: str = 'ffmpeg',
        before_options: str = '-hide_banner -loglevel error -nostdin',
        reconnect_options: str = '-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5',
        bitrate: int = 128,
        max_cache_length: float = MAX_CACHE_LENGTH_SECONDS,
    ) -> None:
        self.resolver = resolver
        self.cache = cache
        self.executable = executable
        self.before_options = before_options
        self.reconnect_options = reconnect_options
        self.bitrate = bitrate
        self.max_cache_length = max_cache_length

    async def get_stream(
        self,
        track: Track,
        seek: float | None = None,
        stop_at: float | None = None,
        token: CancelToken | None = None,
    ) -> AudioStream:
        """
        Open a stream for track.

        Args:
            track: Track to stream
            seek: Start position in source seconds
            stop_at: End position in source seconds
            token: Cancellation token; cancelling kills the transcoder

        Raises:
            FetchFailure: Resolver lookup failed
            NoSuitableFormat: No candidate survived selection
            TranscodeFailure: Transcoder could not be started
        """
        token = token or CancelToken()

        if track.source is MediaSource.LIVE_SEGMENT:
            # Already a playable stream - pace input in real time, no trim or cache
            return self._spawn(track.url, ['-re'], token=token, label=track.display_name)

        trim = self.trim_options(seek, stop_at)
        key = cache_key(track.url)

        if self.cache is not None:
            try:
                cached = await asyncio.to_thread(self.cache.get, key)
            except CacheMiss:
                logger.debug(f"cache miss for {track.display_name}")
            else:
                logger.debug(f"cache hit for {track.display_name}")
                return self._spawn(str(cached), trim, token=token, codec='copy', label=track.display_name)

        media = await self.resolver.resolve(track.url)
        candidate = select_format(media.candidates, live=track.is_live or media.is_live)
        if candidate is None:
            raise NoSuitableFormat(track.url)

        writer = None
        if self.cache is not None and is_cacheable(media, seek, stop_at, self.max_cache_length):
            writer = await asyncio.to_thread(self.cache.put, key)

        input_options = [*shlex.split(self.reconnect_options), *trim]
        codec = 'copy' if is_target_format(candidate) else 'libopus'
        logger.debug(
            f"streaming {track.display_name} via format {candidate.format_id or '?'} "
            f"({codec}, cache={'yes' if writer else 'no'})"
        )
        return self._spawn(
            candidate.url, input_options,
            token=token, codec=codec, cache_writer=writer, label=track.display_name,
        )

    @staticmethod
    def trim_options(seek: float | None, stop_at: float | None) -> list[str]:
        """Input options bounding the decoded window."""
        options = []
        if seek:
            options += ['-ss', f'{seek:g}']
        if stop_at:
            options += ['-to', f'{stop_at:g}']
        return options

    def build_args(self, source: str, input_options: list[str], codec: str = 'libopus') -> list[str]:
        """Full transcoder command line: strip video, opus audio in webm on stdout."""
        args = [self.executable, *shlex.split(self.before_options), *input_options, '-i', source, '-vn']
        if codec == 'copy':
            args += ['-c:a', 'copy']
        else:
            args += ['-c:a', 'libopus', '-b:a', f'{self.bitrate}k', '-ar', str(TARGET_SAMPLE_RATE), '-ac', '2']
        args += ['-f', STREAM_FORMAT, 'pipe:1']
        return args

    def _spawn(
        self,
        source: str,
        input_options: list[str],
        *,
        token: CancelToken,
        codec: str = 'libopus',
        cache_writer: CacheWriter | None = None,
        label: str = "",
    ) -> AudioStream:
        args = self.build_args(source, input_options, codec)
        try:
            process = subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE)
        except OSError as e:
            if cache_writer:
                cache_writer.abort()
            raise TranscodeFailure(f"could not start {self.executable}: {e}") from e

        logger.debug(f"spawned transcoder pid {process.pid} for {label}")
        return AudioStream(process, label=label, token=token, cache_writer=cache_writer)
