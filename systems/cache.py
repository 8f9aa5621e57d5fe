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
Content Cache

Stores transcoded audio on disk so short, non-live tracks are fetched once.

Entries are write-once and content-derived: the key is a hash of the track URL
and the blob is the transcoder output for the full track. Writers stage into a
temp file beside the cache and atomically rename on commit, so a reader never
sees a half-written blob. An aborted write (track skipped, transcoder failed)
leaves nothing behind.
"""

import hashlib
import os
import tempfile
import threading
from pathlib import Path

from loguru import logger


class CacheMiss(KeyError):
    """No cached blob exists for the requested key."""


def cache_key(url: str) -> str:
    """Derive the cache key for a track URL (SHA-512 hex digest)."""
    return hashlib.sha512(url.encode('utf-8')).hexdigest()


class CacheWriter:
    """
    Write-once sink for one cache entry.

    Usage:
        writer = cache.put(key)
        if writer:
            writer.write(chunk)
            ...
            writer.commit()  # or writer.abort()
    """

    def __init__(self, cache: "ContentCache", key: str) -> None:
        self._cache = cache
        self.key = key
        self.bytes_written = 0
        self._closed = False

        fd, temp_path = tempfile.mkstemp(dir=cache.root, prefix=f".{key[:16]}-", suffix='.tmp')
        self._temp_path = Path(temp_path)
        # fdopen can fail after mkstemp - close fd manually to prevent leak
        try:
            self._file = os.fdopen(fd, 'wb')
        except Exception:
            os.close(fd)
            self._temp_path.unlink(missing_ok=True)
            raise

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            return
        self._file.write(data)
        self.bytes_written += len(data)

    def commit(self) -> None:
        """Publish the staged blob under its key."""
        if self._closed:
            return
        self._closed = True
        try:
            self._file.close()
            if self.bytes_written == 0:
                # An empty blob would shadow the real media forever
                self._temp_path.unlink(missing_ok=True)
                logger.debug(f"discarded empty cache entry {self.key[:12]}")
                return
            self._temp_path.replace(self._cache.path_for(self.key))
            logger.debug(f"cached {self.bytes_written} bytes as {self.key[:12]}")
        except OSError:
            self._temp_path.unlink(missing_ok=True)
            logger.opt(exception=True).warning(f"failed to commit cache entry {self.key[:12]}")
        finally:
            self._cache._release(self.key)

    def abort(self) -> None:
        """Discard the staged blob."""
        if self._closed:
            return
        self._closed = True
        try:
            self._file.close()
        except OSError as e:
            logger.debug(f"closing aborted cache file failed: {e}")
        self._temp_path.unlink(missing_ok=True)
        self._cache._release(self.key)


class ContentCache:
    """
    Directory of cached blobs keyed by content hash.

    get() and put() are blocking filesystem calls; async callers wrap them in
    asyncio.to_thread(). Writers run on the transcoder's reader thread, so the
    in-flight key set is guarded by a threading lock.

    Attributes:
        root: Cache directory (created on construction)
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        return self.root / key

    def get(self, key: str) -> Path:
        """
        Look up a cached blob.

        Raises:
            CacheMiss: No committed entry for key
        """
        path = self.path_for(key)
        if not path.is_file():
            raise CacheMiss(key)
        return path

    def put(self, key: str) -> CacheWriter | None:
        """
        Open a writer for key.

        Returns None when another writer for the same key is still open. That
        guard is best-effort: it only avoids duplicate work in this process.
        """
        with self._lock:
            if key in self._in_flight:
                logger.debug(f"cache write for {key[:12]} already in flight, skipping")
                return None
            self._in_flight.add(key)
        try:
            return CacheWriter(self, key)
        except OSError:
            self._release(key)
            logger.opt(exception=True).warning(f"cannot open cache entry {key[:12]}")
            return None

    def _release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)
