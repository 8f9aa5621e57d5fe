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

"""Persistent per-guild settings."""

import asyncio
import json
import os
import tempfile
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Protocol

from loguru import logger

from core.errors import SettingsNotFound


@dataclass(frozen=True, slots=True)
class GuildSettings:
    """Settings the playback engine reads per guild."""

    seconds_to_wait_after_queue_empties: int = 30


class SettingsProvider(Protocol):
    async def get_settings(self, guild_id: int) -> GuildSettings:
        """
        Raises:
            SettingsNotFound: No settings stored for guild_id
        """
        ...


class GuildSettingsStore:
    """Per-guild settings that persist across bot restarts.

    Stored in guild_settings.json as {"<guild_id>": {...}} with atomic writes.

    Usage:
        await store.load()
        await store.ensure(guild_id)                      # create defaults if missing
        settings = await store.get_settings(guild_id)     # raises SettingsNotFound
        await store.update(guild_id, seconds_to_wait_after_queue_empties=0)

    File safety:
    - In-memory dict is the source of truth after load(); saves never re-read disk
    - Uses atomic temp-file-then-rename pattern
    - A corrupt file is backed up to .json.bak and the store starts empty
    - Unknown fields in an entry are logged and dropped

    Attributes:
        data_path: Directory containing guild_settings.json
        settings_file: Full path to guild_settings.json
        defaults: GuildSettings used by ensure()
    """

    FILENAME = "guild_settings.json"

    def __init__(self, data_path: Path, defaults: GuildSettings | None = None) -> None:
        self.data_path = data_path
        self.settings_file = data_path / self.FILENAME
        self.defaults = defaults or GuildSettings()
        self._settings: dict[int, GuildSettings] = {}
        self._loaded = False
        self._save_lock = asyncio.Lock()

    async def load(self) -> dict[int, GuildSettings]:
        """Load guild settings from disk on startup.

        Returns the loaded mapping for convenience.
        """
        self._settings = {}
        if self.settings_file.exists():
            try:
                content = await asyncio.to_thread(self.settings_file.read_text, encoding='utf-8')
                raw = json.loads(content)
                if not isinstance(raw, dict):
                    raise ValueError("top-level value is not an object")
                for guild_id, entry in raw.items():
                    self._settings[int(guild_id)] = self._parse_entry(entry)
                logger.info(f"restored settings for {len(self._settings)} guilds")
            except (json.JSONDecodeError, ValueError, TypeError, OSError):
                # Preserve corrupted file for debugging
                backup = self.settings_file.with_suffix('.json.bak')
                try:
                    self.settings_file.rename(backup)
                    logger.warning(f"guild settings corrupt, backed up to {backup.name}")
                except OSError:
                    logger.warning("guild settings corrupt, starting empty")
                self._settings = {}
        else:
            logger.info("guild settings file not found, starting empty")
        self._loaded = True
        return dict(self._settings)

    def _parse_entry(self, entry: dict) -> GuildSettings:
        known = {f.name for f in fields(GuildSettings)}
        unknown = set(entry) - known
        if unknown:
            logger.warning(f"ignoring unknown guild setting keys: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in entry.items() if k in known}
        return replace(self.defaults, **values)

    async def get_settings(self, guild_id: int) -> GuildSettings:
        if not self._loaded:
            await self.load()
        try:
            return self._settings[guild_id]
        except KeyError:
            raise SettingsNotFound(guild_id) from None

    async def ensure(self, guild_id: int) -> GuildSettings:
        """Return the guild's settings, creating and saving defaults if missing."""
        if not self._loaded:
            await self.load()
        if guild_id not in self._settings:
            self._settings[guild_id] = self.defaults
            await self.save()
        return self._settings[guild_id]

    async def update(self, guild_id: int, **changes) -> GuildSettings:
        """Change fields for a guild (created from defaults if missing) and save."""
        current = await self.ensure(guild_id)
        updated = replace(current, **changes)
        self._settings[guild_id] = updated
        await self.save()
        return updated

    async def save(self) -> None:
        """Persist all guild settings.

        Lock serializes concurrent saves. Exceptions are logged but not raised.
        """
        async with self._save_lock:
            temp_path = None
            try:
                self.data_path.mkdir(parents=True, exist_ok=True)
                temp_fd, temp_path = tempfile.mkstemp(dir=self.data_path, suffix='.tmp')
                data = {str(guild_id): asdict(s) for guild_id, s in self._settings.items()}
                await asyncio.to_thread(self._write_atomic, temp_fd, temp_path, data)
                logger.debug("guild settings saved")
            except Exception:
                if temp_path:
                    Path(temp_path).unlink(missing_ok=True)
                logger.opt(exception=True).warning(f"failed to save {self.FILENAME}")

    def _write_atomic(self, temp_fd: int, temp_path: str, data: dict) -> None:
        """Synchronous helper for atomic JSON write."""
        # fdopen can fail after mkstemp - close fd manually to prevent leak
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            json.dump(data, f, indent=2)
        Path(temp_path).replace(self.settings_file)
