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

"""Configuration management for Encore."""

import asyncio
import copy
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Cache Settings (cache.*):
#   enabled                - Keep transcoded copies of short tracks on disk
#   path                   - Cache directory (relative to the working directory)
#   max_length_seconds     - Longest track (seconds) that is cached (1-86400)
#
# Transcoder Settings (ffmpeg.*):
#   executable             - ffmpeg binary name or path
#   before_options         - Global options placed before the input options
#   reconnect_options      - Input options used for network sources
#   bitrate                - Opus bitrate in kbps when re-encoding (8-512)
#
# Playback Settings (playback.*):
#   idle_wait_seconds      - Default seconds before leaving voice once the queue
#                            runs out (0 = stay connected)
#
# Resolver Settings (resolver.*):
#   format                 - yt-dlp format selector for source lookup
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "cache": {
        "enabled": True,
        "path": "data/cache",
        "max_length_seconds": 1800,
    },
    "ffmpeg": {
        "executable": "ffmpeg",
        "before_options": "-hide_banner -loglevel error -nostdin",
        "reconnect_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5",
        "bitrate": 128,
    },
    "playback": {
        "idle_wait_seconds": 30,
    },
    "resolver": {
        "format": "bestaudio/best",
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

LOG_LEVELS = ("minimal", "verbose", "debug")


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.

    Args:
        user: User-provided config from YAML file
        defaults: Default values to use for missing keys

    Returns:
        Merged config dict with all default keys present
    """
    result = copy.deepcopy(defaults)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load YAML file with defaults and error handling.

    If file doesn't exist or is invalid, returns defaults without error.
    Invalid YAML syntax is logged and defaults are used.
    """
    if not path.exists():
        return copy.deepcopy(defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return copy.deepcopy(defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return copy.deepcopy(defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically with optional header comment.

    Uses temp-file-then-rename pattern to prevent corruption if the bot
    crashes mid-write. Creates parent directories if they don't exist.
    """
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


class ConfigManager:
    """Manages bot configuration from settings.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS (built-in defaults)
    2. settings.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("cache")                  # Get a whole section
        config_manager.get("cache.path")             # Dot notation for nested keys
        config_manager.section("ffmpeg")             # Section dict, never None

    Settings are validated after loading - invalid values are clamped or
    reset to defaults with a warning logged.

    Attributes:
        config_path: Directory containing settings.yaml
        settings: Loaded settings dict (after validation)
    """

    FILENAME = "settings.yaml"

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = {}

    async def load(self) -> None:
        """Load settings from YAML, apply env overrides, validate.

        Generates a missing settings.yaml with default values and a header comment.
        """
        settings_path = self.config_path / self.FILENAME
        self.settings = await asyncio.to_thread(
            load_yaml, settings_path, DEFAULT_SETTINGS
        )

        # Generate if missing
        if not settings_path.exists():
            header = "# Encore Settings\n# Edit these values to customize behavior\n\n"
            try:
                await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
                logger.debug(f"generated {settings_path.name}")
            except OSError:
                logger.opt(exception=True).warning(f"could not write {settings_path.name}")

        # Apply environment overrides and validate ranges
        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        Validation steps:
        1. Section shape: a section that is not a mapping is reset to defaults.
        2. Null-restore: YAML "key:" with no value becomes None; defaults are restored.
        3. Bounded integers: clamps cache length, bitrate and idle wait to valid ranges.
        4. Log level: unknown names fall back to the default.

        Logs warnings for any values that needed correction.
        """
        for section, defaults in DEFAULT_SETTINGS.items():
            sect = self.settings.get(section)
            if not isinstance(sect, dict):
                if sect is not None:
                    logger.warning(f"{section} must be a mapping, using defaults")
                self.settings[section] = copy.deepcopy(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        # Validate and clamp ranged integers
        validations = {
            "cache.max_length_seconds": (1, 86400),
            "ffmpeg.bitrate": (8, 512),
            "playback.idle_wait_seconds": (0, None),  # 0+ (no upper bound)
        }
        for key, (min_val, max_val) in validations.items():
            section, name = key.split(".")
            value = self.settings[section].get(name)
            try:
                v = int(value)
                if max_val is not None:
                    clamped = max(min_val, min(max_val, v))
                    range_str = f"{min_val}-{max_val}"
                else:
                    clamped = max(min_val, v)
                    range_str = f"{min_val}+"
                if clamped != v:
                    logger.warning(f"{key}={v} out of range, clamped to {clamped} (valid: {range_str})")
                self.settings[section][name] = clamped
            except (ValueError, TypeError):
                logger.warning(f"{key}={value!r} invalid, using default")
                self.settings[section][name] = DEFAULT_SETTINGS[section][name]

        level = str(self.settings["logging"].get("level", "")).lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={level!r} invalid, using default")
            level = DEFAULT_SETTINGS["logging"]["level"]
        self.settings["logging"]["level"] = level

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        Environment variables always win over YAML settings, enabling Docker users
        to configure the bot without editing files.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter), where
        setting_key uses dot notation for nested keys (e.g., "cache.path").

        Invalid env var values are logged as warnings and ignored (setting unchanged).
        """
        def non_negative(env_key: str) -> Callable[[str], int]:
            def validate(x: str) -> int:
                v = int(x)
                if v < 0:
                    logger.warning(f"{env_key}={v} out of range, clamped to 0 (valid: 0+)")
                    return 0
                return v
            return validate

        env_map = {
            "CACHE_ENABLED": ("cache.enabled", _as_bool),
            "CACHE_PATH": ("cache.path", str),
            "MAX_CACHE_LENGTH": ("cache.max_length_seconds", int),
            "FFMPEG_PATH": ("ffmpeg.executable", str),
            "IDLE_WAIT_SECONDS": ("playback.idle_wait_seconds", non_negative("IDLE_WAIT_SECONDS")),
            "LOG_LEVEL": ("logging.level", str.lower),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    parts = setting_key.split(".")
                    target = self.settings
                    for part in parts[:-1]:
                        target = target.setdefault(part, {})
                        if not isinstance(target, dict):
                            # Corrupted YAML: expected dict but got scalar
                            logger.warning(f"invalid config structure for {setting_key}")
                            break
                    else:
                        target[parts[-1]] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")

    def get(self, key: str, default=None) -> Any:
        """Get a setting value, using dot notation for nested keys.

        Args:
            key: Setting key (e.g., "cache", "ffmpeg.bitrate")
            default: Value to return if key not found

        Returns:
            Setting value, or default if not found
        """
        target: Any = self.settings
        for part in key.split("."):
            if not isinstance(target, dict) or part not in target:
                return default
            target = target[part]
        return target

    def section(self, name: str) -> dict:
        """Get a settings section as a dict (empty if missing)."""
        value = self.settings.get(name)
        return value if isinstance(value, dict) else {}
