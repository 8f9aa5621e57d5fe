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
Logging Setup

Single stderr sink through loguru with 4-character level names for clean,
aligned logs. Library logs (disnake, yt-dlp's stdlib loggers) are routed into
the same sink.
"""

import logging
import sys

from loguru import logger

# Config vocabulary -> loguru level
LEVEL_MAP = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}

# CAUTION: Changing LEVEL_NAMES may break log parsing or monitoring tools.
LEVEL_NAMES = {
    "TRACE": "TRCE",
    "DEBUG": "DBUG",
    "INFO": "INFO",
    "NOTICE": "NOTE",
    "SUCCESS": "GOOD",
    "WARNING": "WARN",
    "ERROR": "FAIL",
    "CRITICAL": "CRIT",
}

NOTICE_LEVEL = "NOTICE"
NOTICE_NO = 25  # between INFO (20) and WARNING (30)

# Third-party loggers that are chatty at INFO
LIBRARY_LOGGERS = ("disnake", "disnake.player", "disnake.voice_state", "disnake.gateway")


def _format(record) -> str:
    short = LEVEL_NAMES.get(record["level"].name, record["level"].name[:4])
    line = "[{time:YYYY-MM-DD HH:mm:ss}] [" + short + "] {name}: {message}\n"
    if record["exception"]:
        line += "{exception}"
    return line


class _LibraryHandler(logging.Handler):
    """Forward stdlib log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "verbose", *, suppress_library_logs: bool = True) -> str:
    """
    Configure loguru for the bot.

    Args:
        level: "minimal", "verbose" or "debug" (unknown values mean "verbose")
        suppress_library_logs: Keep disnake loggers at WARNING

    Returns:
        The loguru level name that was applied
    """
    loguru_level = LEVEL_MAP.get(str(level).lower(), "INFO")

    try:
        logger.level(NOTICE_LEVEL)
    except ValueError:
        logger.level(NOTICE_LEVEL, no=NOTICE_NO, color="<cyan><bold>")

    logger.remove()
    logger.add(sys.stderr, level=loguru_level, format=_format, backtrace=False, diagnose=False)

    library_level = logging.WARNING if suppress_library_logs else logging.getLevelName(loguru_level)
    for name in LIBRARY_LOGGERS:
        lib_logger = logging.getLogger(name)
        lib_logger.handlers = [_LibraryHandler()]
        lib_logger.setLevel(library_level)
        lib_logger.propagate = False

    return loguru_level
