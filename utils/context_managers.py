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
Context Managers for Safe State Management

Provides context managers that guarantee queue state is restored when errors
occur, replacing manual try/except bookkeeping around cursor moves.
"""

from contextlib import contextmanager
from typing import Any


@contextmanager
def cursor_rollback(player: Any, prior: int):
    """
    Restore the queue cursor if the wrapped block fails.

    Usage:
        prior = player.cursor
        player.cursor += skip
        with cursor_rollback(player, prior):
            await player._play()

    The cursor is only restored when nothing inside the block moved it again.
    play() advances past unplayable tracks on its own; undoing that would park
    the queue back on the track that just failed.

    Args:
        player: PlaybackEngine instance with a ``cursor`` attribute
        prior: Cursor value to restore
    """
    moved_to = player.cursor
    try:
        yield
    except Exception:
        if player.cursor == moved_to:
            player.cursor = prior
        raise
