"""Engine registry, position tracking and cursor rollback."""

import asyncio

import pytest

from conftest import FakePipeline, FakeSettings, FakeSink
from core import player as player_module
from core.player import Services, get_player, shutdown_players
from core.playback import PlaybackSession, PositionTracker
from utils.context_managers import cursor_rollback


@pytest.fixture
def services():
    return Services(pipeline=FakePipeline(), sink=FakeSink(), settings=FakeSettings(), tick_interval=3600)


@pytest.fixture(autouse=True)
def empty_registry():
    player_module.players.clear()
    yield
    player_module.players.clear()


async def test_get_player_returns_one_engine_per_guild(services):
    first, second = await asyncio.gather(get_player(1, services), get_player(1, services))
    other = await get_player(2, services)

    assert first is second
    assert other is not first
    assert set(player_module.players) == {1, 2}
    await shutdown_players()


async def test_shutdown_players_clears_registry(services):
    engine = await get_player(1, services)
    await engine.connect(channel="voice-channel")

    await shutdown_players()

    assert player_module.players == {}
    assert engine.voice is None
    assert services.sink.sessions[0].disconnected


async def test_position_tracker_ticks_while_running():
    tracker = PositionTracker(interval=0.01)
    tracker.start(5)
    await asyncio.sleep(0.1)
    tracker.stop()
    frozen = tracker.seconds

    assert frozen > 5
    await asyncio.sleep(0.05)
    assert tracker.seconds == frozen
    assert not tracker.running

    tracker.reset()
    assert tracker.seconds == 0


def test_session_cancel_cancels_token():
    session = PlaybackSession(track_url="https://media.example/a")
    other = PlaybackSession()

    session.cancel()

    assert session.cancelled
    assert session.token.cancelled
    assert other.id != session.id


class _Cursor:
    def __init__(self, cursor):
        self.cursor = cursor


def test_cursor_rollback_restores_on_error():
    holder = _Cursor(3)
    with pytest.raises(RuntimeError):
        with cursor_rollback(holder, 1):
            raise RuntimeError("boom")
    assert holder.cursor == 1


def test_cursor_rollback_keeps_cursor_moved_inside_block():
    holder = _Cursor(3)
    with pytest.raises(RuntimeError):
        with cursor_rollback(holder, 1):
            holder.cursor = 4
            raise RuntimeError("boom")
    assert holder.cursor == 4


def test_cursor_rollback_no_error_keeps_cursor():
    holder = _Cursor(3)
    with cursor_rollback(holder, 1):
        pass
    assert holder.cursor == 3


async def test_position_tracker_restart_replaces_task():
    tracker = PositionTracker(interval=0.01)
    tracker.start(3)
    first = tracker._task

    tracker.start(7)
    await asyncio.gather(first, return_exceptions=True)

    assert first.cancelled()
    assert tracker._task is not first
    assert tracker.running
    assert tracker.seconds >= 7
    tracker.stop()
