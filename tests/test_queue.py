"""Queue bookkeeping: enqueue, shuffle, clear, remove, move and cursor bounds."""

from collections import Counter

import pytest

from conftest import make_track
from core.errors import IndexOutOfRange, NoMoreTracks, NoPreviousTrack
from core.track import QueuedPlaylist
from systems.voice_manager import PlaybackState


def fill(engine, *names):
    tracks = [make_track(name) for name in names]
    for track in tracks:
        engine.enqueue(track)
    return tracks


def assert_cursor_in_bounds(engine):
    assert 0 <= engine.cursor <= len(engine.queue)


async def test_enqueue_appends_by_default(engine):
    a, b = fill(engine, "a", "b")
    c = make_track("c")
    engine.enqueue(c)
    assert engine.queue == [a, b, c]


async def test_enqueue_immediate_inserts_after_cursor(engine):
    a, b, c = fill(engine, "a", "b", "c")
    engine.cursor = 1
    urgent = make_track("urgent")
    engine.enqueue(urgent, immediate=True)
    assert engine.queue.index(urgent) == 2
    assert engine.get_upcoming()[0] == urgent


async def test_enqueue_immediate_playlist_track_still_appends(engine):
    fill(engine, "a", "b")
    from_playlist = make_track("p", playlist=QueuedPlaylist("mix", "https://media.example/list"))
    engine.enqueue(from_playlist, immediate=True)
    assert engine.queue[-1] == from_playlist


async def test_shuffle_keeps_played_and_current(engine):
    tracks = fill(engine, *"abcdefghij")
    engine.cursor = 3
    before_upcoming = Counter(t.url for t in engine.get_upcoming())

    for _ in range(5):
        engine.shuffle()
        assert engine.queue[:4] == tracks[:4]
        assert Counter(t.url for t in engine.get_upcoming()) == before_upcoming
        assert_cursor_in_bounds(engine)


async def test_clear_keeps_only_current(engine):
    a, b, c = fill(engine, "a", "b", "c")
    engine.cursor = 1
    engine.clear()
    assert engine.queue == [b]
    assert engine.cursor == 0


async def test_clear_without_current_empties_queue(engine):
    fill(engine, "a")
    engine.cursor = 1
    engine.clear()
    assert engine.queue == []
    assert engine.cursor == 0


async def test_remove_at_counts_from_next_track(engine):
    a, b, c, d, e = fill(engine, "a", "b", "c", "d", "e")
    engine.cursor = 1
    engine.remove_at(1, count=2)
    assert engine.queue == [a, b, c]
    assert_cursor_in_bounds(engine)


async def test_remove_current_slides_next_under_cursor(engine):
    a, b, c = fill(engine, "a", "b", "c")
    engine.cursor = 1
    engine.remove_current()
    assert engine.cursor == 1
    assert engine.get_current() == c


async def test_remove_current_on_last_track_keeps_bounds(engine):
    fill(engine, "a")
    engine.remove_current()
    assert engine.queue == []
    assert engine.get_current() is None
    assert_cursor_in_bounds(engine)


async def test_move_uses_one_based_upcoming_positions(engine):
    a, b, c, d = fill(engine, "a", "b", "c", "d")
    moved = engine.move(3, 1)
    assert moved == d
    assert engine.get_upcoming() == (d, b, c)
    assert engine.get_current() == a


@pytest.mark.parametrize("from_pos,to_pos", [(0, 1), (1, 0), (4, 1), (1, 4)])
async def test_move_out_of_range(engine, from_pos, to_pos):
    fill(engine, "a", "b", "c", "d")
    before = list(engine.queue)
    with pytest.raises(IndexOutOfRange):
        engine.move(from_pos, to_pos)
    assert engine.queue == before


async def test_upcoming_excludes_current(engine):
    a, b, c = fill(engine, "a", "b", "c")
    assert engine.get_upcoming() == (b, c)
    assert engine.queue_size() == 2
    engine.cursor = 2
    assert engine.is_queue_empty()


async def test_forward_past_end_raises_and_keeps_cursor(engine):
    fill(engine, "a", "b")
    with pytest.raises(NoMoreTracks):
        await engine.forward(3)
    assert engine.cursor == 0


async def test_back_at_start_raises_and_keeps_state(engine):
    fill(engine, "a", "b")
    with pytest.raises(NoPreviousTrack):
        await engine.back()
    assert engine.cursor == 0
    assert engine.state is PlaybackState.IDLE
