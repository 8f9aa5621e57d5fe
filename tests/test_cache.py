"""ContentCache write-once semantics."""

import pytest

from systems.cache import CacheMiss, ContentCache, cache_key


@pytest.fixture
def cache(tmp_path):
    return ContentCache(tmp_path / "cache")


def test_cache_key_is_sha512_hex():
    key = cache_key("https://media.example/a")
    assert len(key) == 128
    assert key == cache_key("https://media.example/a")
    assert key != cache_key("https://media.example/b")


def test_get_missing_raises_cache_miss(cache):
    with pytest.raises(CacheMiss):
        cache.get("absent")
    # CacheMiss is a KeyError so mapping-style callers can catch it
    assert issubclass(CacheMiss, KeyError)


def test_commit_publishes_blob(cache):
    writer = cache.put("key")
    writer.write(b"abc")
    writer.write(b"def")
    assert not cache.path_for("key").exists()

    writer.commit()

    assert cache.get("key").read_bytes() == b"abcdef"
    assert writer.closed


def test_abort_leaves_nothing(cache):
    writer = cache.put("key")
    writer.write(b"partial")
    writer.abort()

    with pytest.raises(CacheMiss):
        cache.get("key")
    assert list(cache.root.iterdir()) == []


def test_second_writer_for_in_flight_key_is_refused(cache):
    writer = cache.put("key")
    assert cache.put("key") is None
    assert cache.put("other") is not None

    writer.abort()
    assert cache.put("key") is not None


def test_empty_commit_is_discarded(cache):
    writer = cache.put("key")
    writer.commit()

    with pytest.raises(CacheMiss):
        cache.get("key")
    assert list(cache.root.iterdir()) == []


def test_writes_after_close_are_ignored(cache):
    writer = cache.put("key")
    writer.write(b"data")
    writer.commit()
    writer.write(b"more")
    writer.abort()

    assert cache.get("key").read_bytes() == b"data"
