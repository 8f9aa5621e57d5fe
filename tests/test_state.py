"""GuildSettingsStore persistence."""

import json

import pytest

from core.errors import SettingsNotFound
from utils.state import GuildSettings, GuildSettingsStore


@pytest.fixture
def store(tmp_path):
    return GuildSettingsStore(tmp_path)


async def test_unknown_guild_raises(store):
    with pytest.raises(SettingsNotFound) as excinfo:
        await store.get_settings(42)
    assert excinfo.value.guild_id == 42


async def test_ensure_creates_and_persists_defaults(store, tmp_path):
    settings = await store.ensure(42)

    assert settings == GuildSettings()
    saved = json.loads((tmp_path / "guild_settings.json").read_text(encoding="utf-8"))
    assert saved == {"42": {"seconds_to_wait_after_queue_empties": 30}}


async def test_update_survives_reload(store, tmp_path):
    await store.update(42, seconds_to_wait_after_queue_empties=0)

    reloaded = GuildSettingsStore(tmp_path)
    settings = await reloaded.get_settings(42)

    assert settings.seconds_to_wait_after_queue_empties == 0


async def test_custom_defaults(tmp_path):
    store = GuildSettingsStore(tmp_path, GuildSettings(seconds_to_wait_after_queue_empties=5))
    assert (await store.ensure(7)).seconds_to_wait_after_queue_empties == 5


async def test_corrupt_file_is_backed_up(tmp_path):
    (tmp_path / "guild_settings.json").write_text("{not json", encoding="utf-8")
    store = GuildSettingsStore(tmp_path)

    assert await store.load() == {}
    assert (tmp_path / "guild_settings.json.bak").exists()
    with pytest.raises(SettingsNotFound):
        await store.get_settings(1)


async def test_unknown_keys_are_dropped(tmp_path):
    (tmp_path / "guild_settings.json").write_text(
        json.dumps({"9": {"seconds_to_wait_after_queue_empties": 12, "volume": 80}}),
        encoding="utf-8",
    )
    store = GuildSettingsStore(tmp_path)

    settings = await store.get_settings(9)

    assert settings == GuildSettings(seconds_to_wait_after_queue_empties=12)
