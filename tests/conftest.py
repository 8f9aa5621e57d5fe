"""Shared fixtures and collaborator fakes for the playback engine tests."""

import pytest

from core.errors import SettingsNotFound
from core.player import PlaybackEngine
from core.track import Track
from utils.state import GuildSettings

GUILD_ID = 1234


def make_track(name: str, length: float = 180, **kwargs) -> Track:
    return Track(
        title=name,
        artist="artist",
        url=f"https://media.example/{name}",
        length=length,
        **kwargs,
    )


class FakeStream:
    def __init__(self, track, seek, stop_at, token):
        self.track = track
        self.seek = seek
        self.stop_at = stop_at
        self.token = token
        self.closed = False
        token.add_callback(self.close)

    def close(self):
        self.closed = True


class FakePipeline:
    """Records get_stream calls; errors can be scripted per track URL."""

    def __init__(self):
        self.calls = []
        self.streams = []
        self.errors = {}

    async def get_stream(self, track, seek=None, stop_at=None, token=None):
        self.calls.append((track, seek, stop_at))
        error = self.errors.get(track.url)
        if error is not None:
            raise error
        stream = FakeStream(track, seek, stop_at, token)
        self.streams.append(stream)
        return stream


class FakeVoiceSession:
    def __init__(self):
        self.calls = []
        self.sessions = []
        self.disconnected = False

    @property
    def is_connected(self):
        return not self.disconnected

    def play(self, stream, fmt, session):
        self.calls.append(("play", stream, fmt))
        self.sessions.append(session)
        return object()

    def pause(self):
        self.calls.append(("pause",))

    def unpause(self):
        self.calls.append(("unpause",))

    def stop(self):
        self.calls.append(("stop",))

    async def disconnect(self):
        self.calls.append(("disconnect",))
        self.disconnected = True

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class FakeSink:
    def __init__(self):
        self.sessions = []
        self.emit = None

    async def bind(self, channel, emit):
        self.emit = emit
        session = FakeVoiceSession()
        self.sessions.append(session)
        return session


class FakeSettings:
    def __init__(self, wait=30):
        self.settings = {GUILD_ID: GuildSettings(seconds_to_wait_after_queue_empties=wait)}

    async def get_settings(self, guild_id):
        try:
            return self.settings[guild_id]
        except KeyError:
            raise SettingsNotFound(guild_id) from None


@pytest.fixture
def pipeline():
    return FakePipeline()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def settings():
    return FakeSettings()


@pytest.fixture
async def engine(pipeline, sink, settings):
    # Long tick interval keeps the position counter still during a test
    player = PlaybackEngine(GUILD_ID, pipeline, sink, settings, tick_interval=3600)
    player.start()
    yield player
    await player.shutdown()


@pytest.fixture
async def connected(engine):
    await engine.connect(channel="voice-channel")
    return engine


@pytest.fixture
def voice(connected, sink):
    return sink.sessions[-1]
