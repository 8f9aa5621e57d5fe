"""AudioStream and StreamPipeline against a real child process.

A small Python script stands in for ffmpeg: it echoes the arguments it was
given as JSON on stdout, so tests can check both the command line and the
cache tee without ffmpeg installed.
"""

import json
import shlex
import subprocess
import sys

import pytest

from conftest import make_track
from core.errors import FetchFailure, NoSuitableFormat, TranscodeFailure
from core.stream import AudioStream, CancelToken, StreamPipeline
from core.track import MediaSource
from systems.cache import ContentCache, cache_key
from systems.resolver import Candidate, ResolvedMedia

ECHO_ARGS = "import json, sys\nsys.stdout.buffer.write(json.dumps(sys.argv[1:]).encode())\n"


def spawn(code: str) -> subprocess.Popen:
    return subprocess.Popen([sys.executable, '-c', code], stdin=subprocess.DEVNULL, stdout=subprocess.PIPE)


def drain(stream: AudioStream) -> bytes:
    chunks = []
    while chunk := stream.read(4096):
        chunks.append(chunk)
    return b''.join(chunks)


class StubResolver:
    def __init__(self, media=None, error=None):
        self.media = media
        self.error = error
        self.calls = []

    async def resolve(self, url):
        self.calls.append(url)
        if self.error:
            raise self.error
        return self.media


def media_for(url="https://cdn.example/audio", duration=200.0, **kwargs):
    candidate = Candidate(url=url, format_id="140", codec="mp4a.40.2", container="m4a",
                          sample_rate=44100, average_bitrate=128)
    return ResolvedMedia((candidate,), duration=duration, **kwargs)


@pytest.fixture
def cache(tmp_path):
    return ContentCache(tmp_path / "cache")


@pytest.fixture
def echo_pipeline(tmp_path, cache):
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(ECHO_ARGS)

    def build(resolver, **kwargs):
        return StreamPipeline(
            resolver, cache,
            executable=sys.executable,
            before_options=shlex.quote(str(script)),
            **kwargs,
        )
    return build


# =============================================================================
# AudioStream
# =============================================================================

def test_stream_reads_to_eof_and_commits_cache(cache):
    writer = cache.put("key")
    stream = AudioStream(spawn("import sys; sys.stdout.buffer.write(b'x' * 20000)"), cache_writer=writer)

    data = drain(stream)

    assert len(data) == 20000
    assert stream.returncode == 0
    assert cache.get("key").read_bytes() == data


def test_stream_nonzero_exit_raises_and_discards_cache(cache):
    writer = cache.put("key")
    stream = AudioStream(
        spawn("import sys; sys.stdout.buffer.write(b'partial'); sys.stdout.flush(); sys.exit(3)"),
        cache_writer=writer,
    )

    with pytest.raises(TranscodeFailure):
        drain(stream)

    assert not cache.path_for("key").exists()
    assert cache.put("key") is not None


def test_close_kills_transcoder_and_discards_cache(cache):
    writer = cache.put("key")
    stream = AudioStream(spawn("import time; time.sleep(60)"), cache_writer=writer)

    stream.close()

    assert stream.closed
    assert stream.returncode is not None
    assert stream.read() == b''
    assert list(cache.root.iterdir()) == []


def test_cancel_token_closes_stream():
    token = CancelToken()
    stream = AudioStream(spawn("import time; time.sleep(60)"), token=token)

    token.cancel()

    assert stream.closed
    assert stream.returncode is not None


def test_token_cancelled_before_open_closes_immediately():
    token = CancelToken()
    token.cancel()
    stream = AudioStream(spawn("import time; time.sleep(60)"), token=token)
    assert stream.closed


def test_context_manager_closes():
    with AudioStream(spawn("import time; time.sleep(60)")) as stream:
        pid = stream.pid
    assert pid
    assert stream.closed


# =============================================================================
# StreamPipeline
# =============================================================================

async def test_cache_miss_resolves_and_tees_into_cache(echo_pipeline, cache):
    resolver = StubResolver(media_for())
    pipeline = echo_pipeline(resolver)
    track = make_track("a")

    stream = await pipeline.get_stream(track)
    args = json.loads(drain(stream))

    assert resolver.calls == [track.url]
    assert '-reconnect' in args
    assert args[args.index('-i') + 1] == "https://cdn.example/audio"
    assert args[args.index('-c:a') + 1] == 'libopus'
    assert cache.get(cache_key(track.url)).exists()


async def test_cache_hit_skips_resolver_and_copies(echo_pipeline, cache):
    resolver = StubResolver(media_for())
    pipeline = echo_pipeline(resolver)
    track = make_track("a")
    drain(await pipeline.get_stream(track))

    args = json.loads(drain(await pipeline.get_stream(track, seek=30)))

    assert len(resolver.calls) == 1
    assert args[args.index('-i') + 1] == str(cache.path_for(cache_key(track.url)))
    assert args[args.index('-c:a') + 1] == 'copy'
    assert args[args.index('-ss') + 1] == '30'
    assert '-reconnect' not in args


async def test_partial_fetch_is_not_cached(echo_pipeline, cache):
    pipeline = echo_pipeline(StubResolver(media_for()))
    track = make_track("a")

    args = json.loads(drain(await pipeline.get_stream(track, seek=30, stop_at=90)))

    assert args[args.index('-ss') + 1] == '30'
    assert args[args.index('-to') + 1] == '90'
    assert not cache.path_for(cache_key(track.url)).exists()


async def test_long_media_is_not_cached(echo_pipeline, cache):
    pipeline = echo_pipeline(StubResolver(media_for(duration=3600)))
    track = make_track("long", 3600)

    drain(await pipeline.get_stream(track))

    assert not cache.path_for(cache_key(track.url)).exists()


async def test_live_segment_bypasses_resolver_and_cache(echo_pipeline, cache):
    resolver = StubResolver(media_for())
    pipeline = echo_pipeline(resolver)
    track = make_track("radio", 0, is_live=True, source=MediaSource.LIVE_SEGMENT)

    args = json.loads(drain(await pipeline.get_stream(track, seek=10)))

    assert resolver.calls == []
    assert '-re' in args
    assert '-reconnect' not in args
    assert '-ss' not in args
    assert args[args.index('-i') + 1] == track.url
    assert list(cache.root.iterdir()) == []


async def test_no_suitable_format(echo_pipeline):
    pipeline = echo_pipeline(StubResolver(ResolvedMedia((), duration=100)))
    with pytest.raises(NoSuitableFormat):
        await pipeline.get_stream(make_track("a"))


async def test_resolver_failure_propagates(echo_pipeline):
    pipeline = echo_pipeline(StubResolver(error=FetchFailure("Video unavailable", gone=True)))
    with pytest.raises(FetchFailure) as excinfo:
        await pipeline.get_stream(make_track("a"))
    assert excinfo.value.gone


async def test_missing_executable_is_transcode_failure(cache):
    pipeline = StreamPipeline(StubResolver(media_for()), cache, executable="/nonexistent/ffmpeg")
    with pytest.raises(TranscodeFailure):
        await pipeline.get_stream(make_track("a"))
    # Staged cache entry was discarded along with the failed spawn
    assert list(cache.root.iterdir()) == []


async def test_token_kills_pipeline_stream(cache, tmp_path):
    script = tmp_path / "slow.py"
    script.write_text("import time\ntime.sleep(60)\n")
    pipeline = StreamPipeline(StubResolver(media_for()), cache,
                              executable=sys.executable, before_options=shlex.quote(str(script)))
    token = CancelToken()

    stream = await pipeline.get_stream(make_track("a"), token=token)
    token.cancel()

    assert stream.closed
    assert stream.returncode is not None
    assert list(cache.root.iterdir()) == []
