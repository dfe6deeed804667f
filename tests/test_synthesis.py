import asyncio
import json
import os
import stat

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from ari_orchestrator.audio.synthesis import SpeechSynthesizer
from ari_orchestrator.config import SynthesisConfig
from ari_orchestrator.errors import SynthesisError, SynthesisFailure


def _leftovers(directory):
    return sorted(
        name for name in os.listdir(directory)
        if name.startswith("payload_") or name.endswith("_raw.mp3")
    )


def _synth(tmp_path, **overrides):
    config = SynthesisConfig(api_key="test-key", **overrides)
    return SpeechSynthesizer(config, str(tmp_path))


def _install_fakes(synth, write_wav, *, raw=b"\xff" * 2048, seconds=1.0, transcode_error=None):
    seen = {}

    async def fake_fetch(request):
        with open(request.payload_path) as f:
            seen["payload"] = json.load(f)
        with open(request.raw_path, "wb") as f:
            f.write(raw)

    async def fake_transcode(source, destination):
        seen["source"] = source
        write_wav(destination, seconds=seconds)
        if transcode_error:
            raise transcode_error

    synth._fetch_raw_audio = fake_fetch
    synth._transcode = fake_transcode
    return seen


@pytest.mark.asyncio
async def test_synthesize_produces_single_valid_artifact(tmp_path, make_wav):
    synth = _synth(tmp_path)
    seen = _install_fakes(synth, make_wav)
    dest = synth.path_for("reply_1")

    await synth.synthesize("Hi there!", dest)

    assert os.path.exists(dest)
    assert stat.S_IMODE(os.stat(dest).st_mode) == 0o644
    assert _leftovers(tmp_path) == []
    assert seen["payload"] == {
        "text": "Hi there!",
        "model_id": "eleven_monolingual_v1",
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
    }
    assert seen["source"].endswith("reply_1_raw.mp3")


@pytest.mark.asyncio
async def test_resynthesis_overwrites_destination(tmp_path, make_wav):
    synth = _synth(tmp_path)
    dest = synth.path_for("greeting")

    _install_fakes(synth, make_wav, seconds=1.0)
    await synth.synthesize("first", dest)
    first_size = os.path.getsize(dest)

    _install_fakes(synth, make_wav, seconds=2.0)
    await synth.synthesize("second", dest)

    assert os.path.getsize(dest) > first_size
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_transcode_failure_removes_partial_output(tmp_path, make_wav):
    synth = _synth(tmp_path)
    _install_fakes(
        synth,
        make_wav,
        transcode_error=SynthesisError(SynthesisFailure.TRANSCODE_FAILURE, "ffmpeg exited with 1"),
    )
    dest = synth.path_for("reply_2")

    with pytest.raises(SynthesisError) as exc_info:
        await synth.synthesize("hello", dest)

    assert exc_info.value.kind == SynthesisFailure.TRANSCODE_FAILURE
    assert not os.path.exists(dest)
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_short_audio_fails_validation(tmp_path, make_wav):
    synth = _synth(tmp_path)
    _install_fakes(synth, make_wav, seconds=0.2)
    dest = synth.path_for("reply_3")

    with pytest.raises(SynthesisError) as exc_info:
        await synth.synthesize("hm", dest)

    assert exc_info.value.kind == SynthesisFailure.VALIDATION_FAILURE
    assert not os.path.exists(dest)


@pytest.mark.asyncio
async def test_missing_transcoder_binary(tmp_path):
    synth = _synth(tmp_path, transcoder=str(tmp_path / "no-such-ffmpeg"))
    raw = tmp_path / "x_raw.mp3"
    raw.write_bytes(b"\xff" * 2048)

    with pytest.raises(SynthesisError) as exc_info:
        await synth._transcode(str(raw), str(tmp_path / "x.wav"))

    assert exc_info.value.kind == SynthesisFailure.TRANSCODE_FAILURE


class _FakeProvider:
    """Minimal stand-in for the TTS streaming endpoint."""

    def __init__(self, status=200, body=b"\xff" * 4096):
        self.status = status
        self.body = body
        self.requests = []

    def app(self):
        app = web.Application()
        app.router.add_post("/v1/text-to-speech/{voice_id}/stream", self.handle)
        return app

    async def handle(self, request):
        self.requests.append({
            "voice_id": request.match_info["voice_id"],
            "api_key": request.headers.get("xi-api-key"),
            "json": await request.json(),
        })
        return web.Response(status=self.status, body=self.body)


async def _serve(provider):
    server = TestServer(provider.app())
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_provider_request_streams_raw_audio(tmp_path, make_wav):
    provider = _FakeProvider()
    server = await _serve(provider)
    synth = _synth(tmp_path, base_url=str(server.make_url("")), voice_id="voice-abc")

    async def fake_transcode(source, destination):
        assert os.path.getsize(source) == 4096
        make_wav(destination)

    synth._transcode = fake_transcode
    try:
        await synth.synthesize("Good morning!", synth.path_for("greeting_good_morning"))
    finally:
        await synth.stop()
        await server.close()

    assert provider.requests[0]["voice_id"] == "voice-abc"
    assert provider.requests[0]["api_key"] == "test-key"
    assert provider.requests[0]["json"]["text"] == "Good morning!"
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_undersized_provider_body_is_provider_failure(tmp_path):
    provider = _FakeProvider(body=b'{"detail": "quota_exceeded"}')
    server = await _serve(provider)
    synth = _synth(tmp_path, base_url=str(server.make_url("")))
    dest = synth.path_for("reply_1")
    try:
        with pytest.raises(SynthesisError) as exc_info:
            await synth.synthesize("hello", dest)
    finally:
        await synth.stop()
        await server.close()

    assert exc_info.value.kind == SynthesisFailure.PROVIDER_FAILURE
    assert "quota_exceeded" in exc_info.value.message
    assert not os.path.exists(dest)
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_provider_http_error(tmp_path):
    provider = _FakeProvider(status=401, body=b"invalid api key")
    server = await _serve(provider)
    synth = _synth(tmp_path, base_url=str(server.make_url("")))
    try:
        with pytest.raises(SynthesisError) as exc_info:
            await synth.synthesize("hello", synth.path_for("reply_1"))
    finally:
        await synth.stop()
        await server.close()

    assert exc_info.value.kind == SynthesisFailure.PROVIDER_FAILURE
    assert "401" in exc_info.value.message


@pytest.mark.asyncio
async def test_chmod_failure_is_permission_failure(tmp_path, make_wav, monkeypatch):
    synth = _synth(tmp_path)
    _install_fakes(synth, make_wav)
    dest = synth.path_for("reply_4")

    def refuse_chmod(path, mode):
        raise PermissionError(1, "Operation not permitted", path)

    monkeypatch.setattr(os, "chmod", refuse_chmod)

    with pytest.raises(SynthesisError) as exc_info:
        await synth.synthesize("hello", dest)

    assert exc_info.value.kind == SynthesisFailure.PERMISSION_FAILURE
    assert not os.path.exists(dest)
    assert _leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_unreadable_payload_is_provider_failure(tmp_path):
    synth = _synth(tmp_path, base_url="http://127.0.0.1:9")
    synth._write_payload = lambda request: None
    dest = synth.path_for("reply_5")
    try:
        with pytest.raises(SynthesisError) as exc_info:
            await synth.synthesize("hello", dest)
    finally:
        await synth.stop()

    assert exc_info.value.kind == SynthesisFailure.PROVIDER_FAILURE
    assert "cannot read payload" in exc_info.value.message
    assert not os.path.exists(dest)


@pytest.mark.asyncio
async def test_cancelled_transcode_kills_transcoder(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    slow_ffmpeg = bin_dir / "slow-ffmpeg"
    slow_ffmpeg.write_text(
        "#!/bin/sh\n"
        "sleep 1\n"
        'for arg in "$@"; do dest="$arg"; done\n'
        "printf RIFF > \"$dest\"\n"
    )
    slow_ffmpeg.chmod(0o755)
    synth = _synth(tmp_path, transcoder=str(slow_ffmpeg))

    async def fake_fetch(request):
        with open(request.raw_path, "wb") as f:
            f.write(b"\xff" * 2048)

    synth._fetch_raw_audio = fake_fetch
    dest = synth.path_for("greeting")

    task = asyncio.create_task(synth.synthesize("Good morning!", dest))
    await asyncio.sleep(0.3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(1.5)

    assert not os.path.exists(dest)
    assert _leftovers(tmp_path) == []
