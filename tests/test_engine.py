import asyncio

import pytest

from ari_orchestrator.config import (
    AppConfig,
    AutoDialConfig,
    DashboardConfig,
    DialogueConfig,
    MediaConfig,
    NLUConfig,
    PlaybackConfig,
)
from ari_orchestrator.core.call_log import CallLogStore
from ari_orchestrator.core.models import CallState
from ari_orchestrator.engine import Engine


class _FakeARI:
    """Routes events to registered handlers and acknowledges every playback."""

    def __init__(self):
        self.handlers = {}
        self.calls = []
        self.played = []
        self._pending = set()

    def add_event_handler(self, event_type, handler):
        self.handlers.setdefault(event_type, []).append(handler)

    async def emit(self, event):
        for handler in self.handlers.get(event["type"], []):
            await handler(event)

    async def connect(self, attempts=30, interval_sec=3.0):
        self.calls.append("connect")

    async def start_listening(self):
        self.calls.append("listen")

    async def disconnect(self):
        self.calls.append("disconnect")

    async def answer_channel(self, channel_id):
        self.calls.append(("answer", channel_id))
        return True

    async def hangup_channel(self, channel_id):
        self.calls.append(("hangup", channel_id))
        return True

    async def record_channel(self, channel_id, **kwargs):
        self.calls.append(("record", channel_id))
        return True

    async def stop_playback(self, playback_id):
        return True

    async def play_media_with_id(self, channel_id, media_uri, playback_id):
        self.played.append(media_uri)
        event = {
            "type": "PlaybackFinished",
            "playback": {"id": playback_id, "media_uri": media_uri, "state": "done"},
        }
        task = asyncio.create_task(self.emit(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True


class _FakeNLU:
    def __init__(self):
        self.messages = []
        self.stopped = False

    async def reply(self, sender, message):
        self.messages.append((sender, message))
        return f"echo {message}"

    async def wait_until_ready(self):
        raise AssertionError("readiness wait should be disabled")

    async def stop(self):
        self.stopped = True


class _FakeSynthesizer:
    def __init__(self, sounds_dir, make_wav):
        self.sounds_dir = sounds_dir
        self.make_wav = make_wav
        self.texts = []
        self.stopped = False

    def path_for(self, name):
        return str(self.sounds_dir / f"{name}.wav")

    async def synthesize(self, text, destination_path):
        self.texts.append(text)
        self.make_wav(destination_path)

    async def stop(self):
        self.stopped = True


def _engine(tmp_path, make_wav, **config_overrides):
    sounds = tmp_path / "sounds"
    sounds.mkdir()
    config = AppConfig(
        media=MediaConfig(sounds_dir=str(sounds)),
        playback=PlaybackConfig(timeout_sec=1.0, backoff_sec=0),
        nlu=NLUConfig(wait_for_ready=False),
        dialogue=DialogueConfig(script=["Hello!", "Goodbye!"], inter_turn_delay_sec=0),
        dashboard=DashboardConfig(enabled=False),
        **config_overrides,
    )
    ari = _FakeARI()
    nlu = _FakeNLU()
    synth = _FakeSynthesizer(sounds, make_wav)
    store = CallLogStore(str(tmp_path / "calls.db"))
    engine = Engine(config, ari_client=ari, nlu_client=nlu, synthesizer=synth, call_log=store)
    return engine, ari, nlu, synth, store


def test_event_handlers_registered(tmp_path, make_wav):
    engine, ari, _, _, _ = _engine(tmp_path, make_wav)

    assert set(ari.handlers) == {
        "StasisStart",
        "StasisEnd",
        "PlaybackStarted",
        "PlaybackFinished",
        "PlaybackError",
    }
    assert engine.dashboard is None
    assert engine.autodialer is None


def test_autodialer_built_when_enabled(tmp_path, make_wav):
    engine, _, _, _, _ = _engine(tmp_path, make_wav, autodial=AutoDialConfig(enabled=True))

    assert engine.autodialer is not None
    assert engine.autodialer.endpoint == "SIP/msuser"


@pytest.mark.asyncio
async def test_call_runs_from_start_to_end(tmp_path, make_wav):
    engine, ari, nlu, synth, store = _engine(tmp_path, make_wav)
    channel = {"id": "chan-1", "caller": {"number": "1000"}, "dialplan": {"exten": "100"}}

    await ari.emit({"type": "StasisStart", "args": ["1001"], "channel": channel})
    await asyncio.wait_for(engine.orchestrator._session_tasks["chan-1"], timeout=5)
    session = engine.orchestrator.get_session("chan-1")

    assert session.state == CallState.HANGING_UP
    assert ari.played == [
        "sound:greeting_good_morning",
        "sound:reply_chan-1_1",
        "sound:reply_chan-1_2",
    ]
    assert nlu.messages == [("call_chan-1", "Hello!"), ("call_chan-1", "Goodbye!")]
    assert synth.texts == [
        "Good morning! Let's start your session.",
        "echo Hello!",
        "echo Goodbye!",
    ]
    assert ("record", "chan-1") in ari.calls
    assert ari.calls[-1] == ("hangup", "chan-1")

    await ari.emit({"type": "StasisEnd", "channel": channel})

    records = await store.list()
    assert len(records) == 1
    assert records[0].callee == "1001"
    assert records[0].end_time is not None
    assert records[0].recording_file == "chan-1.wav"
    assert engine.orchestrator.active_sessions == 0


@pytest.mark.asyncio
async def test_start_and_stop(tmp_path, make_wav):
    engine, ari, nlu, synth, _ = _engine(tmp_path, make_wav)

    await engine.start()
    await engine.stop()

    assert ari.calls == ["connect", "listen", "disconnect"]
    assert nlu.stopped is True
    assert synth.stopped is True
