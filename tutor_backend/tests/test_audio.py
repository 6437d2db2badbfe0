"""Tests for the single-flight narration controller."""
import asyncio
import io
import wave

import numpy as np
import pytest

from conftest import PCM, FakeGeneration, FakeOutput
from tutor_backend.errors import PlaybackError
from tutor_backend.runtime.bus import EventBus
from tutor_backend.service.audio import (
    AudioPlaybackController,
    BusAudioOutput,
    PlaybackPhase,
    PlaybackState,
    decode_pcm16,
)


def _controller(generation=None, output=None, states=None):
    generation = generation or FakeGeneration()
    output = output or FakeOutput()
    on_change = states.append if states is not None else None
    return AudioPlaybackController(generation.generate_speech, output, on_change=on_change), generation, output


@pytest.mark.asyncio
async def test_play_goes_loading_then_playing():
    states = []
    controller, generation, output = _controller(states=states)

    state = await controller.request_play("Xin chào", 1, "Kore")

    assert state == PlaybackState.playing(1)
    assert states == [PlaybackState.loading(1), PlaybackState.playing(1)]
    assert generation.speech_calls == [("Xin chào", "Kore")]
    assert output.events == [("start", 0)]


@pytest.mark.asyncio
async def test_same_index_twice_toggles_off_with_one_synthesis():
    states = []
    controller, generation, output = _controller(states=states)

    await controller.request_play("Xin chào", 3, "Kore")
    state = await controller.request_play("Xin chào", 3, "Kore")

    assert state == PlaybackState.idle()
    assert len(generation.speech_calls) == 1
    assert output.events == [("start", 0), ("stop", 0)]
    assert [s.phase for s in states] == [PlaybackPhase.LOADING, PlaybackPhase.PLAYING, PlaybackPhase.IDLE]


@pytest.mark.asyncio
async def test_switching_index_stops_previous_before_starting_next():
    controller, _, output = _controller()

    await controller.request_play("một", 1, "Kore")
    await controller.request_play("hai", 2, "Kore")

    assert output.events == [("start", 0), ("stop", 0), ("start", 1)]
    assert controller.state == PlaybackState.playing(2)


@pytest.mark.asyncio
async def test_stale_end_notification_does_not_reset_new_source():
    controller, _, output = _controller()

    await controller.request_play("một", 1, "Kore")
    await controller.request_play("hai", 2, "Kore")
    output.sources[0].on_end()

    assert controller.state == PlaybackState.playing(2)

    output.sources[1].on_end()
    assert controller.state == PlaybackState.idle()


@pytest.mark.asyncio
async def test_superseded_synthesis_is_discarded():
    generation = FakeGeneration()
    generation.speech_hold = asyncio.Event()
    controller, _, output = _controller(generation=generation)

    first = asyncio.create_task(controller.request_play("một", 1, "Kore"))
    await asyncio.sleep(0)
    assert controller.state == PlaybackState.loading(1)

    generation.speech_hold.set()
    second = await controller.request_play("hai", 2, "Kore")
    await first

    assert second == PlaybackState.playing(2)
    assert controller.state == PlaybackState.playing(2)
    assert output.events == [("start", 0)]


@pytest.mark.asyncio
async def test_synthesis_failure_returns_to_idle_and_raises():
    generation = FakeGeneration()
    generation.speech_error = RuntimeError("tts down")
    controller, _, output = _controller(generation=generation)

    with pytest.raises(PlaybackError):
        await controller.request_play("một", 1, "Kore")

    assert controller.state == PlaybackState.idle()
    assert output.events == []


@pytest.mark.asyncio
async def test_undecodable_audio_is_a_playback_failure():
    generation = FakeGeneration()
    generation.speech = b"\x01"
    controller, _, _ = _controller(generation=generation)

    with pytest.raises(PlaybackError):
        await controller.request_play("một", 1, "Kore")
    assert controller.state == PlaybackState.idle()


@pytest.mark.asyncio
async def test_disabling_stops_playback_and_ignores_requests():
    controller, generation, output = _controller()
    await controller.request_play("một", 1, "Kore")

    controller.set_enabled(False)
    assert controller.state == PlaybackState.idle()
    assert output.events == [("start", 0), ("stop", 0)]

    await controller.request_play("hai", 2, "Kore")
    assert controller.state == PlaybackState.idle()
    assert len(generation.speech_calls) == 1


@pytest.mark.asyncio
async def test_empty_text_is_ignored():
    controller, generation, _ = _controller()
    assert await controller.request_play("  ", 0, "Kore") == PlaybackState.idle()
    assert generation.speech_calls == []


def _wav(samples, rate):
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(rate)
        wav.writeframes(samples.tobytes())
    return buf.getvalue()


def test_decode_raw_and_wav_pcm():
    samples = np.array([0, 16384, -32768], dtype="<i2")
    expected = [0.0, 0.5, -1.0]

    decoded, rate = decode_pcm16(samples.tobytes())
    assert decoded.tolist() == expected
    assert rate == 24000

    decoded, rate = decode_pcm16(_wav(samples, 16000))
    assert decoded.tolist() == expected
    assert rate == 16000


@pytest.mark.asyncio
async def test_playback_uses_rate_from_wav_header():
    generation = FakeGeneration()
    generation.speech = _wav(np.zeros(1600, dtype="<i2"), 16000)
    controller, _, output = _controller(generation=generation)

    await controller.request_play("một", 1, "Kore")

    assert output.rates == [16000]


@pytest.mark.asyncio
async def test_raw_pcm_plays_at_configured_rate():
    generation = FakeGeneration()
    output = FakeOutput()
    controller = AudioPlaybackController(generation.generate_speech, output, sample_rate=16000)

    await controller.request_play("một", 1, "Kore")

    assert output.rates == [16000]


def test_playback_state_exposes_legacy_flags():
    assert PlaybackState.loading(4).to_dict() == {
        "state": "loading",
        "index": 4,
        "isLoading": True,
        "playingIndex": 4,
    }
    assert PlaybackState.idle().playing_index is None


@pytest.mark.asyncio
async def test_bus_output_publishes_audio_and_reports_natural_end():
    bus = EventBus()
    queue = bus.subscribe("lan")
    output = BusAudioOutput(bus, "lan")
    ended = asyncio.Event()

    samples, rate = decode_pcm16(PCM[:48])
    output.start(samples, rate, ended.set)
    await asyncio.wait_for(ended.wait(), timeout=1.0)

    packet = queue.get_nowait()
    assert packet["type"] == "audio"
    assert packet["sample_rate"] == 24000
    assert packet["audio"] == PCM[:48]


@pytest.mark.asyncio
async def test_bus_output_stop_publishes_stop_packet():
    bus = EventBus()
    queue = bus.subscribe("lan")
    output = BusAudioOutput(bus, "lan")
    samples, rate = decode_pcm16(PCM)
    source = output.start(samples, rate, lambda: None)
    source.stop()
    source.stop()

    packets = [queue.get_nowait() for _ in range(2)]
    assert [p["type"] for p in packets] == ["audio", "stop"]
    assert queue.empty()
