"""Single-flight narration playback.

The controller is a three-state machine (idle, loading(i), playing(i)). Every
transition stops and releases the tracked source before anything new starts,
so at most one source plays at a time however fast requests arrive. A source
that ends after it was superseded is ignored.
"""
from __future__ import annotations

import asyncio
import io
import logging
import wave
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import numpy as np

from tutor_backend.errors import PlaybackError
from tutor_backend.prompt import SPEECH_FAILED
from tutor_backend.runtime.bus import EventBus
from tutor_backend.service.token_guard import TokenGuard

logger = logging.getLogger(__name__)

OUTPUT_SAMPLE_RATE = 24000


class PlaybackPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"


@dataclass(frozen=True)
class PlaybackState:
    phase: PlaybackPhase = PlaybackPhase.IDLE
    index: Optional[int] = None

    @classmethod
    def idle(cls) -> "PlaybackState":
        return cls()

    @classmethod
    def loading(cls, index: int) -> "PlaybackState":
        return cls(PlaybackPhase.LOADING, index)

    @classmethod
    def playing(cls, index: int) -> "PlaybackState":
        return cls(PlaybackPhase.PLAYING, index)

    @property
    def is_loading(self) -> bool:
        return self.phase is PlaybackPhase.LOADING

    @property
    def playing_index(self) -> Optional[int]:
        return self.index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.phase.value,
            "index": self.index,
            "isLoading": self.is_loading,
            "playingIndex": self.playing_index,
        }


def decode_pcm16(audio: bytes, default_rate: int = OUTPUT_SAMPLE_RATE) -> Tuple[np.ndarray, int]:
    """Decode 16-bit little-endian mono PCM to (float32 samples, sample rate).

    A WAV header supplies the rate; raw PCM is taken to be at ``default_rate``.
    """
    rate = default_rate
    if audio[:4] == b"RIFF":
        with wave.open(io.BytesIO(audio), "rb") as wav:
            if wav.getsampwidth() != 2:
                raise ValueError("expected 16-bit samples")
            rate = wav.getframerate()
            audio = wav.readframes(wav.getnframes())
    if not audio or len(audio) % 2:
        raise ValueError("audio payload is not 16-bit PCM")
    return np.frombuffer(audio, dtype="<i2").astype(np.float32) / 32768.0, rate


class AudioSource(Protocol):
    def stop(self) -> None: ...


class AudioOutput(Protocol):
    def start(self, samples: np.ndarray, sample_rate: int, on_end: Callable[[], None]) -> AudioSource: ...


class TimedSource:
    """A started buffer that reports its natural end after its duration."""

    def __init__(self, duration: float, on_end: Callable[[], None], on_stop: Callable[[], None]) -> None:
        self._on_stop = on_stop
        self._stopped = False
        self._timer = asyncio.get_running_loop().call_later(duration, self._finish, on_end)

    def _finish(self, on_end: Callable[[], None]) -> None:
        if not self._stopped:
            self._stopped = True
            on_end()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._timer.cancel()
        self._on_stop()


class BusAudioOutput:
    """Sends PCM frames to the user's event bus for a websocket client to play."""

    def __init__(self, bus: EventBus, user: str) -> None:
        self.bus = bus
        self.user = user

    def start(self, samples: np.ndarray, sample_rate: int, on_end: Callable[[], None]) -> AudioSource:
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()
        self.bus.publish(self.user, {"type": "audio", "sample_rate": sample_rate, "audio": pcm})
        return TimedSource(
            len(samples) / sample_rate,
            on_end,
            lambda: self.bus.publish(self.user, {"type": "stop"}),
        )


class AudioPlaybackController:
    def __init__(
        self,
        synthesize: Callable[[str, str], Awaitable[bytes]],
        output: AudioOutput,
        sample_rate: int = OUTPUT_SAMPLE_RATE,
        on_change: Optional[Callable[[PlaybackState], None]] = None,
    ) -> None:
        self._synthesize = synthesize
        self._output = output
        self.sample_rate = sample_rate
        self._on_change = on_change
        self._guard = TokenGuard()
        self._state = PlaybackState.idle()
        self._source: Optional[AudioSource] = None
        self.enabled = True

    @property
    def state(self) -> PlaybackState:
        return self._state

    def _set(self, state: PlaybackState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("Playback state -> %s(%s)", state.phase.value, state.index)
        if self._on_change:
            self._on_change(state)

    def stop(self) -> None:
        """Stop and release the tracked source; any pending synthesis becomes stale."""
        self._guard.invalidate()
        source, self._source = self._source, None
        if source is not None:
            source.stop()
        self._set(PlaybackState.idle())

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if not enabled:
            self.stop()

    async def request_play(self, text: str, index: int, voice: str) -> PlaybackState:
        if not self.enabled or not text.strip():
            logger.debug("Ignoring play request for %d (enabled=%s)", index, self.enabled)
            return self._state

        toggling_off = self._state.phase is not PlaybackPhase.IDLE and self._state.index == index
        self.stop()
        if toggling_off:
            return self._state

        token = self._guard.issue()
        self._set(PlaybackState.loading(index))
        try:
            audio = await self._synthesize(text, voice)
            if not self._guard.is_current(token):
                logger.info("Discarding superseded narration for message %d", index)
                return self._state
            samples, rate = decode_pcm16(audio, self.sample_rate)
            source = self._output.start(samples, rate, lambda: self._on_ended(token))
        except Exception as exc:
            if not self._guard.is_current(token):
                return self._state
            logger.error("Narration failed for message %d: %s", index, exc)
            self._guard.invalidate()
            self._set(PlaybackState.idle())
            raise PlaybackError(SPEECH_FAILED) from exc

        if not self._guard.is_current(token):
            # ended during start()
            return self._state
        self._source = source
        self._set(PlaybackState.playing(index))
        return self._state

    def _on_ended(self, token: int) -> None:
        if not self._guard.is_current(token):
            return
        self._source = None
        self._guard.invalidate()
        self._set(PlaybackState.idle())
