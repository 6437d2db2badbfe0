"""Speech synthesis through Google Cloud Text-to-Speech."""
from __future__ import annotations

import asyncio
import logging

from google.cloud import texttospeech

from tutor_backend.config import get_settings
from tutor_backend.errors import GenerationError
from tutor_backend.prompt import SPEECH_FAILED

logger = logging.getLogger(__name__)


class TTSClient:
    def __init__(self) -> None:
        self._client = None
        cfg = get_settings().tts
        self.language_code = cfg.language_code
        self.voice_family = cfg.voice_family
        self.audio_cfg = texttospeech.AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.LINEAR16,
            sample_rate_hertz=cfg.sample_rate,
        )

    @property
    def client(self) -> texttospeech.TextToSpeechClient:
        # Created on first use so the app can start without credentials.
        if self._client is None:
            self._client = texttospeech.TextToSpeechClient()
        return self._client

    def voice_params(self, voice: str) -> texttospeech.VoiceSelectionParams:
        return texttospeech.VoiceSelectionParams(
            language_code=self.language_code,
            name=f"{self.language_code}-{self.voice_family}-{voice}",
        )

    async def synthesize(self, text: str, voice: str) -> bytes:
        input_cfg = texttospeech.SynthesisInput(text=text)
        try:
            response = await asyncio.to_thread(
                self.client.synthesize_speech,
                request={
                    "input": input_cfg,
                    "voice": self.voice_params(voice),
                    "audio_config": self.audio_cfg,
                },
            )
        except Exception as exc:
            logger.error("TTS synthesis failed: %s", exc)
            raise GenerationError(SPEECH_FAILED) from exc
        if not response.audio_content:
            raise GenerationError(SPEECH_FAILED)
        logger.info("Synthesized %d bytes with voice %s", len(response.audio_content), voice)
        return response.audio_content
