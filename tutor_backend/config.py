"""Configuration settings for the tutor backend."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")


@dataclass
class GenerationConfig:
    api_key: str = os.getenv("GOOGLE_LLM_API_KEY", "") or os.getenv("Google_LLM_API", "")
    text_model: str = os.getenv("TUTOR_TEXT_MODEL", "models/gemini-2.5-pro")
    chatbot_model: str = os.getenv("TUTOR_CHATBOT_MODEL", "models/gemini-2.5-flash")
    image_model: str = os.getenv("TUTOR_IMAGE_MODEL", "models/gemini-2.5-flash-image")
    fast_edit_model: str = os.getenv("TUTOR_FAST_EDIT_MODEL", "models/gemini-2.5-flash")
    temperature: float = float(os.getenv("TUTOR_LLM_TEMPERATURE", "0.7"))


@dataclass
class TTSConfig:
    language_code: str = os.getenv("TUTOR_TTS_LANGUAGE", "vi-VN")
    # Catalog ids map onto Chirp3-HD voice names, e.g. vi-VN-Chirp3-HD-Kore
    voice_family: str = os.getenv("TUTOR_TTS_VOICE_FAMILY", "Chirp3-HD")
    sample_rate: int = int(os.getenv("TUTOR_TTS_SAMPLE_RATE", "24000"))


@dataclass
class StoreConfig:
    backend: str = os.getenv("TUTOR_STORE_BACKEND", "sqlite")  # sqlite | memory
    path: str = os.getenv("TUTOR_STORE_PATH", str(_project_root / "data" / "tutor.db"))


@dataclass
class Settings:
    generation: GenerationConfig = None
    tts: TTSConfig = None
    store: StoreConfig = None

    def __post_init__(self):
        if self.generation is None:
            self.generation = GenerationConfig()
        if self.tts is None:
            self.tts = TTSConfig()
        if self.store is None:
            self.store = StoreConfig()


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
