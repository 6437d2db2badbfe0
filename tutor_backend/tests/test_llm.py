"""Tests for the Gemini generation service with the SDK calls replaced."""
from types import SimpleNamespace

import pytest

from conftest import FakeOutput
from tutor_backend.errors import GenerationError
from tutor_backend.runtime.storage import MemoryBlobStore
from tutor_backend.service import llm
from tutor_backend.service.orchestrator import TutorOrchestrator


def _service(monkeypatch, text):
    monkeypatch.setattr(llm.genai, "configure", lambda **kwargs: None)
    monkeypatch.setattr(llm.genai, "GenerativeModel", lambda *args, **kwargs: object())
    service = llm.GeminiGenerationService(tts=object())

    async def fake_generate(model, contents, **kwargs):
        return SimpleNamespace(candidates=[], text=text)

    monkeypatch.setattr(service, "_generate", fake_generate)
    return service


@pytest.mark.asyncio
async def test_refine_returns_model_text(monkeypatch):
    service = _service(monkeypatch, "  Câu đã sửa. ")
    assert await service.refine_text("cau sai", "fix_grammar") == "Câu đã sửa."


@pytest.mark.asyncio
async def test_empty_refine_response_is_a_failure(monkeypatch):
    service = _service(monkeypatch, "")
    with pytest.raises(GenerationError):
        await service.refine_text("cau sai", "fix_grammar")


@pytest.mark.asyncio
async def test_empty_refine_response_keeps_learner_text(monkeypatch):
    service = _service(monkeypatch, "   ")
    orchestrator = TutorOrchestrator("lan", MemoryBlobStore(), service, FakeOutput())

    assert await orchestrator.refine_text("giữ nguyên", "improve_writing") == "giữ nguyên"
