"""In-memory collaborators shared by the tests."""
import asyncio
from typing import List, Optional

import numpy as np
import pytest

from tutor_backend.runtime.session import Quiz, QuizQuestion
from tutor_backend.runtime.storage import MemoryBlobStore
from tutor_backend.service.orchestrator import TutorOrchestrator

PCM = np.zeros(2400, dtype="<i2").tobytes()


def sample_quiz() -> Quiz:
    return Quiz(
        questions=[
            QuizQuestion(
                question="2 + 2 = ?",
                options=["3", "4", "5", "6"],
                answer="4",
                explanation="Hai cộng hai bằng bốn.",
            )
        ]
    )


class FakeGeneration:
    def __init__(self, chunks: Optional[List[str]] = None) -> None:
        self.chunks = chunks if chunks is not None else ["Xin ", "chào"]
        self.fail_at: Optional[int] = None
        self.hold: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.initial = "Chào mừng bạn!"
        self.initial_error: Optional[Exception] = None
        self.quiz: Optional[Quiz] = sample_quiz()
        self.quiz_error: Optional[Exception] = None
        self.image = b"\x89PNG"
        self.image_error: Optional[Exception] = None
        self.speech = PCM
        self.speech_error: Optional[Exception] = None
        self.speech_hold: Optional[asyncio.Event] = None
        self.refined = "refined"
        self.stream_calls = []
        self.assistant_calls = []
        self.quiz_calls = []
        self.image_calls = []
        self.speech_calls = []
        self.held = 0

    async def generate_initial_message(self, profile):
        if self.initial_error:
            raise self.initial_error
        return self.initial

    async def _chunks(self):
        for i, chunk in enumerate(self.chunks):
            if i == self.fail_at:
                raise RuntimeError("service unavailable")
            yield chunk
            if i == 0 and self.hold is not None:
                self.held += 1
                self.started.set()
                await self.hold.wait()

    async def wait_until_held(self, count: int) -> None:
        while self.held < count:
            await asyncio.sleep(0)

    def stream_conversation_turn(self, history, new_text, profile, image=None):
        self.stream_calls.append((history, new_text, profile, image))
        return self._chunks()

    def stream_assistant_turn(self, history, new_text):
        self.assistant_calls.append((history, new_text))
        return self._chunks()

    async def generate_quiz(self, history, profile):
        self.quiz_calls.append(history)
        if self.quiz_error:
            raise self.quiz_error
        return self.quiz

    async def generate_image(self, prompt):
        self.image_calls.append(prompt)
        if self.image_error:
            raise self.image_error
        return self.image

    async def generate_speech(self, text, voice):
        self.speech_calls.append((text, voice))
        if self.speech_hold is not None:
            await self.speech_hold.wait()
        if self.speech_error:
            raise self.speech_error
        return self.speech

    async def refine_text(self, text, action):
        return self.refined


class FakeSource:
    def __init__(self, output: "FakeOutput", number: int, on_end) -> None:
        self.output = output
        self.number = number
        self.on_end = on_end
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True
        self.output.events.append(("stop", self.number))


class FakeOutput:
    def __init__(self) -> None:
        self.events = []
        self.rates = []
        self.sources: List[FakeSource] = []

    def start(self, samples, sample_rate, on_end) -> FakeSource:
        source = FakeSource(self, len(self.sources), on_end)
        self.sources.append(source)
        self.rates.append(sample_rate)
        self.events.append(("start", source.number))
        return source


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def generation():
    return FakeGeneration()


@pytest.fixture
def output():
    return FakeOutput()


@pytest.fixture
def orchestrator(blobs, generation, output):
    return TutorOrchestrator("lan", blobs, generation, output)
