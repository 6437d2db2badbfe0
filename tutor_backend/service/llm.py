"""Gemini-backed generation service."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import google.generativeai as genai
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from tutor_backend.config import get_settings
from tutor_backend.errors import GenerationError, QuizError
from tutor_backend.prompt import (
    ASSISTANT_APOLOGY,
    ASSISTANT_SYSTEM_INSTRUCTION,
    IMAGE_FAILED,
    QUIZ_FAILED,
    QUIZ_PROMPT,
    QUIZ_SCHEMA,
    SESSION_START_FAILED,
    TURN_APOLOGY,
    generate_image_prompt,
    generate_initial_prompt,
    generate_refine_prompt,
    generate_system_instruction,
)
from tutor_backend.runtime.session import Message, Profile, Quiz, UserImage
from tutor_backend.service.tts import TTSClient

logger = logging.getLogger(__name__)

SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}


class GenerationService(Protocol):
    async def generate_initial_message(self, profile: Profile) -> str: ...

    def stream_conversation_turn(
        self,
        history: List[Message],
        new_text: str,
        profile: Profile,
        image: Optional[UserImage] = None,
    ) -> AsyncIterator[str]: ...

    def stream_assistant_turn(self, history: List[Message], new_text: str) -> AsyncIterator[str]: ...

    async def generate_quiz(self, history: List[Message], profile: Profile) -> Quiz: ...

    async def generate_image(self, prompt: str) -> bytes: ...

    async def generate_speech(self, text: str, voice: str) -> bytes: ...

    async def refine_text(self, text: str, action: str) -> str: ...


def _image_part(image: UserImage) -> Dict[str, Any]:
    return {"mime_type": image.mime_type, "data": base64.b64decode(image.base64)}


def _to_contents(messages: List[Message], with_images: bool = True) -> List[Dict[str, Any]]:
    contents = []
    for msg in messages:
        parts: List[Any] = []
        if msg.content:
            parts.append(msg.content)
        if with_images and msg.role == "user" and msg.user_image:
            parts.append(_image_part(msg.user_image))
        # The API rejects empty parts
        contents.append({"role": msg.role, "parts": parts or [""]})
    return contents


def _first_text_from_response(resp) -> str:
    """Extract text from a Gemini response or stream chunk safely."""
    try:
        for cand in getattr(resp, "candidates", []) or []:
            content = getattr(cand, "content", None)
            if not content:
                continue
            for p in getattr(content, "parts", []) or []:
                t = getattr(p, "text", None)
                if isinstance(t, str) and t:
                    return t
        t = getattr(resp, "text", None)
        return t if isinstance(t, str) else ""
    except (ValueError, AttributeError):
        return ""


def _strip_code_fence(txt: str) -> str:
    txt_clean = txt.strip().strip("`").strip()
    if txt_clean.startswith("json"):
        txt_clean = txt_clean[4:].strip()
    return txt_clean


async def _gemini_stream(model, contents, apology: str, **kwargs) -> AsyncIterator[str]:
    """Run the blocking SDK stream in a worker thread and re-yield its chunks.

    A failure in the producer is re-raised here as ``GenerationError`` once the
    chunks that arrived before it have been consumed.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Any] = asyncio.Queue()

    def _producer() -> None:
        try:
            stream = model.generate_content(contents, stream=True, **kwargs)
            for chunk in stream:
                text = _first_text_from_response(chunk)
                if text:
                    loop.call_soon_threadsafe(queue.put_nowait, text)
        except Exception as exc:
            logger.error("Gemini stream failed: %s", exc)
            loop.call_soon_threadsafe(queue.put_nowait, exc)
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, None)

    loop.run_in_executor(None, _producer)

    while True:
        item = await queue.get()
        if item is None:
            break
        if isinstance(item, Exception):
            raise GenerationError(apology) from item
        yield item


class GeminiGenerationService:
    def __init__(self, tts: Optional[TTSClient] = None) -> None:
        self.settings = get_settings().generation
        genai.configure(api_key=self.settings.api_key)
        self.tts = tts or TTSClient()

    def _model(self, name: str, system_instruction: Optional[str] = None):
        return genai.GenerativeModel(name, system_instruction=system_instruction, safety_settings=SAFETY_SETTINGS)

    async def _generate(self, model, contents, **kwargs):
        def _call_generate_content():
            return model.generate_content(contents, **kwargs)

        return await asyncio.to_thread(_call_generate_content)

    async def generate_initial_message(self, profile: Profile) -> str:
        model = self._model(self.settings.text_model)
        try:
            resp = await self._generate(model, generate_initial_prompt(profile))
        except Exception as exc:
            logger.warning("Initial message generation failed: %s", exc)
            raise GenerationError(SESSION_START_FAILED) from exc
        text = _first_text_from_response(resp).strip()
        if not text:
            raise GenerationError(SESSION_START_FAILED)
        return text

    def stream_conversation_turn(
        self,
        history: List[Message],
        new_text: str,
        profile: Profile,
        image: Optional[UserImage] = None,
    ) -> AsyncIterator[str]:
        user_parts: List[Any] = []
        if new_text:
            user_parts.append(new_text)
        if image:
            user_parts.append(_image_part(image))
        contents = _to_contents(history) + [{"role": "user", "parts": user_parts or [""]}]
        model = self._model(self.settings.text_model, generate_system_instruction(profile))
        logger.info("Streaming tutor turn for %s (history=%d)", profile.subject, len(history))
        return _gemini_stream(
            model,
            contents,
            TURN_APOLOGY,
            generation_config={"temperature": self.settings.temperature},
        )

    def stream_assistant_turn(self, history: List[Message], new_text: str) -> AsyncIterator[str]:
        contents = _to_contents(history) + [{"role": "user", "parts": [new_text]}]
        model = self._model(self.settings.chatbot_model, ASSISTANT_SYSTEM_INSTRUCTION)
        return _gemini_stream(model, contents, ASSISTANT_APOLOGY)

    async def generate_quiz(self, history: List[Message], profile: Profile) -> Quiz:
        contents = _to_contents(history, with_images=False) + [{"role": "user", "parts": [QUIZ_PROMPT]}]
        model = self._model(self.settings.text_model, generate_system_instruction(profile))
        try:
            resp = await self._generate(
                model,
                contents,
                generation_config={
                    "response_mime_type": "application/json",
                    "response_schema": QUIZ_SCHEMA,
                },
            )
        except Exception as exc:
            logger.warning("Quiz generation failed: %s", exc)
            raise QuizError(QUIZ_FAILED) from exc

        txt = _first_text_from_response(resp)
        try:
            return Quiz.from_dict(json.loads(_strip_code_fence(txt)))
        except ValueError as exc:
            logger.error("Failed to parse quiz JSON: %s", exc)
            raise QuizError(QUIZ_FAILED) from exc

    async def generate_image(self, prompt: str) -> bytes:
        model = genai.GenerativeModel(self.settings.image_model)
        try:
            resp = await self._generate(model, generate_image_prompt(prompt))
        except Exception as exc:
            logger.warning("Image generation failed: %s", exc)
            raise GenerationError(IMAGE_FAILED) from exc
        for cand in getattr(resp, "candidates", []) or []:
            for part in getattr(cand.content, "parts", []) or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    data = inline.data
                    return base64.b64decode(data) if isinstance(data, str) else bytes(data)
        raise GenerationError(IMAGE_FAILED)

    async def generate_speech(self, text: str, voice: str) -> bytes:
        return await self.tts.synthesize(text, voice)

    async def refine_text(self, text: str, action: str) -> str:
        prompt = generate_refine_prompt(text, action)
        model = genai.GenerativeModel(self.settings.fast_edit_model)
        try:
            resp = await self._generate(model, prompt)
        except Exception as exc:
            logger.warning("Refine (%s) failed: %s", action, exc)
            raise GenerationError(TURN_APOLOGY) from exc
        text = _first_text_from_response(resp).strip()
        if not text:
            logger.warning("Refine (%s) returned no text", action)
            raise GenerationError(TURN_APOLOGY)
        return text
