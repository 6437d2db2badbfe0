"""Streaming turn coordinator.

Drives one assistant turn per conversation: appends the learner's message to a
working copy, routes slash commands, streams the tutor reply into a placeholder
message and hands the finished conversation back for commit. The working copy
is the only thing mutated while the turn runs.
"""
from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Hashable, List, Optional, Tuple

from tutor_backend.errors import EmptyMessageError, QuizError, TurnInProgressError
from tutor_backend.prompt import (
    EMPTY_MESSAGE,
    IMAGE_PROMPT_REQUEST,
    QUIZ_FAILED,
    QUIZ_LEAD_IN,
    SUGGESTION_MARKER,
    TURN_APOLOGY,
    TURN_IN_PROGRESS,
    image_caption,
)
from tutor_backend.runtime.session import (
    MODEL,
    USER,
    Conversation,
    Message,
    Profile,
    Quiz,
    UserImage,
    copy_conversation,
)
from tutor_backend.service.llm import GenerationService

logger = logging.getLogger(__name__)

QUIZ_COMMAND = "/quiz"
IMAGE_COMMAND = "/image"

ROUTE_CHAT = "chat"
ROUTE_QUIZ = "quiz"
ROUTE_IMAGE = "image"

_BULLET_RE = re.compile(r"^- ")

UpdateListener = Callable[[Hashable, Conversation], None]


@dataclass
class TurnOutcome:
    conversation: Conversation
    route: str
    quiz: Optional[Quiz] = None


def route_command(user_input: str) -> Tuple[str, str]:
    """Return (route, argument). Matching is case-insensitive on the trimmed input."""
    trimmed = user_input.strip()
    lowered = trimmed.lower()
    if lowered == QUIZ_COMMAND:
        return ROUTE_QUIZ, ""
    if lowered.startswith(IMAGE_COMMAND):
        return ROUTE_IMAGE, trimmed[len(IMAGE_COMMAND):].strip()
    return ROUTE_CHAT, user_input


def split_followups(text: str) -> Tuple[str, Optional[List[str]]]:
    """Split a reply on the follow-up marker into (answer, suggested questions)."""
    if SUGGESTION_MARKER not in text:
        return text, None
    answer, _, block = text.partition(SUGGESTION_MARKER)
    questions = [_BULLET_RE.sub("", line.strip()) for line in block.strip().split("\n")]
    return answer.strip(), [q for q in questions if q]


async def stream_into(
    conversation: Conversation,
    chunks: AsyncIterator[str],
    notify: Callable[[], None],
) -> str:
    """Append each chunk to the last message of ``conversation`` in order."""
    placeholder = conversation[-1]
    accumulated = ""
    async for chunk in chunks:
        accumulated += chunk
        placeholder.content = accumulated
        notify()
    return accumulated


class StreamingTurnCoordinator:
    def __init__(self, generation: GenerationService, on_update: Optional[UpdateListener] = None) -> None:
        self.generation = generation
        self.on_update = on_update
        self._in_flight: Dict[Hashable, Conversation] = {}

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    def working(self, key: Hashable) -> Optional[Conversation]:
        """The live conversation of an in-flight turn (mutated in place), if any."""
        return self._in_flight.get(key)

    def _notify(self, key: Hashable, conversation: Conversation) -> None:
        if self.on_update:
            self.on_update(key, conversation)

    async def run_turn(
        self,
        conversation: Conversation,
        user_input: str,
        profile: Profile,
        image: Optional[UserImage] = None,
        key: Optional[Hashable] = None,
    ) -> TurnOutcome:
        if not user_input.strip() and image is None:
            raise EmptyMessageError(EMPTY_MESSAGE)
        key = profile.subject if key is None else key
        if key in self._in_flight:
            raise TurnInProgressError(TURN_IN_PROGRESS)

        working = copy_conversation(conversation)
        self._in_flight[key] = working
        try:
            return await self._run(key, working, user_input, profile, image)
        finally:
            del self._in_flight[key]

    async def _run(
        self,
        key: Hashable,
        working: Conversation,
        user_input: str,
        profile: Profile,
        image: Optional[UserImage],
    ) -> TurnOutcome:
        history = copy_conversation(working)
        working.append(Message(USER, user_input, user_image=image))
        self._notify(key, working)

        route, argument = route_command(user_input)
        logger.info("Turn for %s routed to %s", key, route)

        if route == ROUTE_QUIZ:
            quiz = await self._generate_quiz(history, profile)
            working.append(Message(MODEL, QUIZ_LEAD_IN, quiz=quiz))
            self._notify(key, working)
            return TurnOutcome(working, route, quiz)

        if route == ROUTE_IMAGE:
            working.append(await self._image_message(argument))
            self._notify(key, working)
            return TurnOutcome(working, route)

        placeholder = Message(MODEL, "")
        working.append(placeholder)
        self._notify(key, working)
        try:
            chunks = self.generation.stream_conversation_turn(history, user_input, profile, image)
            accumulated = await stream_into(working, chunks, lambda: self._notify(key, working))
        except Exception as exc:
            logger.error("Tutor turn failed for %s: %s", key, exc)
            placeholder.content = TURN_APOLOGY
            self._notify(key, working)
            return TurnOutcome(working, route)

        answer, followups = split_followups(accumulated)
        if followups is not None:
            placeholder.content = answer
            placeholder.suggested_followups = followups
            self._notify(key, working)
        return TurnOutcome(working, route)

    async def _generate_quiz(self, history: Conversation, profile: Profile) -> Quiz:
        try:
            return await self.generation.generate_quiz(history, profile)
        except QuizError:
            raise
        except Exception as exc:
            logger.error("Quiz generation failed: %s", exc)
            raise QuizError(QUIZ_FAILED) from exc

    async def _image_message(self, prompt: str) -> Message:
        if not prompt:
            return Message(MODEL, IMAGE_PROMPT_REQUEST)
        try:
            data = await self.generation.generate_image(prompt)
        except Exception as exc:
            logger.error("Image generation failed: %s", exc)
            return Message(MODEL, TURN_APOLOGY)
        encoded = base64.b64encode(data).decode("ascii")
        return Message(MODEL, image_caption(prompt), model_image_url=f"data:image/png;base64,{encoded}")
