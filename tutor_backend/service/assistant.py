"""General-purpose assistant chat with one flat history per user."""
from __future__ import annotations

import json
import logging
from typing import Callable, List, Optional

from tutor_backend.errors import EmptyMessageError, TurnInProgressError
from tutor_backend.prompt import ASSISTANT_APOLOGY, ASSISTANT_GREETING, EMPTY_MESSAGE, TURN_IN_PROGRESS
from tutor_backend.runtime.session import MODEL, USER, Conversation, Message, copy_conversation
from tutor_backend.runtime.storage import ASSISTANT_PREFIX, BlobStore, user_key
from tutor_backend.service.llm import GenerationService
from tutor_backend.service.turns import stream_into

logger = logging.getLogger(__name__)


def _greeting() -> Conversation:
    return [Message(MODEL, ASSISTANT_GREETING)]


class AssistantChat:
    def __init__(
        self,
        blobs: BlobStore,
        user: str,
        generation: GenerationService,
        on_update: Optional[Callable[[Conversation], None]] = None,
    ) -> None:
        self._blobs = blobs
        self.user = user
        self.generation = generation
        self.on_update = on_update
        self.messages: Conversation = _greeting()
        self.streaming = False

    @property
    def key(self) -> str:
        return user_key(ASSISTANT_PREFIX, self.user)

    async def load(self) -> Conversation:
        blob = await self._blobs.get(self.key)
        if blob is None:
            self.messages = _greeting()
            return copy_conversation(self.messages)
        try:
            self.messages = [Message.from_dict(m) for m in json.loads(blob)]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Assistant history for %s is unreadable, starting fresh: %s", self.user, exc)
            self.messages = _greeting()
        return copy_conversation(self.messages)

    async def save(self) -> None:
        await self._blobs.set(self.key, json.dumps([m.to_dict() for m in self.messages], ensure_ascii=False))

    def _notify(self, conversation: Conversation) -> None:
        if self.on_update:
            self.on_update(conversation)

    async def send(self, text: str) -> Conversation:
        if not text.strip():
            raise EmptyMessageError(EMPTY_MESSAGE)
        if self.streaming:
            raise TurnInProgressError(TURN_IN_PROGRESS)

        self.streaming = True
        try:
            history = copy_conversation(self.messages)
            working = copy_conversation(history) + [Message(USER, text), Message(MODEL, "")]
            self._notify(working)
            try:
                chunks = self.generation.stream_assistant_turn(history, text)
                await stream_into(working, chunks, lambda: self._notify(working))
            except Exception as exc:
                logger.error("Assistant turn failed for %s: %s", self.user, exc)
                working[-1].content = ASSISTANT_APOLOGY
                self._notify(working)
            self.messages = working
            await self.save()
        finally:
            self.streaming = False
        return copy_conversation(self.messages)

    def history(self) -> List[Message]:
        return copy_conversation(self.messages)
