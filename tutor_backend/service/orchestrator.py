from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Hashable, Optional

from tutor_backend.errors import (
    GenerationError,
    NotSignedInError,
    PlaybackError,
    SubjectExistsError,
    SubjectNotFoundError,
    TurnInProgressError,
    TutorError,
)
from tutor_backend.prompt import (
    CONVERSATION_START_FAILED,
    NOT_SIGNED_IN,
    REFINE_ACTIONS,
    SESSION_START_FAILED,
    SUBJECT_EXISTS,
    SUBJECT_MISSING,
    TURN_IN_PROGRESS,
    UNKNOWN_VOICE,
    quiz_result_message,
)
from tutor_backend.runtime.bus import EventBus
from tutor_backend.runtime.session import (
    DEFAULT_VOICE,
    MODEL,
    AllSessions,
    Conversation,
    Message,
    Profile,
    Session,
    UserImage,
    copy_conversation,
    is_supported_voice,
)
from tutor_backend.runtime.session_store import SessionStore
from tutor_backend.runtime.storage import BlobStore
from tutor_backend.service.assistant import AssistantChat
from tutor_backend.service.audio import (
    OUTPUT_SAMPLE_RATE,
    AudioOutput,
    AudioPlaybackController,
    PlaybackState,
)
from tutor_backend.service.llm import GenerationService
from tutor_backend.service.turns import StreamingTurnCoordinator, TurnOutcome

logger = logging.getLogger(__name__)


def _messages_payload(conversation: Conversation) -> list:
    return [m.to_dict() for m in conversation]


class TutorOrchestrator:
    """Everything one signed-in learner can do, wired to their own state objects."""

    def __init__(
        self,
        user: str,
        blobs: BlobStore,
        generation: GenerationService,
        output: AudioOutput,
        bus: Optional[EventBus] = None,
        sample_rate: int = OUTPUT_SAMPLE_RATE,
    ) -> None:
        self.user = user
        self.generation = generation
        self.bus = bus
        self.store = SessionStore(blobs, user)
        self.turns = StreamingTurnCoordinator(generation, on_update=self._on_turn_update)
        self.audio = AudioPlaybackController(
            generation.generate_speech, output, sample_rate, on_change=self._on_playback_change
        )
        self.assistant = AssistantChat(blobs, user, generation, on_update=self._on_assistant_update)
        self.current_subject: Optional[str] = None

    # -- observers ---------------------------------------------------------

    def _publish(self, packet: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(self.user, packet)

    def _publish_sessions(self, sessions: AllSessions) -> None:
        self._publish({"type": "sessions", "sessions": {k: s.to_dict() for k, s in sessions.items()}})

    def _on_turn_update(self, key: Hashable, conversation: Conversation) -> None:
        subject, index = key
        self._publish(
            {
                "type": "turn",
                "subject": subject,
                "conversationIndex": index,
                "messages": _messages_payload(conversation),
            }
        )

    def _on_playback_change(self, state: PlaybackState) -> None:
        self._publish({"type": "playback", **state.to_dict()})

    def _on_assistant_update(self, conversation: Conversation) -> None:
        self._publish({"type": "assistant", "messages": _messages_payload(conversation)})

    def _notify(self, message: str) -> None:
        self._publish({"type": "notification", "message": message})

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> AllSessions:
        sessions = await self.store.load()
        await self.assistant.load()
        self._publish_sessions(sessions)
        return sessions

    async def reload(self) -> AllSessions:
        """Re-read persisted sessions. Conversations with a turn in flight keep
        their working copy and overwrite their slot when the turn commits."""
        sessions = await self.store.load()
        self._publish_sessions(sessions)
        return sessions

    def stop(self) -> None:
        self.audio.stop()

    # -- reads ---------------------------------------------------------------

    def sessions(self) -> AllSessions:
        return self.store.snapshot()

    def current_session(self) -> Optional[Session]:
        if self.current_subject is None:
            return None
        return self.store.get(self.current_subject)

    def _require_current(self) -> Session:
        session = self.current_session()
        if session is None:
            raise SubjectNotFoundError(SUBJECT_MISSING)
        return session

    def displayed_conversation(self) -> Conversation:
        session = self._require_current()
        working = self.turns.working((session.profile.subject, session.current_conversation_index))
        return copy_conversation(working if working is not None else session.current_conversation)

    # -- subjects ------------------------------------------------------------

    async def create_subject(self, subject: str, goal: str, level: str, voice: Optional[str] = None) -> Session:
        if self.store.get(subject) is not None:
            self.select_subject(subject)
            raise SubjectExistsError(SUBJECT_EXISTS)
        voice = voice or DEFAULT_VOICE
        if not is_supported_voice(voice):
            raise TutorError(UNKNOWN_VOICE)

        profile = Profile(username=self.user, subject=subject, goal=goal, level=level, voice=voice)
        try:
            welcome = await self.generation.generate_initial_message(profile)
        except Exception as exc:
            logger.error("Failed to start new session for %s: %s", subject, exc)
            raise GenerationError(SESSION_START_FAILED) from exc
        session = Session.new(profile, welcome)
        sessions = await self.store.commit(session)
        self.select_subject(subject)
        self._publish_sessions(sessions)
        logger.info("Created subject %s for %s", subject, self.user)
        return session

    def select_subject(self, subject: str) -> Session:
        session = self.store.require(subject)
        self.audio.stop()
        self.current_subject = subject
        return session

    def switch_subject(self) -> None:
        self.audio.stop()
        self.current_subject = None

    async def new_conversation(self, subject: Optional[str] = None) -> Session:
        subject = subject or self.current_subject
        if subject is None:
            raise SubjectNotFoundError(SUBJECT_MISSING)
        session = self.store.require(subject)
        try:
            welcome = await self.generation.generate_initial_message(session.profile)
        except Exception as exc:
            logger.error("Failed to start new conversation for %s: %s", subject, exc)
            raise GenerationError(CONVERSATION_START_FAILED) from exc
        updated = await self.store.append_conversation(subject, welcome)
        self.audio.stop()
        self.current_subject = subject
        self._publish_sessions(self.store.snapshot())
        return updated

    async def delete_subject(self, subject: str) -> AllSessions:
        sessions = await self.store.delete(subject)
        if self.current_subject == subject:
            self.switch_subject()
        self._publish_sessions(sessions)
        return sessions

    async def set_voice(self, voice: str, subject: Optional[str] = None) -> Session:
        if not is_supported_voice(voice):
            raise TutorError(UNKNOWN_VOICE)
        subject = subject or self.current_subject
        if subject is None:
            raise SubjectNotFoundError(SUBJECT_MISSING)
        updated = await self.store.set_voice(subject, voice)
        self._publish_sessions(self.store.snapshot())
        return updated

    # -- turns ---------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        image: Optional[UserImage] = None,
        from_voice: bool = False,
    ) -> TurnOutcome:
        session = self._require_current()
        subject = session.profile.subject
        index = session.current_conversation_index
        generation = self.store.generation(subject)
        outcome = await self.turns.run_turn(
            session.current_conversation, text, session.profile, image, key=(subject, index)
        )

        committed = await self.store.commit_conversation(subject, index, outcome.conversation, generation)
        if committed is not None:
            self._publish_sessions(self.store.snapshot())
            if from_voice:
                await self._autoplay(subject, index, outcome.conversation)
        return outcome

    async def submit_transcript(self, transcript: str) -> TurnOutcome:
        return await self.send_message(transcript, from_voice=True)

    async def _autoplay(self, subject: str, index: int, conversation: Conversation) -> None:
        """Narrate the reply to a dictated turn if it is still the one on screen."""
        session = self.current_session()
        if (
            not self.audio.enabled
            or session is None
            or session.profile.subject != subject
            or session.current_conversation_index != index
        ):
            return
        last = conversation[-1]
        if last.role != MODEL or not last.content:
            return
        try:
            await self.audio.request_play(last.content, len(conversation) - 1, session.profile.voice)
        except PlaybackError as exc:
            self._notify(exc.message)

    async def complete_quiz(self, score: int, total: int) -> Session:
        session = self._require_current()
        key = (session.profile.subject, session.current_conversation_index)
        if self.turns.is_in_flight(key):
            raise TurnInProgressError(TURN_IN_PROGRESS)
        conversation = copy_conversation(session.current_conversation)
        conversation.append(Message(MODEL, quiz_result_message(score, total)))
        committed = await self.store.commit_conversation(*key, conversation)
        self._publish_sessions(self.store.snapshot())
        return committed

    async def refine_text(self, text: str, action: str) -> str:
        if action not in REFINE_ACTIONS:
            raise TutorError(f"Unknown action: {action}")
        try:
            return await self.generation.refine_text(text, action)
        except Exception as exc:
            logger.warning("Refine %s failed, keeping input: %s", action, exc)
            return text

    # -- narration -----------------------------------------------------------

    async def play_message(self, index: int) -> PlaybackState:
        session = self._require_current()
        conversation = self.displayed_conversation()
        if not 0 <= index < len(conversation):
            raise TutorError(f"No message at index {index}")
        message = conversation[index]
        if message.role != MODEL:
            return self.audio.state
        try:
            return await self.audio.request_play(message.content, index, session.profile.voice)
        except PlaybackError as exc:
            self._notify(exc.message)
            raise

    def set_narration_enabled(self, enabled: bool) -> PlaybackState:
        self.audio.set_enabled(enabled)
        return self.audio.state

    # -- assistant chat ------------------------------------------------------

    async def send_assistant_message(self, text: str) -> Conversation:
        return await self.assistant.send(text)


class OrchestratorRegistry:
    """Signed-in learners by user id; each is loaded once at sign-in."""

    def __init__(self, factory: Callable[[str], TutorOrchestrator]) -> None:
        self._factory = factory
        self._orchestrators: Dict[str, TutorOrchestrator] = {}
        self._lock = asyncio.Lock()

    async def sign_in(self, user: Optional[str]) -> TutorOrchestrator:
        if not user:
            raise NotSignedInError(NOT_SIGNED_IN)
        async with self._lock:
            orchestrator = self._orchestrators.get(user)
            if orchestrator is None:
                orchestrator = self._factory(user)
                await orchestrator.start()
                self._orchestrators[user] = orchestrator
            return orchestrator

    async def get(self, user: Optional[str]) -> TutorOrchestrator:
        return await self.sign_in(user)

    async def sign_out(self, user: str) -> None:
        async with self._lock:
            orchestrator = self._orchestrators.pop(user, None)
        if orchestrator is not None:
            orchestrator.stop()
