from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Dict, Optional

from tutor_backend.errors import SubjectNotFoundError
from tutor_backend.prompt import SUBJECT_MISSING
from tutor_backend.runtime.migration import migrate_all
from tutor_backend.runtime.session import (
    MODEL,
    AllSessions,
    Conversation,
    Message,
    Session,
    copy_conversation,
)
from tutor_backend.runtime.storage import (
    LEGACY_SESSIONS_PREFIX,
    SESSIONS_PREFIX,
    BlobStore,
    user_key,
)

logger = logging.getLogger(__name__)


def encode_sessions(sessions: AllSessions) -> str:
    return json.dumps({subject: s.to_dict() for subject, s in sessions.items()}, ensure_ascii=False)


def decode_sessions(blob: str) -> AllSessions:
    raw = migrate_all(json.loads(blob))
    return {subject: Session.from_dict(entry) for subject, entry in raw.items()}


class SessionStore:
    """Owns one user's AllSessions mapping.

    Every mutation replaces a whole entry and then persists the whole mapping
    with a single ``set`` call. Readers get deep-copied snapshots.
    """

    def __init__(self, blobs: BlobStore, user: str) -> None:
        self._blobs = blobs
        self.user = user
        self._sessions: AllSessions = {}
        self._lock = asyncio.Lock()
        # Subject -> id of its current incarnation. Re-creating a deleted
        # subject gives it a fresh id.
        self._generations: Dict[str, int] = {}
        self._next_generation = itertools.count(1)

    @property
    def key(self) -> str:
        return user_key(SESSIONS_PREFIX, self.user)

    def snapshot(self) -> AllSessions:
        return {subject: s.snapshot() for subject, s in self._sessions.items()}

    def get(self, subject: str) -> Optional[Session]:
        session = self._sessions.get(subject)
        return session.snapshot() if session else None

    def require(self, subject: str) -> Session:
        session = self.get(subject)
        if session is None:
            raise SubjectNotFoundError(SUBJECT_MISSING)
        return session

    async def load(self) -> AllSessions:
        blob = await self._blobs.get(self.key)
        async with self._lock:
            if blob is None:
                self._sessions = {}
                self._sync_generations()
                return {}
            try:
                self._sessions = decode_sessions(blob)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                # json.JSONDecodeError is a ValueError
                logger.warning("Stored sessions for %s are corrupt, starting empty: %s", self.user, exc)
                await self._blobs.remove(user_key(LEGACY_SESSIONS_PREFIX, self.user))
                await self._blobs.remove(self.key)
                self._sessions = {}
            self._sync_generations()
            logger.info("Loaded %d sessions for %s", len(self._sessions), self.user)
            return self.snapshot()

    def generation(self, subject: str) -> Optional[int]:
        return self._generations.get(subject)

    def _sync_generations(self) -> None:
        for subject in list(self._generations):
            if subject not in self._sessions:
                del self._generations[subject]
        for subject in self._sessions:
            if subject not in self._generations:
                self._generations[subject] = next(self._next_generation)

    async def save(self, sessions: AllSessions) -> None:
        async with self._lock:
            self._sessions = {subject: s.snapshot() for subject, s in sessions.items()}
            await self._persist()

    async def _persist(self) -> None:
        self._sync_generations()
        await self._blobs.set(self.key, encode_sessions(self._sessions))

    async def commit(self, session: Session) -> AllSessions:
        async with self._lock:
            self._sessions[session.profile.subject] = session.snapshot()
            await self._persist()
            return self.snapshot()

    async def commit_conversation(
        self,
        subject: str,
        index: int,
        conversation: Conversation,
        generation: Optional[int] = None,
    ) -> Optional[Session]:
        """Write one finished conversation into its slot of the latest stored session.

        Returns None when the subject was deleted while the turn was running,
        or deleted and re-created when ``generation`` is given.
        """
        async with self._lock:
            current = self._sessions.get(subject)
            if current is None or not 0 <= index < len(current.conversations):
                logger.warning("Dropping commit for %s[%d]: no such conversation", subject, index)
                return None
            if generation is not None and self._generations.get(subject) != generation:
                logger.warning("Dropping commit for %s[%d]: subject was re-created", subject, index)
                return None
            updated = current.snapshot()
            updated.conversations[index] = copy_conversation(conversation)
            self._sessions[subject] = updated
            await self._persist()
            return updated.snapshot()

    async def append_conversation(self, subject: str, welcome: str) -> Session:
        async with self._lock:
            current = self._sessions.get(subject)
            if current is None:
                raise SubjectNotFoundError(SUBJECT_MISSING)
            updated = current.snapshot()
            updated.conversations.append([Message(MODEL, welcome)])
            updated.current_conversation_index = len(updated.conversations) - 1
            self._sessions[subject] = updated
            await self._persist()
            return updated.snapshot()

    async def set_voice(self, subject: str, voice: str) -> Session:
        async with self._lock:
            current = self._sessions.get(subject)
            if current is None:
                raise SubjectNotFoundError(SUBJECT_MISSING)
            updated = current.snapshot()
            updated.profile.voice = voice
            self._sessions[subject] = updated
            await self._persist()
            return updated.snapshot()

    async def delete(self, subject: str) -> AllSessions:
        async with self._lock:
            if self._sessions.pop(subject, None) is None:
                raise SubjectNotFoundError(SUBJECT_MISSING)
            await self._persist()
            logger.info("Deleted subject %s for %s", subject, self.user)
            return self.snapshot()
