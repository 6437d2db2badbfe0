"""Upgrade stored session entries from older shapes to the current one.

Runs once per load on the raw decoded JSON, before it is parsed into
``Session`` objects. Every step checks before it writes, so running the pass
on current data changes nothing.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from tutor_backend.prompt import welcome_back_message
from tutor_backend.runtime.session import DEFAULT_VOICE, MODEL

logger = logging.getLogger(__name__)


def migrate_session(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Migrate one session entry in place and return it."""
    profile = raw.get("profile")
    if not isinstance(profile, dict):
        raise ValueError("session entry has no profile")

    # Pre multi-conversation format: a single flat message list.
    # A null or empty list carries nothing to keep.
    messages = raw.pop("messages", None)
    if messages:
        raw["conversations"] = [messages]
        raw["currentConversationIndex"] = 0
        logger.info("Migrated legacy message list for subject %s", profile.get("subject"))

    if not raw.get("conversations"):
        raw["conversations"] = [[{"role": MODEL, "content": welcome_back_message(profile.get("subject", ""))}]]
        raw["currentConversationIndex"] = 0

    index = raw.get("currentConversationIndex")
    last = len(raw["conversations"]) - 1
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index <= last:
        raw["currentConversationIndex"] = last

    # Pre voice-selection format.
    if not profile.get("voice"):
        profile["voice"] = DEFAULT_VOICE

    return raw


def migrate_all(raw: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError("stored sessions blob is not a mapping")
    for entry in raw.values():
        if not isinstance(entry, dict):
            raise ValueError("stored session entry is not a mapping")
        migrate_session(entry)
    return raw
