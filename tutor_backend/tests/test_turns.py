"""Tests for the streaming turn coordinator."""
import asyncio
import base64

import pytest

from conftest import FakeGeneration
from tutor_backend.errors import EmptyMessageError, QuizError, TurnInProgressError
from tutor_backend.prompt import IMAGE_PROMPT_REQUEST, QUIZ_LEAD_IN, TURN_APOLOGY
from tutor_backend.runtime.session import MODEL, USER, Message, Profile, UserImage
from tutor_backend.service.turns import (
    ROUTE_CHAT,
    ROUTE_IMAGE,
    ROUTE_QUIZ,
    StreamingTurnCoordinator,
    route_command,
    split_followups,
)

PROFILE = Profile(username="lan", subject="Sinh học", goal="Hiểu tế bào", level="Lớp 10")


def _conversation():
    return [Message(MODEL, "Chào em, hôm nay học gì?")]


@pytest.mark.asyncio
async def test_committed_content_is_concatenation_of_chunks():
    generation = FakeGeneration(["Tế ", "bào ", "là ", "đơn vị."])
    coordinator = StreamingTurnCoordinator(generation)

    outcome = await coordinator.run_turn(_conversation(), "Tế bào là gì?", PROFILE)

    assert outcome.route == ROUTE_CHAT
    assert [m.role for m in outcome.conversation] == [MODEL, USER, MODEL]
    assert outcome.conversation[-1].content == "Tế bào là đơn vị."
    assert outcome.conversation[-1].suggested_followups is None


@pytest.mark.asyncio
async def test_observers_see_monotonically_growing_text():
    seen = []

    def record(key, conversation):
        if conversation[-1].role == MODEL:
            seen.append(conversation[-1].content)

    coordinator = StreamingTurnCoordinator(FakeGeneration(["a", "b", "c"]), on_update=record)

    await coordinator.run_turn(_conversation(), "hỏi", PROFILE)

    assert seen == ["", "a", "ab", "abc"]


@pytest.mark.asyncio
async def test_history_excludes_new_user_message():
    generation = FakeGeneration()
    image = UserImage(base64="aGk=", mime_type="image/png")
    await StreamingTurnCoordinator(generation).run_turn(_conversation(), "Xem hình", PROFILE, image)

    history, text, profile, sent_image = generation.stream_calls[0]
    assert [m.content for m in history] == ["Chào em, hôm nay học gì?"]
    assert text == "Xem hình"
    assert sent_image == image


@pytest.mark.asyncio
async def test_followups_are_split_from_answer():
    generation = FakeGeneration(["Answer text[SUGGESTED", "_QUESTIONS]\n- Q1\n", "- Q2"])
    outcome = await StreamingTurnCoordinator(generation).run_turn(_conversation(), "hỏi", PROFILE)

    last = outcome.conversation[-1]
    assert last.content == "Answer text"
    assert last.suggested_followups == ["Q1", "Q2"]


def test_split_followups_drops_blank_lines():
    assert split_followups("A\n[SUGGESTED_QUESTIONS]\n\n- Q1\n   \n  - Q2\nQ3\n") == ("A", ["Q1", "Q2", "Q3"])
    assert split_followups("no marker") == ("no marker", None)


@pytest.mark.asyncio
async def test_failure_mid_stream_replaces_placeholder_with_apology():
    generation = FakeGeneration(["một phần", " nữa"])
    generation.fail_at = 1

    outcome = await StreamingTurnCoordinator(generation).run_turn(_conversation(), "hỏi", PROFILE)

    assert outcome.conversation[-1].content == TURN_APOLOGY
    assert len(outcome.conversation) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["/quiz", "  /QUIZ ", "/Quiz"])
async def test_quiz_command_never_streams(command):
    generation = FakeGeneration()
    outcome = await StreamingTurnCoordinator(generation).run_turn(_conversation(), command, PROFILE)

    assert outcome.route == ROUTE_QUIZ
    assert generation.stream_calls == []
    assert outcome.conversation[-1].content == QUIZ_LEAD_IN
    assert outcome.conversation[-1].quiz is generation.quiz
    # the triggering command is not part of the quiz history
    assert [m.content for m in generation.quiz_calls[0]] == ["Chào em, hôm nay học gì?"]


@pytest.mark.asyncio
async def test_quiz_failure_raises_and_leaves_no_placeholder():
    generation = FakeGeneration()
    generation.quiz_error = ValueError("not json")
    coordinator = StreamingTurnCoordinator(generation)
    conversation = _conversation()

    with pytest.raises(QuizError):
        await coordinator.run_turn(conversation, "/quiz", PROFILE)

    assert len(conversation) == 1
    assert not coordinator.is_in_flight(PROFILE.subject)


@pytest.mark.asyncio
async def test_image_without_prompt_asks_for_one():
    generation = FakeGeneration()
    outcome = await StreamingTurnCoordinator(generation).run_turn(_conversation(), "/image ", PROFILE)

    assert outcome.route == ROUTE_IMAGE
    assert generation.image_calls == []
    assert generation.stream_calls == []
    assert outcome.conversation[-1].content == IMAGE_PROMPT_REQUEST


@pytest.mark.asyncio
async def test_image_with_prompt_embeds_generated_image():
    generation = FakeGeneration()
    outcome = await StreamingTurnCoordinator(generation).run_turn(
        _conversation(), "/IMAGE tế bào thực vật", PROFILE
    )

    assert generation.image_calls == ["tế bào thực vật"]
    last = outcome.conversation[-1]
    assert last.model_image_url == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
    assert "tế bào thực vật" in last.content


@pytest.mark.asyncio
async def test_image_generation_failure_appends_apology():
    generation = FakeGeneration()
    generation.image_error = RuntimeError("quota")
    outcome = await StreamingTurnCoordinator(generation).run_turn(_conversation(), "/image mèo", PROFILE)

    assert outcome.conversation[-1].content == TURN_APOLOGY
    assert outcome.conversation[-1].model_image_url is None


def test_route_command():
    assert route_command(" /quiz ") == (ROUTE_QUIZ, "")
    assert route_command("/quiz now") == (ROUTE_CHAT, "/quiz now")
    assert route_command("/Image  a cat ") == (ROUTE_IMAGE, "a cat")
    assert route_command("hello") == (ROUTE_CHAT, "hello")


@pytest.mark.asyncio
async def test_empty_input_is_rejected():
    with pytest.raises(EmptyMessageError):
        await StreamingTurnCoordinator(FakeGeneration()).run_turn(_conversation(), "   ", PROFILE)


@pytest.mark.asyncio
async def test_second_turn_on_same_conversation_is_refused_while_streaming():
    generation = FakeGeneration(["a", "b"])
    generation.hold = asyncio.Event()
    coordinator = StreamingTurnCoordinator(generation)

    first = asyncio.create_task(coordinator.run_turn(_conversation(), "một", PROFILE))
    await generation.started.wait()

    assert coordinator.is_in_flight(PROFILE.subject)
    assert coordinator.working(PROFILE.subject)[-1].content == "a"
    with pytest.raises(TurnInProgressError):
        await coordinator.run_turn(_conversation(), "hai", PROFILE)

    generation.hold.set()
    outcome = await first
    assert outcome.conversation[-1].content == "ab"
    assert not coordinator.is_in_flight(PROFILE.subject)


@pytest.mark.asyncio
async def test_input_conversation_is_not_mutated():
    conversation = _conversation()
    await StreamingTurnCoordinator(FakeGeneration()).run_turn(conversation, "hỏi", PROFILE)
    assert len(conversation) == 1
