from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# (id, label) pairs; the first entry is the default voice.
SUPPORTED_VOICES: List[Tuple[str, str]] = [
    ("Kore", "Giọng Nữ - Thân thiện"),
    ("Zephyr", "Giọng Nữ - Trầm ấm"),
    ("Puck", "Giọng Nam - Rõ ràng"),
    ("Charon", "Giọng Nam - Trầm"),
    ("Fenrir", "Giọng Nam - Ấm áp"),
]
DEFAULT_VOICE = SUPPORTED_VOICES[0][0]

USER = "user"
MODEL = "model"


def is_supported_voice(voice: str) -> bool:
    return any(voice_id == voice for voice_id, _ in SUPPORTED_VOICES)


@dataclass
class Profile:
    username: str
    subject: str
    goal: str
    level: str
    voice: str = DEFAULT_VOICE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "subject": self.subject,
            "goal": self.goal,
            "level": self.level,
            "voice": self.voice,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            username=data["username"],
            subject=data["subject"],
            goal=data.get("goal", ""),
            level=data.get("level", ""),
            voice=data.get("voice") or DEFAULT_VOICE,
        )


@dataclass
class UserImage:
    base64: str
    mime_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"base64": self.base64, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserImage":
        return cls(base64=data["base64"], mime_type=data["mimeType"])


@dataclass
class QuizQuestion:
    question: str
    options: List[str]
    answer: str
    explanation: str

    def is_correct(self, option: str) -> bool:
        return option == self.answer

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "options": list(self.options),
            "answer": self.answer,
            "explanation": self.explanation,
        }


@dataclass
class Quiz:
    questions: List[QuizQuestion]

    def score(self, choices: List[str]) -> int:
        return sum(1 for q, choice in zip(self.questions, choices) if q.is_correct(choice))

    def to_dict(self) -> Dict[str, Any]:
        return {"questions": [q.to_dict() for q in self.questions]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quiz":
        """Parse a quiz payload, raising ``ValueError`` on any shape mismatch."""
        if not isinstance(data, dict) or not isinstance(data.get("questions"), list):
            raise ValueError("quiz payload has no questions list")
        questions = []
        for item in data["questions"]:
            if not isinstance(item, dict):
                raise ValueError("quiz question is not an object")
            options = item.get("options")
            if not isinstance(options, list) or len(options) != 4:
                raise ValueError("quiz question must have exactly 4 options")
            fields = [item.get(k) for k in ("question", "answer", "explanation")]
            if not all(isinstance(v, str) for v in fields + options):
                raise ValueError("quiz question fields must be strings")
            questions.append(QuizQuestion(fields[0], [str(o) for o in options], fields[1], fields[2]))
        if not questions:
            raise ValueError("quiz has no questions")
        return cls(questions=questions)


@dataclass
class Message:
    role: str
    content: str = ""
    user_image: Optional[UserImage] = None
    model_image_url: Optional[str] = None
    suggested_followups: Optional[List[str]] = None
    quiz: Optional[Quiz] = None

    @property
    def is_placeholder(self) -> bool:
        return self.role == MODEL and not self.content and not self.model_image_url

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.user_image is not None:
            data["userImage"] = self.user_image.to_dict()
        if self.model_image_url is not None:
            data["modelImageUrl"] = self.model_image_url
        if self.suggested_followups is not None:
            data["suggestedQuestions"] = list(self.suggested_followups)
        if self.quiz is not None:
            data["quizData"] = self.quiz.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data["role"]
        if role not in (USER, MODEL):
            raise ValueError(f"unknown message role: {role!r}")
        image = data.get("userImage")
        quiz = data.get("quizData")
        followups = data.get("suggestedQuestions")
        return cls(
            role=role,
            content=data.get("content") or "",
            user_image=UserImage.from_dict(image) if image else None,
            model_image_url=data.get("modelImageUrl"),
            suggested_followups=list(followups) if followups is not None else None,
            quiz=Quiz.from_dict(quiz) if quiz else None,
        )


Conversation = List[Message]


@dataclass
class Session:
    profile: Profile
    conversations: List[Conversation] = field(default_factory=list)
    current_conversation_index: int = 0

    @classmethod
    def new(cls, profile: Profile, welcome: str) -> "Session":
        return cls(profile=profile, conversations=[[Message(MODEL, welcome)]], current_conversation_index=0)

    @property
    def current_conversation(self) -> Conversation:
        return self.conversations[self.current_conversation_index]

    def snapshot(self) -> "Session":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.to_dict(),
            "conversations": [[m.to_dict() for m in conv] for conv in self.conversations],
            "currentConversationIndex": self.current_conversation_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        conversations = [[Message.from_dict(m) for m in conv] for conv in data["conversations"]]
        index = data["currentConversationIndex"]
        if not conversations or not 0 <= index < len(conversations):
            raise ValueError("session has no valid current conversation")
        return cls(
            profile=Profile.from_dict(data["profile"]),
            conversations=conversations,
            current_conversation_index=index,
        )


AllSessions = Dict[str, Session]


def copy_conversation(conversation: Conversation) -> Conversation:
    return [copy.deepcopy(m) for m in conversation]
