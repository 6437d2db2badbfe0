"""Prompt builders and fixed learner-facing messages (Vietnamese)."""
from __future__ import annotations

from typing import Dict

from tutor_backend.runtime.session import Profile

SUGGESTION_MARKER = "[SUGGESTED_QUESTIONS]"

# Fixed messages shown to the learner.
TURN_APOLOGY = "Rất tiếc, tôi đang gặp sự cố. Vui lòng thử lại sau."
ASSISTANT_APOLOGY = "Xin lỗi, tôi đang gặp sự cố. Vui lòng thử lại."
ASSISTANT_GREETING = "Xin chào! Tôi là trợ lý AI. Tôi có thể giúp gì cho bạn hôm nay?"
QUIZ_LEAD_IN = "Tuyệt vời! Dưới đây là một bài kiểm tra nhanh dành cho bạn:"
QUIZ_FAILED = "Không thể tạo bài kiểm tra vào lúc này."
IMAGE_PROMPT_REQUEST = (
    "Vui lòng cung cấp mô tả cho hình ảnh bạn muốn tạo. Ví dụ: `/image một tế bào thực vật`"
)
IMAGE_FAILED = "Không thể tạo hình ảnh."
SPEECH_FAILED = "Không thể phát âm thanh vào lúc này."
SESSION_START_FAILED = "Không thể bắt đầu buổi học mới. Vui lòng thử lại."
CONVERSATION_START_FAILED = "Không thể bắt đầu cuộc trò chuyện mới. Vui lòng thử lại."
SUBJECT_EXISTS = "Môn học này đã tồn tại. Vui lòng chọn từ danh sách hoặc tạo một môn học với tên khác."
SUBJECT_MISSING = "Không tìm thấy môn học."
TURN_IN_PROGRESS = "Vui lòng đợi câu trả lời hiện tại hoàn tất."
EMPTY_MESSAGE = "Tin nhắn không được để trống."
NOT_SIGNED_IN = "Vui lòng đăng nhập."
UNKNOWN_VOICE = "Giọng đọc không được hỗ trợ."

ASSISTANT_SYSTEM_INSTRUCTION = "Bạn là một trợ lý AI thân thiện và hữu ích. Luôn giao tiếp bằng tiếng Việt."

QUIZ_PROMPT = (
    "Dựa trên cuộc trò chuyện của chúng ta cho đến nay, hãy tạo một bài kiểm tra ngắn "
    "(khoảng 3-5 câu hỏi) để kiểm tra sự hiểu biết của tôi. Trả lời bằng JSON theo schema được cung cấp."
)

QUIZ_SCHEMA = {
    "type": "object",
    "properties": {
        "questions": {
            "type": "array",
            "description": "Một danh sách các câu hỏi trắc nghiệm.",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string", "description": "Nội dung câu hỏi."},
                    "options": {
                        "type": "array",
                        "description": "Danh sách 4 lựa chọn.",
                        "items": {"type": "string"},
                    },
                    "answer": {"type": "string", "description": "Đáp án đúng cho câu hỏi."},
                    "explanation": {
                        "type": "string",
                        "description": "Giải thích ngắn gọn tại sao đáp án lại đúng.",
                    },
                },
                "required": ["question", "options", "answer", "explanation"],
            },
        }
    },
    "required": ["questions"],
}

REFINE_ACTIONS = ("fix_grammar", "improve_writing", "translate_en", "suggest_question")


def welcome_back_message(subject: str) -> str:
    return f"Chào mừng bạn quay trở lại với môn {subject}! Chúng ta tiếp tục từ đâu đây?"


def image_caption(prompt: str) -> str:
    return f'Đây là hình ảnh cho: "{prompt}"'


def quiz_result_message(score: int, total: int) -> str:
    return f"Bạn đã hoàn thành bài kiểm tra với số điểm {score}/{total}! Hãy tiếp tục phát huy nhé."


def generate_system_instruction(profile: Profile) -> str:
    """Tutor persona for one subject: Socratic method, follow-up block, safety rules."""
    return f"""Bạn là "Gia sư AI Đáng tin cậy" được thiết kế để hỗ trợ học sinh tự học tại nhà. Vai trò chính của bạn là cung cấp một trải nghiệm học tập cá nhân hóa, chuyên sâu và đảm bảo độ chính xác tuyệt đối của mọi thông tin về môn học {profile.subject}.

***PHƯƠNG PHÁP GIẢNG DẠY:***
1. **Phương pháp Socratic:** Không chỉ đưa ra câu trả lời, hãy đặt câu hỏi ngược lại, gợi ý, và hướng dẫn học sinh tự tìm ra giải pháp.
2. **Gợi ý câu hỏi tiếp theo:** Sau mỗi câu trả lời, hãy cung cấp 3 câu hỏi gợi ý liên quan trực tiếp đến chủ đề vừa thảo luận. Đặt chúng ở cuối câu trả lời, bắt đầu bằng một dòng chứa chính xác chuỗi ký tự: "{SUGGESTION_MARKER}". Mỗi câu hỏi nằm trên một dòng riêng, bắt đầu bằng dấu "- ".

Ví dụ định dạng đầu ra:
[Nội dung câu trả lời của bạn ở đây]
{SUGGESTION_MARKER}
- Câu hỏi gợi ý 1 là gì?
- Câu hỏi gợi ý 2 liên quan như thế nào?
- Tại sao câu hỏi gợi ý 3 lại quan trọng?

Thông tin học sinh:
- Trình độ: {profile.level}.
- Mục tiêu: {profile.goal}.
- Luôn giao tiếp bằng tiếng Việt.

***QUY TẮC AN TOÀN:***
- Từ chối các chủ đề nhạy cảm không phù hợp với môi trường học tập (nội dung 18+, bạo lực cực đoan, tự hại, ngôn từ thù ghét, hoạt động bất hợp pháp).
- Ngoại lệ: nếu chủ đề cần thiết cho môn "{profile.subject}", hãy trả lời một cách khoa học, trung lập và phù hợp lứa tuổi.
- Nếu phải từ chối, hãy trả lời lịch sự, ngắn gọn và chuyển hướng: "Là một gia sư AI, tôi không thể thảo luận về chủ đề này. Chúng ta hãy cùng quay lại với môn {profile.subject} nhé!\""""


def generate_initial_prompt(profile: Profile) -> str:
    return f"""Bạn là một gia sư AI. Hãy tạo một lời chào mừng và kế hoạch học tập cực kỳ ngắn gọn (3-4 gạch đầu dòng) cho học sinh có thông tin sau:
- Môn học: {profile.subject}
- Trình độ: {profile.level}
- Mục tiêu: {profile.goal}

Bắt đầu bằng lời chào thân thiện. **Quan trọng: Giữ toàn bộ câu trả lời dưới 80 từ.**"""


def generate_image_prompt(prompt: str) -> str:
    return f"Một hình ảnh minh họa theo phong cách giáo dục, đơn giản và rõ ràng về: {prompt}"


def generate_refine_prompt(text: str, action: str) -> str:
    """Prompt for one smart-edit action; raises ``ValueError`` for unknown actions."""
    prompts: Dict[str, str] = {
        "fix_grammar": f'Sửa lỗi chính tả và ngữ pháp tiếng Việt cho đoạn văn sau. Chỉ trả về nội dung đã sửa, không giải thích thêm: "{text}"',
        "improve_writing": f'Viết lại đoạn văn sau sao cho tự nhiên, trôi chảy và học thuật hơn. Chỉ trả về nội dung đã viết lại, không giải thích thêm: "{text}"',
        "translate_en": f'Dịch đoạn văn sau sang tiếng Anh. Chỉ trả về nội dung dịch, không giải thích thêm: "{text}"',
        "suggest_question": f'Dựa trên ngữ cảnh: "{text or "Tôi đang học bài"}", hãy gợi ý 1 câu hỏi ngắn gọn mà tôi có thể hỏi gia sư. Chỉ trả về câu hỏi.',
    }
    if action not in prompts:
        raise ValueError(f"unknown refine action: {action}")
    return prompts[action]
