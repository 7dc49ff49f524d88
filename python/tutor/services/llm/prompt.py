"""Provider-agnostic prompt rendering for answer jobs.

prompt.py produces a list of Turn objects; each adapter handles conversion
to its provider-specific format.

Initial question:
- System turn: the subject's own ai_prompt when set, otherwise the default
  tutor prompt naming the subject
- User turn: "Question: ..." plus the attached file names, if any

Follow-up:
- System turn: continuation prompt carrying the original question and answer
- History turns (user/assistant only, in conversation order)
- Current follow-up message last

Validation:
- Total prompt size must not exceed max_chars (100,000 default)
"""

from tutor.services.llm.types import Turn

# Maximum total prompt size in characters
MAX_PROMPT_CHARS = 100_000

DEFAULT_TUTOR_PROMPT = """You are an expert AI tutor specializing in {subject}. Your role is to:
1. Provide clear, accurate, and educational explanations
2. Break down complex problems step-by-step
3. Encourage learning and understanding rather than just giving answers
4. Ask clarifying questions when needed
5. Provide examples and analogies to help with comprehension
6. Be patient and supportive

Please provide a comprehensive answer to the student's question."""

CONTINUATION_PROMPT = """You are continuing a conversation with a student about their {subject} question.
Original question: "{question}"
Your previous answer: "{answer}"

Continue to help the student understand the topic. Be conversational and supportive."""


class PromptTooLargeError(Exception):
    """Raised when rendered prompt exceeds size limit."""

    def __init__(self, actual_size: int, max_size: int):
        self.actual_size = actual_size
        self.max_size = max_size
        super().__init__(f"Prompt size {actual_size} exceeds max {max_size}")


def build_system_prompt(subject_name: str, subject_prompt: str | None) -> str:
    """Subject-specific instructions win over the default tutor prompt."""
    if subject_prompt and subject_prompt.strip():
        return subject_prompt
    return DEFAULT_TUTOR_PROMPT.format(subject=subject_name)


def build_user_prompt(question_text: str, attachment_names: list[str]) -> str:
    """Render the student's question with a note about attached files."""
    prompt = f"Question: {question_text}"
    if attachment_names:
        prompt += f"\n\nAttached files: {', '.join(attachment_names)}"
        prompt += "\nPlease consider the attached files in your response if relevant."
    return prompt


def render_question_prompt(
    subject_name: str,
    subject_prompt: str | None,
    question_text: str,
    attachment_names: list[str],
) -> list[Turn]:
    """Build the turn list for answering a newly admitted question.

    Returns:
        [system, user] turns.
    """
    return [
        Turn(role="system", content=build_system_prompt(subject_name, subject_prompt)),
        Turn(role="user", content=build_user_prompt(question_text, attachment_names)),
    ]


def render_follow_up_prompt(
    subject_name: str,
    question_text: str,
    answer_text: str,
    history: list[Turn],
    message: str,
) -> list[Turn]:
    """Build the turn list for answering a follow-up message.

    Args:
        subject_name: Name of the question's subject.
        question_text: The original question.
        answer_text: The original answer.
        history: Earlier follow-up turns, oldest first. Any system turns are dropped.
        message: The follow-up being answered.

    Returns:
        System turn, then history, then the current message.
    """
    turns = [
        Turn(
            role="system",
            content=CONTINUATION_PROMPT.format(
                subject=subject_name, question=question_text, answer=answer_text
            ),
        )
    ]
    turns.extend(turn for turn in history if turn.role in ("user", "assistant"))
    turns.append(Turn(role="user", content=message))
    return turns


def validate_prompt_size(turns: list[Turn], max_chars: int = MAX_PROMPT_CHARS) -> None:
    """Validate that total prompt size is within limits.

    Raises:
        PromptTooLargeError: If total chars exceed limit.
    """
    total = sum(len(t.content) for t in turns)
    if total > max_chars:
        raise PromptTooLargeError(total, max_chars)
