import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from studyforge.config import (
    get_ai_api_key,
    get_ai_api_key_env_var,
    get_ai_base_url,
    get_ai_model,
    get_ai_provider,
)
from studyforge.errors import (
    InvalidMode,
    InvalidUpstreamFormat,
    MissingContent,
    UpstreamError,
    UpstreamParseError,
)
from studyforge.rate_limit import RateLimiter, RateLimitStatus
from studyforge.schemas import QuizPayload, QuizQuestion

logger = logging.getLogger("studyforge.generation")

MODES = ("topic", "studyGuide")
QUESTION_TYPES = ("multiple-choice", "true-false")
DIFFICULTIES = ("beginner", "intermediate", "advanced", "mixed")

# The programmatic endpoint clamps into this range.
MIN_COUNT = 3
MAX_COUNT = 20
DEFAULT_COUNT = 10

TRUE_FALSE_OPTIONS = ["True", "False"]
MAX_TITLE_TOPIC_CHARS = 60

DIFFICULTY_GUIDES = {
    "beginner": (
        "Use foundational concepts, direct wording, and straightforward distractors. "
        "Prioritize basic understanding over nuance."
    ),
    "intermediate": (
        "Use moderate complexity and scenario-based reasoning. Include some nuanced "
        "distractors that require comparison."
    ),
    "advanced": (
        "Use rigorous conceptual depth, edge cases, and higher-order reasoning. "
        "Distractors should be subtle and intellectually demanding."
    ),
    "mixed": (
        "Mix beginner, intermediate, and advanced questions in balanced proportions "
        "for varied difficulty."
    ),
}

TRUE_FALSE_SYSTEM_PROMPT = """You are a quiz generator. Return ONLY valid JSON with this shape:
{
  "title": string,
  "questions": [
    {
      "question": string,
      "options": ["True", "False"],
      "answerIndex": number,
      "explanation": string
    }
  ]
}
Rules:
- Generate TRUE/FALSE questions only.
- Provide exactly the requested number of questions.
- Options must always be ["True", "False"] exactly.
- answerIndex must be 0 (for True) or 1 (for False).
- Vary the correct answers: do not make all answers True or all answers False.
- Aim for a roughly balanced distribution of True and False answers.
- Create diverse and unique questions each time and avoid repetitive patterns.
- Explanations must be precise, concept-driven, and 1-3 sentences.
- No markdown, no extra text, JSON only."""

MULTIPLE_CHOICE_SYSTEM_PROMPT = """You are a quiz generator. Return ONLY valid JSON with this shape:
{
  "title": string,
  "questions": [
    {
      "question": string,
      "options": [string, string, string, string],
      "answerIndex": number,
      "explanation": string
    }
  ]
}
Rules:
- Generate MULTIPLE CHOICE questions only.
- Provide exactly the requested number of questions.
- Options must have 4 items and answerIndex must match the correct option (0-3).
- Vary the position of correct answers: never always use the same option slot.
- Randomize which option slot (0-3) contains the correct answer for each question.
- Make wrong options plausible but clearly distinct from the correct answer.
- Create unique and diverse questions each time and avoid repetition.
- Explanations must be precise, concept-driven, and 1-3 sentences.
- No markdown, no extra text, JSON only."""


@dataclass(frozen=True)
class QuizRequest:
    mode: str
    content: str
    question_type: str = "multiple-choice"
    difficulty: str = "mixed"
    count: int = DEFAULT_COUNT


def validate_mode(mode: Optional[str]) -> str:
    if mode not in MODES:
        raise InvalidMode()
    return mode


# Pick the content field for the mode and require it to be non-blank.
def resolve_content(mode: str, topic: Optional[str], study_guide: Optional[str]) -> str:
    raw = topic if mode == "topic" else study_guide
    content = raw.strip() if isinstance(raw, str) else ""
    if not content:
        label = "Topic" if mode == "topic" else "Study guide"
        raise MissingContent(f"{label} is required")
    return content


# Clamp a requested count into the supported range; junk falls back to the default.
def clamp_count(count: Any) -> int:
    try:
        value = int(float(count))
    except (TypeError, ValueError, OverflowError):
        value = 0
    if value == 0:
        value = DEFAULT_COUNT
    return min(max(value, MIN_COUNT), MAX_COUNT)


def resolve_question_type(question_type: Optional[str]) -> str:
    return question_type if question_type in QUESTION_TYPES else "multiple-choice"


def resolve_difficulty(difficulty: Optional[str]) -> str:
    return difficulty if difficulty in DIFFICULTIES else "mixed"


# Validate raw request fields in order and return a clamped, typed request.
def prepare_request(
    mode: Optional[str],
    topic: Optional[str] = None,
    study_guide: Optional[str] = None,
    question_type: Optional[str] = None,
    difficulty: Optional[str] = None,
    count: Any = None,
) -> QuizRequest:
    mode = validate_mode(mode)
    content = resolve_content(mode, topic, study_guide)
    return QuizRequest(
        mode=mode,
        content=content,
        question_type=resolve_question_type(question_type),
        difficulty=resolve_difficulty(difficulty),
        count=clamp_count(count),
    )


def get_system_prompt(question_type: str) -> str:
    if question_type == "true-false":
        return TRUE_FALSE_SYSTEM_PROMPT
    return MULTIPLE_CHOICE_SYSTEM_PROMPT


def build_user_prompt(request: QuizRequest, seed: Optional[str] = None) -> str:
    seed = seed or secrets.token_hex(4)
    guide = DIFFICULTY_GUIDES[request.difficulty]
    if request.mode == "topic":
        intro = f"Generate a UNIQUE and VARIED quiz on the following topic:\n\n{request.content}"
    else:
        intro = (
            "Generate a UNIQUE quiz based ONLY on the following study guide content. "
            "Do not include information outside of this content:\n\n"
            f"{request.content}"
        )
    return (
        f"{intro}\n\n"
        f"Question count: {request.count}\n"
        f"Difficulty target: {request.difficulty}\n"
        f"Difficulty guidance: {guide}\n\n"
        f"Make this quiz different from any previous quizzes. Random seed: {seed}"
    )


def max_tokens_for(count: int) -> int:
    return min(8000, 800 + count * 350)


# Parse the JSON object spanning the first "{" to the last "}".
def extract_json(text: str) -> Dict[str, Any]:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        raise UpstreamParseError()
    try:
        payload = json.loads(text[first : last + 1])
    except json.JSONDecodeError as exc:
        raise UpstreamParseError() from exc
    if not isinstance(payload, dict):
        raise UpstreamParseError()
    return payload


def _coerce_question(raw: Any, question_type: str) -> QuizQuestion:
    if not isinstance(raw, dict):
        raise ValueError("question must be an object")
    item = dict(raw)
    if question_type == "true-false":
        options = item.get("options")
        index = item.get("answerIndex", item.get("answer_index"))
        # Some generators emit ["False", "True"]; keep the meaning, fix the order.
        if (
            isinstance(options, list)
            and [str(option).strip().lower() for option in options] == ["false", "true"]
            and index in (0, 1)
        ):
            index = 1 - index
        item["options"] = list(TRUE_FALSE_OPTIONS)
        item["answerIndex"] = index
    return QuizQuestion.model_validate(item)


# Turn raw generator text into a quiz of at most request.count questions.
# Malformed questions are dropped and a short quiz is never padded.
def normalize_quiz_response(raw_text: str, request: QuizRequest) -> QuizPayload:
    payload = extract_json(raw_text)
    raw_questions = payload.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise InvalidUpstreamFormat()

    questions: List[QuizQuestion] = []
    for position, raw in enumerate(raw_questions, start=1):
        try:
            question = _coerce_question(raw, request.question_type)
        except (PydanticValidationError, ValueError, TypeError) as exc:
            logger.warning("dropping malformed question %s: %s", position, exc)
            continue
        if request.question_type == "multiple-choice" and len(question.options) != 4:
            logger.warning("dropping question %s with %s options", position, len(question.options))
            continue
        questions.append(question)

    if not questions:
        raise InvalidUpstreamFormat()
    if len(questions) > request.count:
        questions = questions[: request.count]
    elif len(questions) < request.count:
        logger.info("generator returned %s of %s questions", len(questions), request.count)

    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        title = f"{request.content[:MAX_TITLE_TOPIC_CHARS].strip()} Quiz"
    return QuizPayload(title=title.strip(), questions=questions)


def request_completion(system_prompt: str, user_prompt: str, max_tokens: int) -> str:
    provider = get_ai_provider()
    api_key = get_ai_api_key(provider)
    if not api_key:
        raise UpstreamError(f"{get_ai_api_key_env_var(provider)} is not configured")

    from openai import OpenAI

    client = OpenAI(api_key=api_key, base_url=get_ai_base_url(provider))
    try:
        response = client.chat.completions.create(
            model=get_ai_model(provider),
            temperature=0.9,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
    except Exception as exc:
        logger.exception("upstream %s request failed", provider)
        raise UpstreamError() from exc
    if not response.choices:
        return ""
    return response.choices[0].message.content or ""


# Generate and normalize a quiz for an already-validated request.
def generate_quiz_content(request: QuizRequest) -> QuizPayload:
    raw_text = request_completion(
        get_system_prompt(request.question_type),
        build_user_prompt(request),
        max_tokens_for(request.count),
    )
    return normalize_quiz_response(raw_text, request)


# Consume quota for the identity, then generate; a denial never reaches upstream.
def build_quiz(
    request: QuizRequest,
    identity: str,
    limiter: RateLimiter,
    generator=None,
) -> Tuple[QuizPayload, RateLimitStatus]:
    remaining = limiter.consume_or_raise(identity)
    generate = generator or generate_quiz_content
    quiz = generate(request)
    logger.info(
        "generated %s-question %s quiz for %s", len(quiz.questions), request.question_type, identity
    )
    return quiz, remaining
