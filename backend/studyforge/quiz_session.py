# Interactive quiz session state machine.
# A session moves configuring -> in_progress -> completed. While in progress each
# question is either answering (selection may change, lifelines usable) or
# revealed (answer recorded, explanation shown). Practice sessions built from
# missed questions are never written to history.
# Each session carries its own lock, and callers hold it for a whole transition.
import logging
import random
import threading
import time
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from studyforge.errors import (
    ActionRejected,
    GenerationInProgress,
    InvalidCount,
    SessionNotFound,
    StudyForgeError,
)
from studyforge.quiz_generation import (
    QuizRequest,
    resolve_content,
    resolve_difficulty,
    resolve_question_type,
    validate_mode,
)
from studyforge.schemas import QuizPayload, QuizQuestion, QuizSettings

logger = logging.getLogger("studyforge.session")

# The interactive form rejects counts outside this range instead of clamping.
INTERACTIVE_MIN_COUNT = 3
INTERACTIVE_MAX_COUNT = 50

HINT_MAX_CHARS = 180
REMIX_SUFFIX = " (Missed Remix)"


class SessionState(str, Enum):
    CONFIGURING = "configuring"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Phase(str, Enum):
    ANSWERING = "answering"
    REVEALED = "revealed"


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


@dataclass(frozen=True)
class AnswerRecord:
    selected: Optional[int]
    correct: int
    time_spent: int

    @property
    def is_correct(self) -> bool:
        return self.selected == self.correct


class HistoryWriter(Protocol):
    def append(self, owner_id: str, summary: Dict[str, Any]) -> Any:
        ...


Generator = Callable[[QuizRequest], QuizPayload]


# Round half away from zero for positive values (2.5 -> 3, 0.25 -> 0.3).
def round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def percent_score(score: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round_half_up(score / total * 100))


def average_response_time(response_times: List[int]) -> float:
    if not response_times:
        return 0.0
    return round_half_up(sum(response_times) / len(response_times), 1)


# Shorten an explanation to at most limit characters, cutting at the last
# sentence end in the window or else at a word boundary with an ellipsis.
def truncate_hint(text: str, limit: int = HINT_MAX_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    window = text[:limit]
    if window[-1] in ".!?" and text[limit] == " ":
        return window
    sentence_end = max(window.rfind(". "), window.rfind("! "), window.rfind("? "))
    if sentence_end >= limit // 3:
        return window[: sentence_end + 1]
    cut = text[: limit - 1]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.rstrip(" ,;:") + "…"


def validate_interactive_count(count: Any) -> int:
    message = (
        f"Please enter a whole number between {INTERACTIVE_MIN_COUNT} "
        f"and {INTERACTIVE_MAX_COUNT}"
    )
    if isinstance(count, bool):
        raise InvalidCount(message)
    if isinstance(count, str):
        count = count.strip()
        if not count.lstrip("-").isdigit():
            raise InvalidCount(message)
        count = int(count)
    if isinstance(count, float):
        if not count.is_integer():
            raise InvalidCount(message)
        count = int(count)
    if not isinstance(count, int):
        raise InvalidCount(message)
    if not INTERACTIVE_MIN_COUNT <= count <= INTERACTIVE_MAX_COUNT:
        raise InvalidCount(message)
    return count


class QuizSession:
    def __init__(
        self,
        owner_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.lock = threading.Lock()
        self.owner_id = owner_id
        self.clock = clock
        self.rng = rng or random.Random()
        self.settings = QuizSettings()
        self.content = ""
        self.practice_mode = False
        self.generating = False
        self.error: Optional[str] = None
        self._reset_play()

    def _reset_play(self) -> None:
        self.state = SessionState.CONFIGURING
        self.phase: Optional[Phase] = None
        self.quiz: Optional[QuizPayload] = None
        self.current_index = 0
        self.selected: Optional[int] = None
        self.eliminated: List[int] = []
        self.hint: Optional[str] = None
        self.score = 0
        self.current_streak = 0
        self.best_streak = 0
        self.answers: List[AnswerRecord] = []
        self.response_times: List[int] = []
        self.fifty_fifty_used = False
        self.hint_used = False
        self.save_status = SaveStatus.IDLE
        self.question_started_at: Optional[float] = None

    # -- derived values ---------------------------------------------------

    @property
    def questions(self) -> List[QuizQuestion]:
        return self.quiz.questions if self.quiz else []

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Optional[QuizQuestion]:
        if self.state != SessionState.IN_PROGRESS:
            return None
        return self.questions[self.current_index]

    @property
    def answering(self) -> bool:
        return self.state == SessionState.IN_PROGRESS and self.phase == Phase.ANSWERING

    @property
    def percent(self) -> int:
        return percent_score(self.score, self.total_questions)

    @property
    def average_response_time(self) -> float:
        return average_response_time(self.response_times)

    # -- transitions ------------------------------------------------------

    # Validate the form, call generator and start the quiz. Only a configuring
    # session may generate; on failure it stays configuring with error set.
    def generate(
        self,
        generator: Generator,
        mode: Optional[str] = "topic",
        topic: Optional[str] = None,
        study_guide: Optional[str] = None,
        question_type: Optional[str] = "multiple-choice",
        difficulty: Optional[str] = "mixed",
        count: Any = 10,
    ) -> QuizPayload:
        if self.generating:
            raise GenerationInProgress()
        if self.state != SessionState.CONFIGURING:
            raise ActionRejected("restart the quiz before generating a new one")
        self.error = None
        try:
            mode = validate_mode(mode)
            content = resolve_content(mode, topic, study_guide)
            count = validate_interactive_count(count)
        except StudyForgeError as exc:
            self.error = exc.message
            raise

        request = QuizRequest(
            mode=mode,
            content=content,
            question_type=resolve_question_type(question_type),
            difficulty=resolve_difficulty(difficulty),
            count=count,
        )
        self.generating = True
        try:
            quiz = generator(request)
        except StudyForgeError as exc:
            self.error = exc.message
            raise
        finally:
            self.generating = False

        self.settings = QuizSettings(
            count=count,
            mode=request.mode,
            question_type=request.question_type,
            difficulty=request.difficulty,
        )
        self.content = content
        self.practice_mode = False
        self._start(quiz)
        return quiz

    def _start(self, quiz: QuizPayload) -> None:
        self._reset_play()
        self.quiz = quiz
        self.state = SessionState.IN_PROGRESS
        self._enter_question(0)
        logger.info("session %s started with %s questions", self.id, len(quiz.questions))

    def _enter_question(self, index: int) -> None:
        self.current_index = index
        self.phase = Phase.ANSWERING
        self.selected = None
        self.eliminated = []
        self.hint = None
        self.question_started_at = self.clock()

    def select(self, index: int) -> bool:
        if not self.answering:
            return False
        if not 0 <= index < len(self.current_question.options):
            return False
        if index in self.eliminated:
            return False
        self.selected = index
        return True

    def submit(self, index: Optional[int] = None) -> bool:
        if not self.answering:
            return False
        if index is not None and not self.select(index):
            return False
        if self.selected is None:
            return False

        question = self.current_question
        elapsed = self.clock() - self.question_started_at
        time_spent = max(1, int(round_half_up(elapsed)))
        record = AnswerRecord(
            selected=self.selected, correct=question.answer_index, time_spent=time_spent
        )
        self.answers.append(record)
        self.response_times.append(time_spent)

        if record.is_correct:
            self.score += 1
            self.current_streak += 1
            self.best_streak = max(self.best_streak, self.current_streak)
        else:
            self.current_streak = 0
        self.phase = Phase.REVEALED
        return True

    def next(self, history: Optional[HistoryWriter] = None) -> bool:
        if self.state != SessionState.IN_PROGRESS or self.phase != Phase.REVEALED:
            return False
        if self.current_index < self.total_questions - 1:
            self._enter_question(self.current_index + 1)
            return True

        self.state = SessionState.COMPLETED
        self.phase = None
        self.selected = None
        self.eliminated = []
        self.hint = None
        logger.info(
            "session %s completed: %s/%s (%s%%)",
            self.id,
            self.score,
            self.total_questions,
            self.percent,
        )
        self.save_history(history)
        return True

    def use_fifty_fifty(self) -> bool:
        if self.fifty_fifty_used or not self.answering:
            return False
        question = self.current_question
        if len(question.options) < 4:
            return False
        incorrect = [i for i in range(len(question.options)) if i != question.answer_index]
        removed = sorted(self.rng.sample(incorrect, 2))
        self.eliminated = removed
        if self.selected in removed:
            self.selected = None
        self.fifty_fifty_used = True
        return True

    def use_hint(self) -> Optional[str]:
        if self.hint_used or not self.answering:
            return None
        explanation = self.current_question.explanation.strip()
        if not explanation:
            return None
        self.hint = truncate_hint(explanation)
        self.hint_used = True
        return self.hint

    # Practice session over the questions answered wrong or skipped.
    def retry_missed(self) -> Optional["QuizSession"]:
        if self.state != SessionState.COMPLETED:
            return None
        missed = [
            question
            for index, question in enumerate(self.questions)
            if index >= len(self.answers) or not self.answers[index].is_correct
        ]
        if not missed:
            return None

        title = self.quiz.title
        if not title.endswith(REMIX_SUFFIX):
            title = f"{title}{REMIX_SUFFIX}"
        practice = QuizSession(owner_id=self.owner_id, clock=self.clock, rng=self.rng)
        practice.settings = replace_settings(self.settings, count=len(missed))
        practice.content = self.content
        practice.practice_mode = True
        practice._start(QuizPayload(title=title, questions=list(missed)))
        return practice

    def restart(self) -> None:
        self.settings = QuizSettings()
        self.content = ""
        self.practice_mode = False
        self.error = None
        self._reset_play()

    # -- history ----------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        return {
            "title": self.quiz.title if self.quiz else "",
            "topic": self.content,
            "score": self.score,
            "total": self.total_questions,
            "percent": self.percent,
            "settings": {
                "count": self.settings.count,
                "mode": self.settings.mode,
                "questionType": self.settings.question_type,
                "difficulty": self.settings.difficulty,
            },
            "analytics": {
                "averageResponseTime": self.average_response_time,
                "bestStreak": self.best_streak,
            },
        }

    # Write the completed session to history at most once.
    def save_history(self, history: Optional[HistoryWriter] = None) -> SaveStatus:
        if (
            self.state != SessionState.COMPLETED
            or self.practice_mode
            or not self.owner_id
            or history is None
            or self.save_status in (SaveStatus.SAVING, SaveStatus.SAVED)
        ):
            return self.save_status

        self.save_status = SaveStatus.SAVING
        try:
            history.append(self.owner_id, self.summary())
        except Exception:
            logger.exception("history save failed for session %s", self.id)
            self.save_status = SaveStatus.ERROR
        else:
            self.save_status = SaveStatus.SAVED
        return self.save_status

    # -- views ------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        question_view = None
        question = self.current_question
        if question is not None:
            revealed = self.phase == Phase.REVEALED
            question_view = {
                "number": self.current_index + 1,
                "question": question.question,
                "options": list(question.options),
                "eliminated": list(self.eliminated),
                "selected": self.selected,
                "answer_index": question.answer_index if revealed else None,
                "explanation": question.explanation if revealed else None,
            }

        review = None
        if self.state == SessionState.COMPLETED:
            review = []
            for index, item in enumerate(self.questions):
                answer = self.answers[index] if index < len(self.answers) else None
                review.append(
                    {
                        "question": item.question,
                        "options": list(item.options),
                        "selected": answer.selected if answer else None,
                        "answerIndex": item.answer_index,
                        "isCorrect": bool(answer and answer.is_correct),
                        "explanation": item.explanation,
                    }
                )

        return {
            "id": self.id,
            "state": self.state.value,
            "phase": self.phase.value if self.phase else None,
            "title": self.quiz.title if self.quiz else None,
            "practice_mode": self.practice_mode,
            "settings": self.settings,
            "question_index": self.current_index,
            "total_questions": self.total_questions,
            "question": question_view,
            "score": self.score,
            "percent": self.percent,
            "answers": [
                {"selected": a.selected, "correct": a.correct, "time_spent": a.time_spent}
                for a in self.answers
            ],
            "analytics": {
                "current_streak": self.current_streak,
                "best_streak": self.best_streak,
                "response_times": list(self.response_times),
                "average_response_time": self.average_response_time,
            },
            "hint": self.hint,
            "fifty_fifty_used": self.fifty_fifty_used,
            "hint_used": self.hint_used,
            "save_status": self.save_status.value,
            "error": self.error,
            "review": review,
        }


def replace_settings(settings: QuizSettings, **changes: Any) -> QuizSettings:
    return settings.model_copy(update=changes)


# In-process store of live sessions, least recently used evicted first.
class SessionRegistry:
    def __init__(self, max_sessions: int = 1000):
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, QuizSession]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, session: QuizSession) -> QuizSession:
        with self._lock:
            self._sessions[session.id] = session
            self._sessions.move_to_end(session.id)
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("evicted idle session %s", evicted)
        return session

    def get(self, session_id: str) -> QuizSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound()
            self._sessions.move_to_end(session_id)
            return session

    # Hold the session lock for one whole transition.
    @contextmanager
    def locked(self, session_id: str) -> Iterator[QuizSession]:
        session = self.get(session_id)
        with session.lock:
            yield session

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
