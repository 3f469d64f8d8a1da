# Pydantic request/response schemas.
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Mode = Literal["topic", "studyGuide"]
QuestionType = Literal["multiple-choice", "true-false"]
Difficulty = Literal["beginner", "intermediate", "advanced", "mixed"]


# Base model that speaks camelCase on the wire and snake_case in Python.
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# A single generated question.
class QuizQuestion(CamelModel):
    question: str
    options: List[str] = Field(..., min_length=2)
    answer_index: int
    explanation: str = ""

    @model_validator(mode="after")
    def check_answer_index(self):
        if not 0 <= self.answer_index < len(self.options):
            raise ValueError("answerIndex must reference one of the options")
        return self


# A generated quiz: title plus a non-empty ordered list of questions.
class QuizPayload(CamelModel):
    title: str
    questions: List[QuizQuestion] = Field(..., min_length=1)


# Settings a quiz was generated with.
class QuizSettings(CamelModel):
    count: int = 10
    mode: Mode = "topic"
    question_type: QuestionType = "multiple-choice"
    difficulty: Difficulty = "mixed"


# Request payload for the programmatic generation endpoint. Fields stay loose so
# the builder can report its own validation errors in order.
class QuizGenerateCreate(CamelModel):
    mode: Optional[str] = None
    topic: Optional[str] = None
    study_guide: Optional[str] = None
    question_type: Optional[str] = None
    difficulty: Optional[str] = None
    count: Optional[Any] = None
    user_id: Optional[str] = None


# Remaining generation quota.
class RateLimitStatusOut(CamelModel):
    daily: int
    daily_limit: int
    monthly: Optional[int] = None
    monthly_limit: Optional[int] = None


# Response model for a generated quiz.
class QuizGenerateOut(QuizPayload):
    rate_limit: Optional[RateLimitStatusOut] = None


# Request payload for creating a user.
class UserCreate(CamelModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


# Response model for a created user.
class UserOut(CamelModel):
    id: str
    username: str
    created_at: str
    message: str


# Request payload for creating a session.
class SessionCreate(CamelModel):
    username: str
    password: str


# Response model for a created session.
class SessionOut(CamelModel):
    user_id: str
    username: str


# Request payload for starting an interactive quiz.
class PlayCreate(CamelModel):
    user_id: Optional[str] = None
    mode: Optional[str] = "topic"
    topic: Optional[str] = None
    study_guide: Optional[str] = None
    question_type: Optional[str] = "multiple-choice"
    difficulty: Optional[str] = "mixed"
    count: Optional[Any] = 10


# Request payload for selecting an option.
class SelectCreate(CamelModel):
    index: int


# Request payload for submitting; the current selection is used when omitted.
class SubmitCreate(CamelModel):
    index: Optional[int] = None


# Question as shown to the player; answer fields appear once revealed.
class QuestionView(CamelModel):
    number: int
    question: str
    options: List[str]
    eliminated: List[int]
    selected: Optional[int] = None
    answer_index: Optional[int] = None
    explanation: Optional[str] = None


# Per-question answer record.
class AnswerRecordOut(CamelModel):
    selected: Optional[int]
    correct: int
    time_spent: int


# Streak and pace analytics for a session.
class AnalyticsOut(CamelModel):
    current_streak: int
    best_streak: int
    response_times: List[int]
    average_response_time: float


# Full interactive session view.
class PlayOut(CamelModel):
    id: str
    state: str
    phase: Optional[str] = None
    title: Optional[str] = None
    practice_mode: bool
    settings: QuizSettings
    question_index: int
    total_questions: int
    question: Optional[QuestionView] = None
    score: int
    percent: int
    answers: List[AnswerRecordOut]
    analytics: AnalyticsOut
    hint: Optional[str] = None
    fifty_fifty_used: bool
    hint_used: bool
    save_status: str
    error: Optional[str] = None
    review: Optional[List[Dict[str, Any]]] = None


# Persisted history entry.
class HistoryEntryOut(CamelModel):
    id: str
    title: str
    topic: str
    score: int
    total: int
    percent: int
    settings: Dict[str, Any]
    analytics: Optional[Dict[str, Any]] = None
    created_at: str


# Aggregate statistics over a user's history.
class HistorySummaryOut(CamelModel):
    total_quizzes: int
    average_percent: int
    best_percent: int
    average_pace: float
    study_streak: int


# Response for bulk history deletion.
class HistoryClearOut(CamelModel):
    deleted: int


# Suggested topic for the quiz form.
class TrendingTopic(CamelModel):
    id: str
    title: str
    category: str
    icon: str


# Response model for trending topics.
class TrendingTopicsOut(CamelModel):
    topics: List[TrendingTopic]


# Text extracted from an uploaded study document.
class DocumentTextOut(CamelModel):
    filename: str
    text: str
    characters: int
