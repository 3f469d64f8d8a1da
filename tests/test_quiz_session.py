# Quiz session state machine tests.
import random

import pytest
from sqlalchemy.exc import OperationalError

from studyforge.errors import (
    ActionRejected,
    GenerationInProgress,
    InvalidCount,
    MissingContent,
    PersistenceError,
    SessionNotFound,
    UpstreamError,
)
from studyforge.quiz_session import (
    HINT_MAX_CHARS,
    Phase,
    QuizSession,
    SaveStatus,
    SessionRegistry,
    SessionState,
    average_response_time,
    percent_score,
    round_half_up,
    truncate_hint,
    validate_interactive_count,
)
from studyforge.schemas import QuizPayload


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class RecordingHistory:
    def __init__(self):
        self.entries = []

    def append(self, owner_id, summary):
        self.entries.append((owner_id, summary))


class BrokenHistory:
    def append(self, owner_id, summary):
        raise PersistenceError()


class FailingDatabaseHistory:
    def append(self, owner_id, summary):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def start_session(build_quiz_payload, clock):
    def _start(question_count=5, question_type="multiple-choice", owner_id="user-1"):
        requests = []

        def generator(request):
            requests.append(request)
            return build_quiz_payload("Biology", question_count, question_type)

        session = QuizSession(owner_id=owner_id, clock=clock, rng=random.Random(7))
        session.generate(
            generator,
            mode="topic",
            topic="Biology",
            question_type=question_type,
            count=question_count if question_count >= 3 else 3,
        )
        session.requests = requests
        return session

    return _start


# Answer the current question right or wrong, then move on.
def answer(session, correct, history=None, seconds=2.0):
    question = session.current_question
    choice = question.answer_index
    if not correct:
        choice = (choice + 1) % len(question.options)
    session.clock.now += seconds
    assert session.submit(choice)
    assert session.next(history)


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.25, 1) == 0.3
    assert round_half_up(66.666) == 67


def test_percent_score_and_average():
    assert percent_score(2, 3) == 67
    assert percent_score(1, 8) == 13
    assert percent_score(0, 0) == 0
    assert average_response_time([2, 3]) == 2.5
    assert average_response_time([1, 1, 2]) == 1.3
    assert average_response_time([]) == 0.0


@pytest.mark.parametrize("value", ["abc", "2", "51", 2.5, True, None, "-3"])
def test_interactive_count_rejects(value):
    with pytest.raises(InvalidCount) as excinfo:
        validate_interactive_count(value)
    assert excinfo.value.message == "Please enter a whole number between 3 and 50"


@pytest.mark.parametrize("value,expected", [("3", 3), (50, 50), (12.0, 12), (" 7 ", 7)])
def test_interactive_count_accepts(value, expected):
    assert validate_interactive_count(value) == expected


def test_generate_starts_first_question(start_session):
    session = start_session()

    assert session.state == SessionState.IN_PROGRESS
    assert session.phase == Phase.ANSWERING
    assert session.current_index == 0
    assert session.total_questions == 5
    assert session.settings.count == 5
    assert session.requests[0].content == "Biology"
    assert session.error is None


def test_generate_failure_keeps_configuring(clock):
    def failing(request):
        raise UpstreamError("Quiz generation failed")

    session = QuizSession(clock=clock)
    with pytest.raises(UpstreamError):
        session.generate(failing, mode="topic", topic="Biology", count=5)

    assert session.state == SessionState.CONFIGURING
    assert session.error == "Quiz generation failed"
    assert session.generating is False


def test_generate_validates_form(clock):
    session = QuizSession(clock=clock)
    with pytest.raises(MissingContent):
        session.generate(lambda request: None, mode="studyGuide", study_guide="   ")
    assert session.error == "Study guide is required"

    with pytest.raises(InvalidCount):
        session.generate(lambda request: None, mode="topic", topic="Biology", count="abc")
    assert session.state == SessionState.CONFIGURING


def test_generate_rejected_while_generating(clock):
    session = QuizSession(clock=clock)
    session.generating = True
    with pytest.raises(GenerationInProgress):
        session.generate(lambda request: None, mode="topic", topic="Biology")


# A running quiz must be restarted before another one is generated.
def test_generate_rejected_while_in_progress(start_session):
    session = start_session(question_count=3)
    session.submit(session.current_question.answer_index)
    calls = []

    with pytest.raises(ActionRejected) as excinfo:
        session.generate(calls.append, mode="topic", topic="Volcanoes", count=3)
    assert excinfo.value.status_code == 409
    assert calls == []
    assert session.state == SessionState.IN_PROGRESS
    assert session.phase == Phase.REVEALED
    assert len(session.answers) == 1
    assert session.quiz.title == "Biology Quiz"


def test_submit_requires_selection(start_session):
    session = start_session()
    assert session.submit() is False
    assert session.select(9) is False
    assert session.select(1) is True
    assert session.select(2) is True
    assert session.submit() is True
    assert session.answers[0].selected == 2
    # a revealed question is locked
    assert session.select(0) is False
    assert session.submit(0) is False


def test_time_spent_rounds_with_one_second_floor(start_session, clock):
    session = start_session()
    clock.now += 0.25
    session.submit(0)
    session.next()
    clock.now += 2.5
    session.submit(0)
    session.next()
    clock.now += 2.25
    session.submit(0)

    assert session.response_times == [1, 3, 2]
    assert session.average_response_time == 2.0


def test_score_percent_and_streaks(start_session):
    session = start_session(question_count=6)
    for correct in [True, True, False, True, True, True]:
        answer(session, correct)

    assert session.state == SessionState.COMPLETED
    assert session.score == 5
    assert session.percent == 83
    assert session.best_streak == 3
    assert session.current_streak == 3
    assert [a.is_correct for a in session.answers] == [True, True, False, True, True, True]


def test_streak_resets_on_miss(start_session):
    session = start_session(question_count=4)
    for correct in [True, True, True, False]:
        answer(session, correct)
    assert session.best_streak == 3
    assert session.current_streak == 0


def test_fifty_fifty_eliminates_two_wrong_options_once(start_session):
    session = start_session()
    question = session.current_question
    wrong = (question.answer_index + 1) % 4
    session.select(wrong)

    assert session.use_fifty_fifty() is True
    assert len(session.eliminated) == 2
    assert question.answer_index not in session.eliminated
    assert session.eliminated == sorted(session.eliminated)
    if wrong in session.eliminated:
        assert session.selected is None
    for index in session.eliminated:
        assert session.select(index) is False

    assert session.use_fifty_fifty() is False
    session.submit(question.answer_index)
    session.next()
    assert session.eliminated == []
    assert session.use_fifty_fifty() is False


def test_fifty_fifty_needs_four_options(start_session):
    session = start_session(question_type="true-false")
    assert session.use_fifty_fifty() is False
    assert session.fifty_fifty_used is False


# Lifelines only work while answering; a revealed question leaves them unused.
def test_lifelines_rejected_after_reveal(start_session):
    session = start_session()
    session.submit(session.current_question.answer_index)
    assert session.phase == Phase.REVEALED

    assert session.use_fifty_fifty() is False
    assert session.use_hint() is None
    assert session.fifty_fifty_used is False
    assert session.hint_used is False
    assert session.eliminated == []
    assert session.hint is None

    session.next()
    assert session.use_fifty_fifty() is True
    assert session.use_hint() is not None


def test_hint_is_truncated_and_single_use(clock):
    explanation = (
        "Mitochondria produce most of the cell's ATP through oxidative phosphorylation. "
        "They have their own DNA inherited from the mother. "
        "This supports the endosymbiotic theory of their bacterial origin in early eukaryotes."
    )
    quiz = QuizPayload.model_validate(
        {
            "title": "Cells",
            "questions": [
                {
                    "question": "What produces ATP?",
                    "options": ["Nucleus", "Mitochondria", "Ribosome", "Golgi"],
                    "answerIndex": 1,
                    "explanation": explanation,
                },
                {
                    "question": "What stores DNA?",
                    "options": ["Nucleus", "Mitochondria", "Ribosome", "Golgi"],
                    "answerIndex": 0,
                    "explanation": "The nucleus.",
                },
                {
                    "question": "What builds proteins?",
                    "options": ["Nucleus", "Mitochondria", "Ribosome", "Golgi"],
                    "answerIndex": 2,
                    "explanation": "",
                },
            ],
        }
    )
    session = QuizSession(clock=clock)
    session.generate(lambda request: quiz, mode="topic", topic="Cells", count=3)

    hint = session.use_hint()
    assert hint is not None
    assert len(hint) <= HINT_MAX_CHARS
    assert hint.endswith(".")
    assert explanation.startswith(hint)
    assert session.use_hint() is None

    session.submit(1)
    session.next()
    assert session.hint is None
    assert session.use_hint() is None


def test_hint_unavailable_without_explanation(clock):
    quiz = QuizPayload.model_validate(
        {
            "title": "Cells",
            "questions": [
                {"question": "Q?", "options": ["A", "B", "C", "D"], "answerIndex": 0}
            ],
        }
    )
    session = QuizSession(clock=clock)
    session.generate(lambda request: quiz, mode="topic", topic="Cells", count=3)
    assert session.use_hint() is None
    assert session.hint_used is False


def test_truncate_hint_word_boundary():
    text = "word " * 60
    hint = truncate_hint(text)
    assert len(hint) <= HINT_MAX_CHARS
    assert hint.endswith("…")
    assert "  " not in hint
    assert truncate_hint("  Short   hint. ") == "Short hint."


def test_completion_saves_history_once(start_session):
    history = RecordingHistory()
    session = start_session(question_count=3)
    for correct in [True, False, True]:
        answer(session, correct, history=history)

    assert session.save_status == SaveStatus.SAVED
    assert len(history.entries) == 1
    owner_id, summary = history.entries[0]
    assert owner_id == "user-1"
    assert summary["score"] == 2
    assert summary["total"] == 3
    assert summary["percent"] == 67
    assert summary["topic"] == "Biology"
    assert summary["settings"]["questionType"] == "multiple-choice"
    assert summary["analytics"] == {"averageResponseTime": 2.0, "bestStreak": 1}

    assert session.save_history(history) == SaveStatus.SAVED
    assert len(history.entries) == 1


def test_anonymous_sessions_are_not_saved(start_session):
    history = RecordingHistory()
    session = start_session(question_count=3, owner_id=None)
    for correct in [True, True, True]:
        answer(session, correct, history=history)
    assert session.save_status == SaveStatus.IDLE
    assert history.entries == []


def test_failed_save_sets_error_and_can_retry(start_session):
    session = start_session(question_count=3)
    for correct in [True, True, True]:
        answer(session, correct, history=BrokenHistory())
    assert session.state == SessionState.COMPLETED
    assert session.save_status == SaveStatus.ERROR

    history = RecordingHistory()
    assert session.save_history(history) == SaveStatus.SAVED
    assert len(history.entries) == 1


# Database errors from the writer also leave a retryable error status.
def test_database_failure_during_save_sets_error(start_session):
    session = start_session(question_count=3)
    for correct in [True, False, True]:
        answer(session, correct, history=FailingDatabaseHistory())
    assert session.state == SessionState.COMPLETED
    assert session.save_status == SaveStatus.ERROR
    assert session.score == 2

    history = RecordingHistory()
    assert session.save_history(history) == SaveStatus.SAVED
    assert history.entries[0][1]["score"] == 2


def test_retry_missed_builds_practice_session(start_session):
    history = RecordingHistory()
    session = start_session(question_count=5)
    for correct in [True, False, True, False, True]:
        answer(session, correct, history=history)
    assert len(history.entries) == 1

    practice = session.retry_missed()

    assert practice is not None
    assert practice.practice_mode is True
    assert practice.total_questions == 2
    assert practice.settings.count == 2
    assert practice.quiz.title == "Biology Quiz (Missed Remix)"
    assert practice.questions[0].question == session.questions[1].question
    assert practice.questions[1].question == session.questions[3].question
    assert practice.state == SessionState.IN_PROGRESS

    for correct in [False, True]:
        answer(practice, correct, history=history)
    assert practice.state == SessionState.COMPLETED
    assert practice.save_status == SaveStatus.IDLE
    assert len(history.entries) == 1

    # the suffix is not repeated on a second remix
    again = practice.retry_missed()
    assert again.quiz.title == "Biology Quiz (Missed Remix)"
    assert again.total_questions == 1


def test_retry_missed_without_misses(start_session):
    session = start_session(question_count=3)
    assert session.retry_missed() is None
    for correct in [True, True, True]:
        answer(session, correct)
    assert session.retry_missed() is None


def test_restart_returns_to_configuring(start_session):
    session = start_session()
    answer(session, True)
    session.use_hint()
    session.restart()

    assert session.state == SessionState.CONFIGURING
    assert session.quiz is None
    assert session.score == 0
    assert session.answers == []
    assert session.settings.count == 10
    assert session.fifty_fifty_used is False


def test_snapshot_hides_answer_until_revealed(start_session):
    session = start_session(question_count=3)
    view = session.snapshot()
    assert view["question"]["answer_index"] is None
    assert view["question"]["explanation"] is None
    assert view["review"] is None

    session.submit(0)
    view = session.snapshot()
    assert view["phase"] == "revealed"
    assert view["question"]["answer_index"] == session.current_question.answer_index

    session.next()
    answer(session, True)
    answer(session, False)
    view = session.snapshot()
    assert view["state"] == "completed"
    assert view["question"] is None
    assert [item["isCorrect"] for item in view["review"]] == [True, True, False]


def test_registry_evicts_oldest(clock):
    registry = SessionRegistry(max_sessions=2)
    first = registry.add(QuizSession(clock=clock))
    second = registry.add(QuizSession(clock=clock))
    registry.get(first.id)
    third = registry.add(QuizSession(clock=clock))

    assert len(registry) == 2
    assert registry.get(first.id) is first
    assert registry.get(third.id) is third
    with pytest.raises(SessionNotFound):
        registry.get(second.id)


def test_registry_locked_holds_session_lock(clock):
    registry = SessionRegistry()
    session = registry.add(QuizSession(clock=clock))

    with registry.locked(session.id) as locked:
        assert locked is session
        assert session.lock.locked()
    assert not session.lock.locked()
    with pytest.raises(SessionNotFound):
        with registry.locked("missing"):
            pass
