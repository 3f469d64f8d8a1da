# Pytest fixtures and test database setup.
import os
import tempfile

import pytest

# Point the app at a throwaway database before any studyforge import.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="studyforge-tests-")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR}/studyforge_test.db"
)

from fastapi.testclient import TestClient  # noqa: E402

from studyforge.database import Base, SessionLocal, engine  # noqa: E402
from studyforge.schemas import QuizPayload  # noqa: E402


# Build a quiz payload; correct answers rotate through the option slots.
@pytest.fixture()
def build_quiz_payload():
    def _build(topic: str, question_count: int = 5, question_type: str = "multiple-choice"):
        questions = []
        for idx in range(question_count):
            if question_type == "true-false":
                options = ["True", "False"]
                answer_index = idx % 2
            else:
                options = [f"{topic} option {letter}" for letter in "ABCD"]
                answer_index = idx % 4
            questions.append(
                {
                    "question": f"{topic} question {idx + 1}?",
                    "options": options,
                    "answerIndex": answer_index,
                    "explanation": f"Explanation for {topic} question {idx + 1}.",
                }
            )
        return QuizPayload.model_validate({"title": f"{topic} Quiz", "questions": questions})

    return _build


# Replace the upstream generator with a local one and record its requests.
@pytest.fixture()
def fake_generator(monkeypatch, build_quiz_payload):
    calls = []

    def _generate(request):
        calls.append(request)
        return build_quiz_payload(request.content, request.count, request.question_type)

    monkeypatch.setattr("studyforge.main.generate_quiz_content", _generate)
    return calls


@pytest.fixture(autouse=True)
def rate_limit_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_IDENTITY", "user")
    monkeypatch.setenv("RATE_LIMIT_DAILY", "20")
    monkeypatch.setenv("RATE_LIMIT_MONTHLY", "0")


# Provide a clean schema for every test.
@pytest.fixture()
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


# Provide a FastAPI test client backed by the test database.
@pytest.fixture()
def client(db_session):
    from studyforge.main import app, sessions

    sessions.clear()
    with TestClient(app) as test_client:
        yield test_client
    sessions.clear()


# Create an account through the API and return its id.
@pytest.fixture()
def user_id(client):
    response = client.post("/users", json={"username": "alice", "password": "secret"})
    assert response.status_code == 201
    return response.json()["id"]
