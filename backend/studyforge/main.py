# FastAPI app, routes, and quiz flow handlers.
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import List, Optional

import logging
import random
import time

from fastapi import Depends, FastAPI, File, Query, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studyforge.client_ip import require_client_ip
from studyforge.config import get_settings
from studyforge.database import Base, engine, get_db
from studyforge.documents import extract_text
from studyforge.errors import (
    ActionRejected,
    AuthenticationRequired,
    StudyForgeError,
    ValidationError,
)
from studyforge.history import HistoryStore, entry_to_dict, to_iso
from studyforge.models import User
from studyforge.quiz_generation import (
    QuizRequest,
    build_quiz,
    clamp_count,
    generate_quiz_content,
    prepare_request,
)
from studyforge.quiz_session import QuizSession, SessionRegistry
from studyforge.rate_limit import RateLimiter, RateLimitStatus, ip_identity, user_identity
from studyforge.schemas import (
    DocumentTextOut,
    HistoryClearOut,
    HistoryEntryOut,
    HistorySummaryOut,
    PlayCreate,
    PlayOut,
    QuizGenerateCreate,
    QuizGenerateOut,
    RateLimitStatusOut,
    SelectCreate,
    SessionCreate,
    SessionOut,
    SubmitCreate,
    TrendingTopicsOut,
    UserCreate,
    UserOut,
)
from studyforge.security import generate_salt, hash_password, verify_password

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("studyforge")

TRENDING_TOPICS = [
    {"id": "1", "title": "Artificial Intelligence & Machine Learning", "category": "Technology", "icon": "Brain"},
    {"id": "2", "title": "World War II History", "category": "History", "icon": "Globe"},
    {"id": "3", "title": "Organic Chemistry Reactions", "category": "Science", "icon": "FlaskConical"},
    {"id": "4", "title": "Spanish Verb Conjugations", "category": "Language", "icon": "Languages"},
    {"id": "5", "title": "Calculus: Derivatives & Integrals", "category": "Math", "icon": "Calculator"},
    {"id": "6", "title": "Human Anatomy & Physiology", "category": "Biology", "icon": "Heart"},
    {"id": "7", "title": "JavaScript ES6+ Features", "category": "Programming", "icon": "Code"},
    {"id": "8", "title": "Climate Change & Environment", "category": "Science", "icon": "Leaf"},
    {"id": "9", "title": "Ancient Greek Philosophy", "category": "Philosophy", "icon": "BookOpen"},
    {"id": "10", "title": "Quantum Mechanics Basics", "category": "Physics", "icon": "Atom"},
]
TRENDING_SAMPLE_SIZE = 5


# Create database tables on app startup.
@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("StudyForge API started")
    yield


app = FastAPI(title="StudyForge API", lifespan=lifespan)
sessions = SessionRegistry()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Log every request with its status and duration.
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start_time
    logger.info(
        "%s %s - %s - %.3fs",
        request.method,
        request.url.path,
        response.status_code,
        duration,
    )
    return response


# Render domain errors as {"error": ...} with their own status code.
@app.exception_handler(StudyForgeError)
async def studyforge_error_handler(request: Request, exc: StudyForgeError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Server error"},
    )


def build_rate_limiter(db: Session) -> RateLimiter:
    current = get_settings()
    return RateLimiter(
        db,
        daily_limit=current.rate_limit_daily,
        monthly_limit=current.rate_limit_monthly,
    )


# Look up a user by id or reject the request as unauthenticated.
def require_user(db: Session, user_id: Optional[str]) -> User:
    if not user_id:
        raise AuthenticationRequired()
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationRequired("account not found. create an account.")
    return user


# Rate-limit identity for the active policy: hashed client IP or user id.
def resolve_identity(request: Request, db: Session, user_id: Optional[str]) -> str:
    if get_settings().rate_limit_identity == "ip":
        peer = request.client.host if request.client else None
        return ip_identity(require_client_ip(request.headers, peer))
    return user_identity(require_user(db, user_id).id)


def set_rate_limit_headers(response: Response, remaining: RateLimitStatus) -> None:
    response.headers["X-RateLimit-Remaining-Daily"] = str(remaining.daily)
    if remaining.monthly_limit is not None:
        response.headers["X-RateLimit-Remaining-Monthly"] = str(remaining.monthly)


def play_out(session: QuizSession) -> PlayOut:
    return PlayOut(**session.snapshot())


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "studyforge", "timestamp": time.time()}


# Create a new user and persist hashed credentials.
@app.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    salt = generate_salt()
    user = User(
        username=payload.username,
        password_hash=hash_password(payload.password, salt),
        password_salt=salt,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "username already exists"},
        )
    db.refresh(user)
    return UserOut(
        id=user.id,
        username=user.username,
        created_at=to_iso(user.created_at),
        message="account created",
    )


# Verify credentials and return a session payload.
@app.post("/sessions", response_model=SessionOut)
def create_session(payload: SessionCreate, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.username == payload.username).first()
    if not user:
        raise AuthenticationRequired("account not found. create an account.")
    if not verify_password(payload.password, user.password_salt, user.password_hash):
        raise AuthenticationRequired("invalid")
    return SessionOut(user_id=user.id, username=user.username)


# Generate a quiz for a programmatic caller; counts are clamped, not rejected.
@app.post("/api/quiz", response_model=QuizGenerateOut, response_model_exclude_none=True)
def generate_quiz(
    payload: QuizGenerateCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    quiz_request = prepare_request(
        payload.mode,
        topic=payload.topic,
        study_guide=payload.study_guide,
        question_type=payload.question_type,
        difficulty=payload.difficulty,
        count=payload.count,
    )
    identity = resolve_identity(request, db, payload.user_id)
    quiz, remaining = build_quiz(
        quiz_request, identity, build_rate_limiter(db), generator=generate_quiz_content
    )
    set_rate_limit_headers(response, remaining)
    return QuizGenerateOut(
        title=quiz.title,
        questions=quiz.questions,
        rate_limit=RateLimitStatusOut.model_validate(remaining.to_dict()),
    )


# Report remaining quota without consuming any.
@app.get(
    "/api/rate-limit-status",
    response_model=RateLimitStatusOut,
    response_model_exclude_none=True,
)
def rate_limit_status(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    if get_settings().rate_limit_identity == "user" and not user_id:
        raise ValidationError("userId is required")
    identity = resolve_identity(request, db, user_id)
    remaining = build_rate_limiter(db).get_status(identity)
    return RateLimitStatusOut.model_validate(remaining.to_dict())


@app.get("/api/trending-topics", response_model=TrendingTopicsOut)
def trending_topics():
    return {"topics": random.sample(TRENDING_TOPICS, TRENDING_SAMPLE_SIZE)}


# Extract study-guide text from an uploaded document.
@app.post("/api/documents/extract", response_model=DocumentTextOut)
def extract_document(file: UploadFile = File(...)):
    data = file.file.read()
    text = extract_text(file.filename or "", data)
    logger.info("extracted %s characters from %s", len(text), file.filename)
    return DocumentTextOut(filename=file.filename or "", text=text, characters=len(text))


# Run an interactive generation for a session, going through the quota and the
# programmatic clamp exactly like a browser calling /api/quiz would.
def run_generation(
    session: QuizSession,
    payload: PlayCreate,
    request: Request,
    response: Response,
    db: Session,
) -> None:
    limiter = build_rate_limiter(db)
    quota = {}

    def generator(quiz_request: QuizRequest):
        identity = resolve_identity(request, db, session.owner_id)
        clamped = replace(quiz_request, count=clamp_count(quiz_request.count))
        quiz, remaining = build_quiz(
            clamped, identity, limiter, generator=generate_quiz_content
        )
        quota["remaining"] = remaining
        return quiz

    session.generate(
        generator,
        mode=payload.mode,
        topic=payload.topic,
        study_guide=payload.study_guide,
        question_type=payload.question_type,
        difficulty=payload.difficulty,
        count=payload.count,
    )
    if "remaining" in quota:
        set_rate_limit_headers(response, quota["remaining"])


# Start an interactive quiz session.
@app.post("/api/play", response_model=PlayOut, status_code=status.HTTP_201_CREATED)
def create_play_session(
    payload: PlayCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    owner_id = require_user(db, payload.user_id).id if payload.user_id else None
    session = QuizSession(owner_id=owner_id)
    run_generation(session, payload, request, response, db)
    sessions.add(session)
    return play_out(session)


@app.get("/api/play/{session_id}", response_model=PlayOut)
def get_play_session(session_id: str):
    with sessions.locked(session_id) as session:
        return play_out(session)


# Generate again within an existing session, e.g. after a restart.
@app.post("/api/play/{session_id}/generate", response_model=PlayOut)
def regenerate_play_session(
    session_id: str,
    payload: PlayCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    with sessions.locked(session_id) as session:
        run_generation(session, payload, request, response, db)
        return play_out(session)


@app.post("/api/play/{session_id}/select", response_model=PlayOut)
def select_option(session_id: str, payload: SelectCreate):
    with sessions.locked(session_id) as session:
        if not session.select(payload.index):
            raise ActionRejected("option cannot be selected")
        return play_out(session)


@app.post("/api/play/{session_id}/submit", response_model=PlayOut)
def submit_answer(session_id: str, payload: Optional[SubmitCreate] = None):
    with sessions.locked(session_id) as session:
        session.submit(payload.index if payload else None)
        return play_out(session)


# Advance to the next question; finishing the quiz saves it to history.
@app.post("/api/play/{session_id}/next", response_model=PlayOut)
def next_question(session_id: str, db: Session = Depends(get_db)):
    with sessions.locked(session_id) as session:
        session.next(history=HistoryStore(db))
        return play_out(session)


@app.post("/api/play/{session_id}/fifty-fifty", response_model=PlayOut)
def use_fifty_fifty(session_id: str):
    with sessions.locked(session_id) as session:
        session.use_fifty_fifty()
        return play_out(session)


@app.post("/api/play/{session_id}/hint", response_model=PlayOut)
def use_hint(session_id: str):
    with sessions.locked(session_id) as session:
        session.use_hint()
        return play_out(session)


# Retry a failed history save for a completed session.
@app.post("/api/play/{session_id}/save", response_model=PlayOut)
def save_play_session(session_id: str, db: Session = Depends(get_db)):
    with sessions.locked(session_id) as session:
        session.save_history(HistoryStore(db))
        return play_out(session)


# Start a practice session over the questions missed in a completed one.
@app.post(
    "/api/play/{session_id}/retry-missed",
    response_model=PlayOut,
    status_code=status.HTTP_201_CREATED,
)
def retry_missed(session_id: str):
    with sessions.locked(session_id) as session:
        practice = session.retry_missed()
        if practice is None:
            raise ActionRejected("no missed questions to retry")
        sessions.add(practice)
        return play_out(practice)


@app.post("/api/play/{session_id}/restart", response_model=PlayOut)
def restart_play_session(session_id: str):
    with sessions.locked(session_id) as session:
        session.restart()
        return play_out(session)


# Return a user's quiz history, most recent first.
@app.get("/api/history", response_model=List[HistoryEntryOut])
def list_history(
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    search: Optional[str] = Query(None),
    difficulty: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    user = require_user(db, user_id)
    store = HistoryStore(db)
    entries = store.list(user.id, limit=limit, search=search, difficulty=difficulty)
    return [HistoryEntryOut(**entry_to_dict(entry)) for entry in entries]


@app.get("/api/history/summary", response_model=HistorySummaryOut)
def history_summary(
    user_id: Optional[str] = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    user = require_user(db, user_id)
    return HistorySummaryOut(**HistoryStore(db).summary(user.id))


@app.delete("/api/history/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_history_entry(
    entry_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    user = require_user(db, user_id)
    HistoryStore(db).delete(user.id, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.delete("/api/history", response_model=HistoryClearOut)
def clear_history(
    user_id: Optional[str] = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    user = require_user(db, user_id)
    deleted = HistoryStore(db).delete_all(user.id)
    return HistoryClearOut(deleted=deleted)
