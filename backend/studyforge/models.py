import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON

from studyforge.database import Base


def _uuid_str():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(tz=timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    username = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RateLimitRecord(Base):
    __tablename__ = "rate_limits"

    # "ip_<sha256>" or "user_<id>"
    key = Column(String(128), primary_key=True)
    daily_count = Column(Integer, nullable=False, default=0)
    last_daily_reset = Column(String(10), nullable=False)
    monthly_count = Column(Integer)
    last_monthly_reset = Column(String(7))
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class HistoryEntry(Base):
    __tablename__ = "quiz_history"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(Text, nullable=False)
    topic = Column(Text, nullable=False, default="")
    score = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    percent = Column(Integer, nullable=False)
    settings = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    analytics = Column(JSON().with_variant(JSONB, "postgresql"))
    created_at = Column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("quiz_history_user_created_idx", "user_id", "created_at"),
    )
