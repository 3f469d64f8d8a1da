# Per-user quiz history: append, list, delete and summary statistics.
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from studyforge.errors import HistoryEntryNotFound, PersistenceError
from studyforge.models import HistoryEntry
from studyforge.quiz_session import round_half_up

logger = logging.getLogger("studyforge.history")

DEFAULT_LIST_LIMIT = 50


# Format datetimes as ISO-8601 strings with UTC fallback.
def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# Match search text literally inside a LIKE pattern.
def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def entry_to_dict(entry: HistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "title": entry.title,
        "topic": entry.topic,
        "score": entry.score,
        "total": entry.total,
        "percent": entry.percent,
        "settings": entry.settings or {},
        "analytics": entry.analytics,
        "created_at": to_iso(entry.created_at),
    }


class HistoryStore:
    def __init__(self, db: Session):
        self.db = db

    def append(self, owner_id: str, summary: Dict[str, Any]) -> HistoryEntry:
        entry = HistoryEntry(
            user_id=owner_id,
            title=summary["title"],
            topic=summary.get("topic", ""),
            score=summary["score"],
            total=summary["total"],
            percent=summary["percent"],
            settings=summary.get("settings") or {},
            analytics=summary.get("analytics"),
        )
        self.db.add(entry)
        # Nothing is committed unless the row also reads back.
        try:
            self.db.flush()
            self.db.refresh(entry)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError() from exc
        logger.info("saved history entry %s for user %s", entry.id, owner_id)
        return entry

    def list(
        self,
        owner_id: str,
        limit: Optional[int] = DEFAULT_LIST_LIMIT,
        search: Optional[str] = None,
        difficulty: Optional[str] = None,
    ) -> List[HistoryEntry]:
        query = self.db.query(HistoryEntry).filter(HistoryEntry.user_id == owner_id)
        if search and search.strip():
            needle = f"%{escape_like(search.strip().lower())}%"
            query = query.filter(
                or_(
                    HistoryEntry.title.ilike(needle, escape="\\"),
                    HistoryEntry.topic.ilike(needle, escape="\\"),
                )
            )
        entries = query.order_by(HistoryEntry.created_at.desc()).all()
        if difficulty and difficulty != "all":
            entries = [
                entry
                for entry in entries
                if (entry.settings or {}).get("difficulty", "mixed") == difficulty
            ]
        if limit is not None:
            entries = entries[:limit]
        return entries

    def delete(self, owner_id: str, entry_id: str) -> None:
        entry = (
            self.db.query(HistoryEntry)
            .filter(HistoryEntry.id == entry_id, HistoryEntry.user_id == owner_id)
            .first()
        )
        if entry is None:
            raise HistoryEntryNotFound()
        self.db.delete(entry)
        self._commit()

    def delete_all(self, owner_id: str) -> int:
        deleted = (
            self.db.query(HistoryEntry)
            .filter(HistoryEntry.user_id == owner_id)
            .delete(synchronize_session=False)
        )
        self._commit()
        logger.info("cleared %s history entries for user %s", deleted, owner_id)
        return deleted

    def summary(self, owner_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        return summarize(self.list(owner_id, limit=None), today=today)

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError() from exc


def _entry_day(entry: HistoryEntry) -> Optional[date]:
    created = entry.created_at
    if created is None:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.astimezone(timezone.utc).date()


# Consecutive active days ending today, or yesterday when today has no activity.
def study_streak(days: Iterable[date], today: date) -> int:
    day_set = set(days)
    if not day_set:
        return 0
    cursor = today
    if cursor not in day_set:
        cursor = today - timedelta(days=1)
        if cursor not in day_set:
            return 0
    streak = 0
    while cursor in day_set:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def summarize(entries: List[HistoryEntry], today: Optional[date] = None) -> Dict[str, Any]:
    today = today or datetime.now(tz=timezone.utc).date()
    if not entries:
        return {
            "total_quizzes": 0,
            "average_percent": 0,
            "best_percent": 0,
            "average_pace": 0.0,
            "study_streak": 0,
        }

    percents = [entry.percent for entry in entries]
    paces = [
        float((entry.analytics or {}).get("averageResponseTime"))
        for entry in entries
        if isinstance((entry.analytics or {}).get("averageResponseTime"), (int, float))
    ]
    return {
        "total_quizzes": len(entries),
        "average_percent": int(round_half_up(sum(percents) / len(percents))),
        "best_percent": max(percents),
        "average_pace": round_half_up(sum(paces) / len(paces), 1) if paces else 0.0,
        "study_streak": study_streak(
            (day for day in (_entry_day(entry) for entry in entries) if day), today
        ),
    }
