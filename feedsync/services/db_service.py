"""
Database service layer for the sync service.

Each store wraps a session factory and opens one short session per call,
so callers never hold a session across an HTTP round-trip:
- QueueStore: pending mutations (select, per-row attempt update, bulk delete)
- UsageStore: per-day API usage (select, insert, partial update, atomic upsert)
- ArticleStore: local articles keyed by remote id
- SyncStateStore: key-value sync metadata

SQLAlchemy errors are not caught here; callers decide whether they are fatal.
"""

from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from feedsync.models.api_usage import ApiUsage
from feedsync.models.article import Article
from feedsync.models.sync_queue import QueueEntry
from feedsync.models.sync_state import SyncState


# ============ SYNC STATE OPERATIONS ============

def get_sync_state(db: Session, key: str) -> Optional[str]:
    """Return the stored value for key, or None."""
    state = db.query(SyncState).filter(SyncState.key == key).first()
    return state.value if state else None


def set_sync_state(db: Session, key: str, value: str) -> SyncState:
    """Insert or update a key-value pair."""
    state = db.query(SyncState).filter(SyncState.key == key).first()

    if state:
        state.value = value
    else:
        state = SyncState(key=key, value=value)
        db.add(state)

    db.commit()
    db.refresh(state)
    return state


class SyncStateStore:
    """Session-managing wrapper around the sync state helpers."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        with self.session_factory() as db:
            return get_sync_state(db, key)

    def set(self, key: str, value: str) -> None:
        with self.session_factory() as db:
            set_sync_state(db, key, value)


# ============ QUEUE OPERATIONS ============

class QueueStore:
    """Pending read/starred mutations."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def enqueue(
        self,
        action_type: str,
        remote_item_id: str,
        article_id: int = None,
        created_at: datetime = None
    ) -> QueueEntry:
        """Add a mutation to the queue (used by the mutation layer)."""
        entry = QueueEntry(
            action_type=action_type,
            remote_item_id=remote_item_id,
            article_id=article_id,
            sync_attempts=0,
        )
        if created_at is not None:
            entry.created_at = created_at

        with self.session_factory() as db:
            db.add(entry)
            db.commit()
            db.refresh(entry)
            return entry

    def list_pending(self, max_attempts: int) -> list[QueueEntry]:
        """Entries still eligible for sync, oldest first."""
        with self.session_factory() as db:
            query = (
                select(QueueEntry)
                .where(QueueEntry.sync_attempts < max_attempts)
                .order_by(QueueEntry.created_at.asc(), QueueEntry.id.asc())
            )
            return list(db.scalars(query).all())

    def get(self, entry_id: int) -> Optional[QueueEntry]:
        with self.session_factory() as db:
            return db.get(QueueEntry, entry_id)

    def all(self) -> list[QueueEntry]:
        with self.session_factory() as db:
            return list(db.scalars(select(QueueEntry).order_by(QueueEntry.id)).all())

    def record_attempt(self, entry_id: int, sync_attempts: int, attempted_at: datetime) -> None:
        """Store a failed attempt for one entry."""
        with self.session_factory() as db:
            db.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id)
                .values(sync_attempts=sync_attempts, last_attempt_at=attempted_at)
            )
            db.commit()

    def delete_many(self, entry_ids: Iterable[int]) -> int:
        """Remove acknowledged entries; returns rows deleted."""
        ids = list(entry_ids)
        if not ids:
            return 0
        with self.session_factory() as db:
            result = db.execute(delete(QueueEntry).where(QueueEntry.id.in_(ids)))
            db.commit()
            return result.rowcount

    def delete_failed(self, max_attempts: int) -> list[int]:
        """Remove entries that exhausted their retries; returns their ids."""
        with self.session_factory() as db:
            ids = list(db.scalars(
                select(QueueEntry.id).where(QueueEntry.sync_attempts >= max_attempts)
            ).all())
            if ids:
                db.execute(delete(QueueEntry).where(QueueEntry.id.in_(ids)))
                db.commit()
            return ids

    def stats(self, max_attempts: int) -> dict:
        """Counts by retry state, mirroring the sync_queue_stats view."""
        with self.session_factory() as db:
            row = db.execute(
                select(
                    func.count(QueueEntry.id),
                    func.sum(case((QueueEntry.sync_attempts == 0, 1), else_=0)),
                    func.sum(case(
                        ((QueueEntry.sync_attempts > 0) & (QueueEntry.sync_attempts < max_attempts), 1),
                        else_=0,
                    )),
                    func.sum(case((QueueEntry.sync_attempts >= max_attempts, 1), else_=0)),
                    func.count(func.distinct(QueueEntry.action_type)),
                    func.min(QueueEntry.created_at),
                )
            ).one()

        total, never, retry, failed, action_types, oldest = row
        return {
            "total": total or 0,
            "pending": (total or 0) - (failed or 0),
            "never_attempted": never or 0,
            "retry_pending": retry or 0,
            "failed": failed or 0,
            "action_types": action_types or 0,
            "oldest_created_at": oldest.isoformat() if oldest else None,
        }


# ============ USAGE OPERATIONS ============

class UsageStore:
    """Per-service, per-day usage rows."""

    ATOMIC_DIALECTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}

    def __init__(self, session_factory: sessionmaker, allow_atomic: bool = True):
        self.session_factory = session_factory
        self.allow_atomic = allow_atomic

    @property
    def supports_upsert(self) -> bool:
        """True when the backend can do INSERT ... ON CONFLICT DO UPDATE."""
        if not self.allow_atomic:
            return False
        with self.session_factory() as db:
            return db.get_bind().dialect.name in self.ATOMIC_DIALECTS

    def get(self, service: str, day: date) -> Optional[ApiUsage]:
        with self.session_factory() as db:
            return db.scalars(
                select(ApiUsage).where(ApiUsage.service == service, ApiUsage.date == day)
            ).first()

    def insert(self, service: str, day: date, fields: dict) -> ApiUsage:
        fields = dict(fields)
        row = ApiUsage(service=service, date=day, count=fields.pop("count", 0), **fields)
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def update(self, row_id: int, fields: dict) -> Optional[ApiUsage]:
        """Set only the given columns."""
        with self.session_factory() as db:
            row = db.get(ApiUsage, row_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, value)
            db.commit()
            db.refresh(row)
            return row

    def upsert(self, service: str, day: date, fields: dict, increment: int = 0) -> ApiUsage:
        """
        Atomic insert-or-merge keyed on (service, date).

        Columns not named in fields keep their stored value; count moves
        by increment.
        """
        with self.session_factory() as db:
            insert_fn = self.ATOMIC_DIALECTS[db.get_bind().dialect.name]

            stmt = insert_fn(ApiUsage).values(
                service=service, date=day, count=increment, **fields
            )
            set_ = {name: stmt.excluded[name] for name in fields}
            set_["updated_at"] = func.now()
            if increment:
                set_["count"] = ApiUsage.count + increment

            db.execute(stmt.on_conflict_do_update(
                index_elements=[ApiUsage.service, ApiUsage.date],
                set_=set_,
            ))
            db.commit()

            return db.scalars(
                select(ApiUsage).where(ApiUsage.service == service, ApiUsage.date == day)
            ).one()


# ============ ARTICLE OPERATIONS ============

class ArticleStore:
    """Local articles keyed by the remote natural key."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_by_remote_ids(self, remote_ids: Iterable[str]) -> dict[str, Article]:
        ids = list(remote_ids)
        if not ids:
            return {}
        with self.session_factory() as db:
            rows = db.scalars(select(Article).where(Article.remote_id.in_(ids))).all()
            return {row.remote_id: row for row in rows}

    def get_by_remote_id(self, remote_id: str) -> Optional[Article]:
        with self.session_factory() as db:
            return db.scalars(select(Article).where(Article.remote_id == remote_id)).first()

    def save_remote_state(self, rows: list[dict]) -> tuple[int, int]:
        """
        Insert new articles and update existing ones in one transaction.

        Each row must carry remote_id; every other key is written as given.
        Returns (inserted, updated).
        """
        inserted = updated = 0
        with self.session_factory() as db:
            existing = {
                a.remote_id: a
                for a in db.scalars(
                    select(Article).where(Article.remote_id.in_([r["remote_id"] for r in rows]))
                ).all()
            } if rows else {}

            for row in rows:
                article = existing.get(row["remote_id"])
                if article is None:
                    db.add(Article(**row))
                    inserted += 1
                else:
                    for name, value in row.items():
                        setattr(article, name, value)
                    updated += 1

            db.commit()
        return inserted, updated
