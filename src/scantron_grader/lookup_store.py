# scantron_grader/lookup_store.py
"""
Short-key lookup table for printed QR codes.

Each generated answer sheet gets an 8-character key; the QR code carries only
"TH:<key>" and the full identity (assignment, student, format, variant) lives
here. Rows are written when sheets are generated, read while grading, and only
ever deleted in bulk (per assignment, or by age).
"""
from __future__ import annotations
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import JSON, DateTime, String, create_engine, delete, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import LookupStoreError
from .models import LookupRecord

log = logging.getLogger(__name__)

KEY_PREFIX = "TH:"
KEY_LENGTH = 8
# no 0/O, 1/I/L
KEY_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
MAX_KEY_ATTEMPTS = 10
DEFAULT_RETENTION_DAYS = 365


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------- QR payload helpers ----------

def generate_key() -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))


def format_key_for_qr(key: str) -> str:
    return f"{KEY_PREFIX}{key}"


def is_short_key_payload(text: str) -> bool:
    return (text or "").strip().startswith(KEY_PREFIX)


def parse_qr_string(text: str) -> Optional[str]:
    """Return the key from "TH:XXXXXXXX", or None if the string is not a valid short key."""
    s = (text or "").strip()
    if not s.startswith(KEY_PREFIX):
        return None
    key = s[len(KEY_PREFIX):]
    if len(key) != KEY_LENGTH or any(c not in KEY_ALPHABET for c in key):
        return None
    return key


# ---------- schema ----------

class Base(DeclarativeBase):
    pass


class ScantronKey(Base):
    __tablename__ = "scantron_keys"

    key: Mapped[str] = mapped_column(String(KEY_LENGTH), primary_key=True)
    assignment_id: Mapped[str] = mapped_column(String(128), index=True)
    student_id: Mapped[str] = mapped_column(String(128), index=True)
    format: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    variant: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    display_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, default=_utcnow)

    def to_record(self) -> LookupRecord:
        return LookupRecord(
            key=self.key,
            assignment_id=self.assignment_id,
            student_id=self.student_id,
            format=self.format,
            variant=self.variant,
            created_at=self.created_at,
            display_metadata=dict(self.display_metadata or {}),
        )


def _enable_wal(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
    finally:
        cur.close()


# ---------- store ----------

class LookupStore:
    """Explicitly opened/closed handle on the key table. One per process is plenty."""

    def __init__(self, url: str = "sqlite:///scantron_keys.db", echo: bool = False):
        self.url = url
        self.engine = create_engine(url, echo=echo, future=True)
        if self.engine.dialect.name == "sqlite" and self.engine.url.database not in (None, "", ":memory:"):
            event.listen(self.engine, "connect", _enable_wal)
        self._sessions = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)
        self._initialized = False

    # context manager
    def __enter__(self) -> "LookupStore":
        self.initialize()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def initialize(self) -> None:
        if self._initialized:
            return
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Could not initialise lookup store at {self.url}: {e}") from e
        self._initialized = True
        log.debug("Lookup store ready: %s", self.url)

    def close(self) -> None:
        self.engine.dispose()
        self._initialized = False

    def _session(self) -> Session:
        self.initialize()
        return self._sessions()

    def _unique_key(self, s: Session, taken: set) -> str:
        for _ in range(MAX_KEY_ATTEMPTS):
            key = generate_key()
            if key in taken:
                continue
            if s.get(ScantronKey, key) is None:
                return key
        raise LookupStoreError(f"Could not generate a unique key after {MAX_KEY_ATTEMPTS} attempts")

    # ---------- writes ----------

    def create(
        self,
        assignment_id: str,
        student_id: str,
        format: Optional[str] = None,
        variant: Optional[str] = None,
        display_metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        return self.create_batch([{
            "assignment_id": assignment_id,
            "student_id": student_id,
            "format": format,
            "variant": variant,
            "display_metadata": display_metadata,
        }])[0]

    def create_batch(self, inputs: Iterable[Mapping[str, Any]]) -> List[str]:
        """Insert many rows in one transaction; keys come back in input order."""
        items = list(inputs)
        keys: List[str] = []
        try:
            with self._session() as s, s.begin():
                taken: set = set()
                for item in items:
                    key = self._unique_key(s, taken)
                    taken.add(key)
                    variant = item.get("variant")
                    s.add(ScantronKey(
                        key=key,
                        assignment_id=str(item["assignment_id"]),
                        student_id=str(item["student_id"]),
                        format=item.get("format"),
                        variant=str(variant) if variant is not None else None,
                        display_metadata=dict(item.get("display_metadata") or {}),
                        created_at=_utcnow(),
                    ))
                    keys.append(key)
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Batch insert failed: {e}") from e
        log.info("Created %d lookup key(s)", len(keys))
        return keys

    def delete_by_assignment(self, assignment_id: str) -> int:
        try:
            with self._session() as s, s.begin():
                res = s.execute(delete(ScantronKey).where(ScantronKey.assignment_id == assignment_id))
                return int(res.rowcount or 0)
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Delete failed: {e}") from e

    def cleanup_older_than(self, days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = _utcnow() - timedelta(days=days)
        try:
            with self._session() as s, s.begin():
                res = s.execute(delete(ScantronKey).where(ScantronKey.created_at < cutoff))
                n = int(res.rowcount or 0)
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Cleanup failed: {e}") from e
        if n:
            log.info("Removed %d lookup key(s) older than %d days", n, days)
        return n

    # ---------- reads ----------

    def get(self, key: str) -> Optional[LookupRecord]:
        try:
            with self._session() as s:
                row = s.get(ScantronKey, key)
                return row.to_record() if row is not None else None
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Lookup failed for {key}: {e}") from e

    def get_by_assignment(self, assignment_id: str) -> List[LookupRecord]:
        try:
            with self._session() as s:
                rows = s.scalars(
                    select(ScantronKey)
                    .where(ScantronKey.assignment_id == assignment_id)
                    .order_by(ScantronKey.created_at, ScantronKey.key)
                ).all()
                return [r.to_record() for r in rows]
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Lookup failed for assignment {assignment_id}: {e}") from e

    def stats(self) -> Dict[str, Any]:
        try:
            with self._session() as s:
                total, oldest, newest = s.execute(
                    select(func.count(ScantronKey.key), func.min(ScantronKey.created_at), func.max(ScantronKey.created_at))
                ).one()
        except SQLAlchemyError as e:
            raise LookupStoreError(f"Stats query failed: {e}") from e
        return {
            "total_records": int(total or 0),
            "oldest_record": oldest.isoformat() if oldest else None,
            "newest_record": newest.isoformat() if newest else None,
        }
