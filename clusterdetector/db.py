"""
Probe history for cluster-detector.

The ClusterDetector records only hold the latest status. This module keeps
the history next to it: the last probe outcome per context and an
append-only log of status transitions and record deletions.

When DB_HOST is set the operator writes to PostgreSQL, otherwise to a SQLite
file at /tmp/cluster-detector.db.

All public functions are no-ops when the DB engine cannot be initialised,
and a DB failure never fails a reconciliation pass.
"""

import os
import logging
from datetime import datetime, timezone, timedelta
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

logger = logging.getLogger("cluster-detector.db")

# ---------------------------------------------------------------------------
# Engine setup
# ---------------------------------------------------------------------------

SQLITE_URL = "sqlite:////tmp/cluster-detector.db"


def _build_url() -> URL | str:
    host = os.environ.get("DB_HOST", "")
    if not host:
        return SQLITE_URL
    return URL.create(
        "postgresql+psycopg2",
        username=os.environ.get("DB_USER", "clusterdetector"),
        password=os.environ.get("DB_PASSWORD", ""),
        host=host,
        port=int(os.environ.get("DB_PORT", "5432")),
        database=os.environ.get("DB_NAME", "clusterdetector"),
    )


def _engine_options(backend: str) -> dict:
    if backend == "postgresql":
        return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10,
                "connect_args": {"connect_timeout": 5}}
    # SQLite connections may be handed across threads
    return {"connect_args": {"check_same_thread": False}}


_engine = None
_SessionLocal = None
db_enabled: bool = False


def init_db(url: URL | str | None = None) -> None:
    """Create the history tables and enable recording. Failures leave history disabled."""
    global _engine, _SessionLocal, db_enabled
    db_enabled = False
    try:
        url = make_url(url or _build_url())
        _engine = create_engine(url, **_engine_options(url.get_backend_name()))
        Base.metadata.create_all(_engine)
    except Exception as e:
        logger.error(f"💾 DB init failed, probe history disabled: {e}")
        return
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    db_enabled = True
    logger.info(f"💾 probe history stored in {url.render_as_string(hide_password=True)}")


@contextmanager
def get_session() -> Iterator[Session | None]:
    """One transaction: committed on exit, rolled back on error. Yields None when history is off."""
    if not db_enabled or _SessionLocal is None:
        yield None
        return
    with _SessionLocal.begin() as session:
        yield session


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class ClusterHealthRecord(Base):
    __tablename__ = "cluster_health"

    id                 = Column(Integer, primary_key=True, autoincrement=True)
    context            = Column(String(255), unique=True, nullable=False, index=True)
    cluster            = Column(String(255), nullable=False, index=True)
    user               = Column(String(255), nullable=False)
    status             = Column(String(50), index=True)
    last_error         = Column(Text)
    last_probe_at      = Column(DateTime(timezone=True), index=True)
    last_transition_at = Column(DateTime(timezone=True))


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id        = Column(Integer, primary_key=True, autoincrement=True)
    context   = Column(String(255), nullable=False, index=True)
    event     = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    detail    = Column(Text)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_health(context: str, **fields) -> None:
    """Insert or update the ClusterHealthRecord row of a context.

    last_transition_at is bumped only when the status actually changes.
    """
    if not db_enabled:
        return
    try:
        with get_session() as session:
            if session is None:
                return
            rec = session.query(ClusterHealthRecord).filter_by(context=context).first()
            if rec is None:
                rec = ClusterHealthRecord(context=context, last_transition_at=_now(), **fields)
                session.add(rec)
            else:
                if "status" in fields and fields["status"] != rec.status:
                    rec.last_transition_at = _now()
                for k, v in fields.items():
                    setattr(rec, k, v)
    except Exception as e:
        logger.error(f"record_health({context}) failed: {e}")


def forget_context(context: str) -> None:
    """Drop the ClusterHealthRecord row of a context removed from the fleet."""
    if not db_enabled:
        return
    try:
        with get_session() as session:
            if session is None:
                return
            session.query(ClusterHealthRecord).filter_by(context=context).delete()
    except Exception as e:
        logger.error(f"forget_context({context}) failed: {e}")


def log_audit(context: str, event: str, detail: str = "") -> None:
    """Append a row to audit_logs."""
    if not db_enabled:
        return
    try:
        with get_session() as session:
            if session is None:
                return
            session.add(AuditLog(
                context=context,
                event=event,
                timestamp=_now(),
                detail=detail,
            ))
    except Exception as e:
        logger.error(f"log_audit({context}, {event}) failed: {e}")


def get_cluster_health() -> list[dict]:
    """Return the last known health of every context, sorted by context."""
    if not db_enabled:
        return []
    try:
        with get_session() as session:
            if session is None:
                return []
            rows = session.query(ClusterHealthRecord).order_by(ClusterHealthRecord.context).all()
            return [
                {
                    "context": r.context,
                    "cluster": r.cluster,
                    "user": r.user,
                    "status": r.status,
                    "last_error": r.last_error,
                    "last_probe_at": r.last_probe_at.isoformat() if r.last_probe_at else "",
                    "last_transition_at": r.last_transition_at.isoformat() if r.last_transition_at else "",
                }
                for r in rows
            ]
    except Exception as e:
        logger.error(f"get_cluster_health() failed: {e}")
        return []


def get_audit_log(context: str) -> list[dict]:
    """Return audit log entries for a context, oldest first."""
    if not db_enabled:
        return []
    try:
        with get_session() as session:
            if session is None:
                return []
            rows = (
                session.query(AuditLog)
                .filter_by(context=context)
                .order_by(AuditLog.timestamp, AuditLog.id)
                .all()
            )
            return [
                {
                    "event": r.event,
                    "timestamp": r.timestamp.isoformat() if r.timestamp else "",
                    "detail": r.detail,
                }
                for r in rows
            ]
    except Exception as e:
        logger.error(f"get_audit_log({context}) failed: {e}")
        return []


def purge_old_records(days: int = 30) -> int:
    """Delete audit_logs older than N days. Returns rows deleted."""
    if not db_enabled:
        return 0
    cutoff = _now() - timedelta(days=days)
    deleted = 0
    try:
        with get_session() as session:
            if session is None:
                return 0
            deleted += session.query(AuditLog).filter(AuditLog.timestamp < cutoff).delete()
        logger.info(f"🧹 Purged {deleted} audit rows older than {days} days")
    except Exception as e:
        logger.error(f"purge_old_records() failed: {e}")
    return deleted
