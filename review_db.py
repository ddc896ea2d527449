# review_db.py
"""
SQLAlchemy persistence for applications, phase reviews, phase configs,
cutoff runs and the audit trail.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from review_config import REVIEW_DB_URL
from review_errors import StorageError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# SQLAlchemy ORM Models

class DBApplication(Base):
    """Applicant record; this engine only ever mutates `stage`."""

    __tablename__ = "applications"

    id = Column(String(64), primary_key=True, default=_new_id)
    cycle_id = Column(String(255), nullable=False, index=True)
    track = Column(String(50), nullable=False)
    stage = Column(String(50), nullable=False)
    applicant_name = Column(String(255), nullable=True)
    applicant_email = Column(String(255), nullable=True)
    answers = Column(JSON, default=dict)
    files = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_application_cycle_stage", "cycle_id", "stage"),
    )


class DBPhaseReview(Base):
    """One reviewer's live evaluation of one application in one phase."""

    __tablename__ = "phase_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(String(255), nullable=False)
    application_id = Column(String(64), nullable=False, index=True)
    phase = Column(String(50), nullable=False)
    reviewer_email = Column(String(255), nullable=False)
    reviewer_name = Column(String(255), nullable=True)
    scores = Column(JSON, default=dict)
    notes = Column(Text, nullable=True)
    question_notes = Column(JSON, default=dict)
    referral_signal = Column(String(20), nullable=False, default="neutral")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("application_id", "phase", "reviewer_email", name="uq_phase_review_key"),
        Index("idx_review_cycle_phase", "cycle_id", "phase"),
    )


class DBPhaseConfig(Base):
    __tablename__ = "phase_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(String(255), nullable=False)
    phase = Column(String(50), nullable=False)
    scoring_categories = Column(JSON, default=list)
    min_reviewers_required = Column(Integer, nullable=False, default=2)
    referral_weights = Column(JSON, default=dict)
    interview_questions = Column(JSON, default=list)
    use_zscore_normalization = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="open")
    cutoff_applied_at = Column(DateTime(timezone=True), nullable=True)
    cutoff_applied_by = Column(String(255), nullable=True)
    cutoff_criteria = Column(JSON, nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    finalized_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("cycle_id", "phase", name="uq_phase_config_cycle_phase"),
    )


class DBCutoffRun(Base):
    """One apply-cutoff operation with its frozen ranking snapshot."""

    __tablename__ = "cutoff_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(String(255), nullable=False)
    phase = Column(String(50), nullable=False)
    track = Column(String(50), nullable=True)
    criteria = Column(JSON, default=dict)
    overrides = Column(JSON, default=list)
    ranking = Column(JSON, default=dict)
    finalized = Column(Boolean, nullable=False, default=False)
    performed_by = Column(String(255), nullable=False)
    performed_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    reverted_at = Column(DateTime(timezone=True), nullable=True)
    reverted_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_cutoff_run_cycle_phase", "cycle_id", "phase"),
    )


class DBPhaseDecision(Base):
    """Stage transition caused by a cutoff run; `previous_stage` drives revert."""

    __tablename__ = "phase_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("cutoff_runs.id"), nullable=False, index=True)
    cycle_id = Column(String(255), nullable=False)
    phase = Column(String(50), nullable=False)
    application_id = Column(String(64), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    manual = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    previous_stage = Column(String(50), nullable=False)
    new_stage = Column(String(50), nullable=False)
    performed_by = Column(String(255), nullable=False)
    performed_at = Column(DateTime(timezone=True), default=utcnow)


class DBAuditLog(Base):
    """Database model for system audit logs."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False)
    target = Column(String(255), nullable=True)
    from_state = Column(String(100), nullable=True)
    to_state = Column(String(100), nullable=True)
    metadata_ = Column("metadata", JSON, default=dict)  # 'metadata' is reserved in Base
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)


# Database handle

def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class ReviewDatabase:
    """
    Engine and session factory shared by the stores.
    Every public store operation runs inside one `transaction()`.
    """

    def __init__(self, db_url: Optional[str] = None):
        """
        Args:
            db_url: Database connection URL (defaults to REVIEW_DB_URL)
        """
        if not db_url:
            db_url = REVIEW_DB_URL

        connect_args: Dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            # API requests are served from a worker thread
            connect_args["check_same_thread"] = False

        self.db_url = db_url
        self.engine = create_engine(db_url, echo=False, future=True, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            _enable_sqlite_savepoints(self.engine)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

        Base.metadata.create_all(self.engine)
        logger.info("review_database_initialized", extra={"db_url": db_url})

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on success; roll back everything on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("review_db_transaction_failed", exc_info=True, extra={"error": str(exc)})
            raise StorageError(f"Storage failure, nothing was committed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def log_audit_event(
    session: Session,
    *,
    actor: str,
    action: str,
    target: Optional[str] = None,
    from_state: Optional[str] = None,
    to_state: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Record an audit entry in the caller's transaction so it commits with the change."""
    session.add(
        DBAuditLog(
            actor=actor,
            action=action,
            target=target,
            from_state=from_state,
            to_state=to_state,
            metadata_=metadata or {},
        )
    )


# Global instance

_database: Optional[ReviewDatabase] = None


def get_review_database() -> ReviewDatabase:
    """Get global database instance (lazy initialization)."""
    global _database

    if _database is None:
        _database = ReviewDatabase(REVIEW_DB_URL)

    return _database
