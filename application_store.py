from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from phase_engine.phase_policy import track_filter_values
from review_db import DBApplication, ReviewDatabase, get_review_database, log_audit_event, utcnow
from review_errors import NotFoundError
from review_models import (
    Application,
    ApplicationCreate,
    ApplicationStage,
    ApplicationTrack,
)

logger = logging.getLogger(__name__)

_NAME_ANSWER_KEYS = ("name", "fullName", "full_name", "applicant_name", "first_name")
_EMAIL_ANSWER_KEYS = ("email", "applicant_email")


def _first_answer(answers: dict, keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = answers.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def to_application(row: DBApplication) -> Application:
    answers = row.answers or {}
    email = row.applicant_email or _first_answer(answers, _EMAIL_ANSWER_KEYS) or ""
    name = (
        row.applicant_name
        or _first_answer(answers, _NAME_ANSWER_KEYS)
        or (email.split("@")[0] if email else None)
        or "Unknown"
    )
    return Application(
        id=row.id,
        cycle_id=row.cycle_id,
        track=ApplicationTrack(row.track),
        stage=ApplicationStage(row.stage),
        applicant_name=name,
        applicant_email=email,
        answers=answers,
        files=row.files or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ------------------------------------------------------------------
# Session-level helpers shared with the cutoff engine
# ------------------------------------------------------------------

def load_application(session: Session, application_id: str) -> DBApplication:
    row = session.get(DBApplication, application_id)
    if row is None:
        raise NotFoundError(f"Application '{application_id}' not found")
    return row


def query_applications(
    session: Session,
    cycle_id: str,
    stages: Optional[Iterable[ApplicationStage]] = None,
    track: Optional[ApplicationTrack] = None,
) -> List[DBApplication]:
    stmt = select(DBApplication).where(DBApplication.cycle_id == cycle_id)
    if stages is not None:
        stmt = stmt.where(DBApplication.stage.in_([stage.value for stage in stages]))
    tracks = track_filter_values(track)
    if tracks is not None:
        stmt = stmt.where(DBApplication.track.in_(tracks))
    return list(session.scalars(stmt.order_by(DBApplication.id)))


def transition_stage(session: Session, application_id: str, stage: ApplicationStage) -> ApplicationStage:
    """Move one application to `stage` and return the stage it had before."""
    row = load_application(session, application_id)
    previous = ApplicationStage(row.stage)
    row.stage = stage.value
    row.updated_at = utcnow()
    session.flush()
    return previous


class ApplicationStore:
    """Read access to application records plus manual admin stage changes."""

    def __init__(self, db: Optional[ReviewDatabase] = None) -> None:
        self.db = db or get_review_database()

    def create_application(self, data: ApplicationCreate) -> Application:
        with self.db.transaction() as session:
            row = DBApplication(
                cycle_id=data.cycle_id,
                track=data.track.value,
                stage=data.stage.value,
                applicant_name=data.applicant_name,
                applicant_email=data.applicant_email.strip().lower() if data.applicant_email else None,
                answers=dict(data.answers),
                files=dict(data.files),
            )
            session.add(row)
            session.flush()
            application = to_application(row)

        logger.info(
            "application_created",
            extra={"application_id": application.id, "cycle_id": application.cycle_id},
        )
        return application

    def get_application(self, application_id: str) -> Application:
        with self.db.transaction() as session:
            return to_application(load_application(session, application_id))

    def list_applications(
        self,
        cycle_id: str,
        stages: Optional[Iterable[ApplicationStage]] = None,
        track: Optional[ApplicationTrack] = None,
    ) -> List[Application]:
        with self.db.transaction() as session:
            return [to_application(row) for row in query_applications(session, cycle_id, stages, track)]

    def update_stage(self, application_id: str, stage: ApplicationStage, *, actor: str) -> Application:
        """Manual admin stage change outside of any cutoff."""
        with self.db.transaction() as session:
            previous = transition_stage(session, application_id, stage)
            log_audit_event(
                session,
                actor=actor,
                action="application.stage_updated",
                target=application_id,
                from_state=previous.value,
                to_state=stage.value,
            )
            application = to_application(load_application(session, application_id))

        logger.info(
            "application_stage_updated",
            extra={"application_id": application_id, "from": previous.value, "to": stage.value},
        )
        return application
