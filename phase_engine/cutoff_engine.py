"""
Cutoff, finalization and phase lifecycle.

    open --apply_cutoff(finalize)/finalize_phase--> finalized
    finalized --unlock_phase--> open            (stages and decisions kept)
    any --revert_phase--> open                  (stages restored)

Every write runs in one database transaction. Status changes are
compare-and-swap updates so two admins racing to finalize cannot both win.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import application_store
from notification_jobs import dispatch_cutoff_notification
from phase_config_store import ensure_config_row, to_phase_config
from phase_engine.completeness_tracker import summarize_completeness
from phase_engine.phase_inputs import PhaseInputs, load_phase_inputs
from phase_engine.phase_policy import target_stage
from phase_engine.ranking_builder import build_phase_ranking
from review_config import get_required_reviewers
from review_db import (
    DBCutoffRun,
    DBPhaseConfig,
    DBPhaseDecision,
    ReviewDatabase,
    get_review_database,
    log_audit_event,
    utcnow,
)
from review_errors import (
    IncompleteReviewsError,
    NothingToRevertError,
    PhaseLockedError,
    PhaseStateError,
    ValidationError,
)
from review_models import (
    ApplicationStage,
    ApplicationTrack,
    CutoffCriteria,
    CutoffDecision,
    CutoffPreview,
    CutoffResult,
    CutoffType,
    DecisionAction,
    ManualOverride,
    PhaseConfig,
    PhaseDecision,
    PhaseRanking,
    PhaseStatus,
    RankedApplicant,
    ReviewPhase,
    RevertResult,
)
from slack_service import CutoffNotifier

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Decision rules
# ------------------------------------------------------------------

def natural_decisions(entries: Iterable[RankedApplicant], criteria: CutoffCriteria) -> Dict[str, DecisionAction]:
    decisions = {}
    for entry in entries:
        if criteria.type == CutoffType.TOP_N:
            advance = entry.rank <= criteria.top_n
        elif criteria.type == CutoffType.MIN_SCORE:
            advance = entry.weighted_score is not None and entry.weighted_score >= criteria.min_score
        else:
            advance = False
        decisions[entry.application_id] = DecisionAction.ADVANCE if advance else DecisionAction.REJECT
    return decisions


def resolve_decisions(
    entries: List[RankedApplicant],
    criteria: CutoffCriteria,
    overrides: Optional[Iterable[ManualOverride]] = None,
) -> List[CutoffDecision]:
    """Natural decision per ranked applicant with manual overrides layered on top."""
    overrides = list(overrides or [])
    ranked_ids = {entry.application_id for entry in entries}

    by_application: Dict[str, ManualOverride] = {}
    for override in overrides:
        if override.application_id not in ranked_ids:
            raise ValidationError(
                f"Override for '{override.application_id}' does not match an applicant in this phase"
            )
        if override.application_id in by_application:
            raise ValidationError(f"Duplicate override for '{override.application_id}'")
        by_application[override.application_id] = override

    natural = natural_decisions(entries, criteria)
    decisions = []
    for entry in entries:
        override = by_application.get(entry.application_id)
        if override is not None:
            decisions.append(
                CutoffDecision(
                    application_id=entry.application_id,
                    rank=entry.rank,
                    action=override.action,
                    manual=True,
                    reason=override.reason or None,
                )
            )
        else:
            decisions.append(
                CutoffDecision(
                    application_id=entry.application_id,
                    rank=entry.rank,
                    action=natural[entry.application_id],
                )
            )
    return decisions


def toggle_override(
    overrides: Iterable[ManualOverride],
    application_id: str,
    natural_action: DecisionAction,
    reason: str = "",
) -> List[ManualOverride]:
    """Flip an applicant against its natural decision, or drop an existing flip."""
    current = list(overrides)
    remaining = [o for o in current if o.application_id != application_id]
    if len(remaining) != len(current):
        return remaining

    flipped = DecisionAction.REJECT if natural_action == DecisionAction.ADVANCE else DecisionAction.ADVANCE
    return remaining + [ManualOverride(application_id=application_id, action=flipped, reason=reason)]


def _annotate(ranking: PhaseRanking, decisions: List[CutoffDecision]) -> None:
    by_application = {decision.application_id: decision for decision in decisions}
    for entry in ranking.entries:
        decision = by_application[entry.application_id]
        entry.decision = decision.action
        entry.manual_decision = decision.manual
        entry.decision_reason = decision.reason


def to_phase_decision(row: DBPhaseDecision) -> PhaseDecision:
    return PhaseDecision(
        run_id=row.run_id,
        cycle_id=row.cycle_id,
        phase=ReviewPhase(row.phase),
        application_id=row.application_id,
        action=DecisionAction(row.action),
        manual=bool(row.manual),
        reason=row.reason,
        previous_stage=ApplicationStage(row.previous_stage),
        new_stage=ApplicationStage(row.new_stage),
        performed_by=row.performed_by,
        performed_at=row.performed_at,
    )


class CutoffEngine:
    def __init__(
        self,
        db: Optional[ReviewDatabase] = None,
        notifier: Optional[CutoffNotifier] = None,
        reviewer_roster: Optional[Iterable[str]] = None,
    ) -> None:
        self.db = db or get_review_database()
        self.notifier = notifier
        self.reviewer_roster = list(get_required_reviewers() if reviewer_roster is None else reviewer_roster)

    # -------------------------------
    # Internal helpers
    # -------------------------------
    def _check_complete(self, inputs: PhaseInputs) -> None:
        snapshot = summarize_completeness(inputs, self.reviewer_roster)
        if snapshot.incomplete_reviewers:
            raise IncompleteReviewsError(snapshot.incomplete_reviewers, snapshot.total_applicants)

    @staticmethod
    def _swap_status(session: Session, config_row: DBPhaseConfig, expected: PhaseStatus, **values) -> bool:
        result = session.execute(
            update(DBPhaseConfig)
            .where(DBPhaseConfig.id == config_row.id, DBPhaseConfig.status == expected.value)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        swapped = result.rowcount == 1
        if swapped:
            session.refresh(config_row)
        return swapped

    # -------------------------------
    # Read-only
    # -------------------------------
    def preview_cutoff(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        track: Optional[ApplicationTrack],
        criteria: CutoffCriteria,
        overrides: Optional[Iterable[ManualOverride]] = None,
    ) -> CutoffPreview:
        with self.db.transaction() as session:
            inputs = load_phase_inputs(session, cycle_id, phase, track)
        ranking = build_phase_ranking(inputs)
        decisions = resolve_decisions(ranking.entries, criteria, overrides)
        _annotate(ranking, decisions)
        return CutoffPreview(
            cycle_id=cycle_id,
            phase=phase,
            track=track,
            criteria=criteria,
            ranking=ranking,
            decisions=decisions,
        )

    def get_phase_decisions(self, cycle_id: str, phase: ReviewPhase) -> List[PhaseDecision]:
        """Decisions of every cutoff run of the phase that has not been reverted."""
        with self.db.transaction() as session:
            stmt = (
                select(DBPhaseDecision)
                .join(DBCutoffRun, DBCutoffRun.id == DBPhaseDecision.run_id)
                .where(
                    DBPhaseDecision.cycle_id == cycle_id,
                    DBPhaseDecision.phase == phase.value,
                    DBCutoffRun.reverted_at.is_(None),
                )
                .order_by(DBPhaseDecision.run_id, DBPhaseDecision.id)
            )
            return [to_phase_decision(row) for row in session.scalars(stmt)]

    # -------------------------------
    # Cutoff
    # -------------------------------
    def apply_cutoff(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        track: Optional[ApplicationTrack],
        criteria: CutoffCriteria,
        overrides: Optional[Iterable[ManualOverride]],
        actor: str,
        force_finalize: bool = False,
        finalize: bool = True,
        notify: bool = False,
    ) -> CutoffResult:
        """
        Advance or reject every applicant in the affected set and, unless
        `finalize` is False, lock the phase.

        The ranking is recomputed inside the write transaction, so it reflects
        every review committed before the cutoff started. Either all stage
        transitions, decision records, the ranking snapshot and the status
        change commit, or none of them do.

        Raises:
            PhaseLockedError: phase already finalized (including a lost race)
            IncompleteReviewsError: finalizing with reviews outstanding
            ValidationError: override for an applicant outside the affected set
            StorageError: storage failure, nothing committed
        """
        overrides = list(overrides or [])

        with self.db.transaction() as session:
            config_row = ensure_config_row(session, cycle_id, phase)
            if config_row.status == PhaseStatus.FINALIZED.value:
                raise PhaseLockedError(cycle_id, phase.value)

            inputs = load_phase_inputs(session, cycle_id, phase, track)
            if finalize and not force_finalize:
                self._check_complete(inputs)

            ranking = build_phase_ranking(inputs)
            decisions = resolve_decisions(ranking.entries, criteria, overrides)
            _annotate(ranking, decisions)

            now = utcnow()
            run = DBCutoffRun(
                cycle_id=cycle_id,
                phase=phase.value,
                track=track.value if track else None,
                criteria=criteria.model_dump(mode="json"),
                overrides=[o.model_dump(mode="json") for o in overrides],
                ranking={},
                finalized=finalize,
                performed_by=actor,
                performed_at=now,
            )
            session.add(run)
            session.flush()

            phase_decisions: List[PhaseDecision] = []
            for decision in decisions:
                new_stage = target_stage(phase, decision.action)
                previous = application_store.transition_stage(session, decision.application_id, new_stage)
                row = DBPhaseDecision(
                    run_id=run.id,
                    cycle_id=cycle_id,
                    phase=phase.value,
                    application_id=decision.application_id,
                    action=decision.action.value,
                    manual=decision.manual,
                    reason=decision.reason,
                    previous_stage=previous.value,
                    new_stage=new_stage.value,
                    performed_by=actor,
                    performed_at=now,
                )
                session.add(row)
                phase_decisions.append(to_phase_decision(row))
                log_audit_event(
                    session,
                    actor=actor,
                    action="application.stage_transitioned",
                    target=decision.application_id,
                    from_state=previous.value,
                    to_state=new_stage.value,
                    metadata={"run_id": run.id, "phase": phase.value, "manual": decision.manual},
                )

            values = {
                "cutoff_applied_at": now,
                "cutoff_applied_by": actor,
                "cutoff_criteria": criteria.model_dump(mode="json"),
            }
            if finalize:
                values.update(status=PhaseStatus.FINALIZED.value, finalized_at=now, finalized_by=actor)
                ranking.finalized_at = now
            if not self._swap_status(session, config_row, PhaseStatus.OPEN, **values):
                raise PhaseLockedError(cycle_id, phase.value)

            run.ranking = ranking.model_dump(mode="json")
            log_audit_event(
                session,
                actor=actor,
                action="phase.cutoff_applied",
                target=f"{cycle_id}_{phase.value}",
                from_state=PhaseStatus.OPEN.value,
                to_state=PhaseStatus.FINALIZED.value if finalize else PhaseStatus.OPEN.value,
                metadata={
                    "run_id": run.id,
                    "criteria": criteria.model_dump(mode="json"),
                    "overrides": len(overrides),
                    "track": track.value if track else None,
                    "forced": force_finalize,
                },
            )

            result = CutoffResult(
                run_id=run.id,
                cycle_id=cycle_id,
                phase=phase,
                track=track,
                advanced=[d.application_id for d in decisions if d.action == DecisionAction.ADVANCE],
                rejected=[d.application_id for d in decisions if d.action == DecisionAction.REJECT],
                finalized=finalize,
                decisions=phase_decisions,
                applicant_names={e.application_id: e.applicant_name for e in ranking.entries},
                performed_by=actor,
            )

        logger.info("phase_cutoff_applied", extra=result.to_logging_dict())

        if notify:
            dispatch_cutoff_notification(self.notifier, result)
        return result

    # -------------------------------
    # Lifecycle
    # -------------------------------
    def finalize_phase(self, cycle_id: str, phase: ReviewPhase, actor: str, force: bool = False) -> PhaseConfig:
        with self.db.transaction() as session:
            config_row = ensure_config_row(session, cycle_id, phase)
            if config_row.status == PhaseStatus.FINALIZED.value:
                raise PhaseLockedError(cycle_id, phase.value)

            if not force:
                self._check_complete(load_phase_inputs(session, cycle_id, phase))

            now = utcnow()
            swapped = self._swap_status(
                session,
                config_row,
                PhaseStatus.OPEN,
                status=PhaseStatus.FINALIZED.value,
                finalized_at=now,
                finalized_by=actor,
            )
            if not swapped:
                raise PhaseLockedError(cycle_id, phase.value)

            log_audit_event(
                session,
                actor=actor,
                action="phase.finalized",
                target=f"{cycle_id}_{phase.value}",
                from_state=PhaseStatus.OPEN.value,
                to_state=PhaseStatus.FINALIZED.value,
                metadata={"forced": force},
            )
            config = to_phase_config(config_row)

        logger.info("phase_finalized", extra={"cycle_id": cycle_id, "phase": phase.value, "forced": force})
        return config

    def unlock_phase(self, cycle_id: str, phase: ReviewPhase, actor: str) -> PhaseConfig:
        """Reopen a finalized phase. Stages, reviews and decisions stay as they are."""
        with self.db.transaction() as session:
            config_row = ensure_config_row(session, cycle_id, phase)
            swapped = self._swap_status(
                session,
                config_row,
                PhaseStatus.FINALIZED,
                status=PhaseStatus.OPEN.value,
                finalized_at=None,
                finalized_by=None,
            )
            if not swapped:
                raise PhaseStateError(f"Phase '{phase.value}' of cycle '{cycle_id}' is not finalized")

            log_audit_event(
                session,
                actor=actor,
                action="phase.unlocked",
                target=f"{cycle_id}_{phase.value}",
                from_state=PhaseStatus.FINALIZED.value,
                to_state=PhaseStatus.OPEN.value,
            )
            config = to_phase_config(config_row)

        logger.info("phase_unlocked", extra={"cycle_id": cycle_id, "phase": phase.value, "actor": actor})
        return config

    def revert_phase(self, cycle_id: str, phase: ReviewPhase, actor: str) -> RevertResult:
        """
        Undo every cutoff run of the phase that is still active, newest first.

        An applicant is restored to its recorded previous stage only while it
        still sits in the stage the cutoff moved it to; anyone moved since is
        left alone and reported in `skipped`.
        """
        with self.db.transaction() as session:
            runs = list(
                session.scalars(
                    select(DBCutoffRun)
                    .where(
                        DBCutoffRun.cycle_id == cycle_id,
                        DBCutoffRun.phase == phase.value,
                        DBCutoffRun.reverted_at.is_(None),
                    )
                    .order_by(DBCutoffRun.id.desc())
                )
            )
            if not runs:
                raise NothingToRevertError(f"No cutoff to revert for phase '{phase.value}' of cycle '{cycle_id}'")

            now = utcnow()
            result = RevertResult(cycle_id=cycle_id, phase=phase)
            for run in runs:
                decisions = session.scalars(
                    select(DBPhaseDecision).where(DBPhaseDecision.run_id == run.id).order_by(DBPhaseDecision.id)
                ).all()
                for decision in decisions:
                    current = application_store.load_application(session, decision.application_id)
                    if current.stage != decision.new_stage:
                        logger.warning(
                            "phase_revert_skipped_application",
                            extra={
                                "application_id": decision.application_id,
                                "expected_stage": decision.new_stage,
                                "current_stage": current.stage,
                            },
                        )
                        result.skipped.append(decision.application_id)
                        continue

                    previous = ApplicationStage(decision.previous_stage)
                    application_store.transition_stage(session, decision.application_id, previous)
                    log_audit_event(
                        session,
                        actor=actor,
                        action="application.stage_reverted",
                        target=decision.application_id,
                        from_state=decision.new_stage,
                        to_state=previous.value,
                        metadata={"run_id": run.id, "phase": phase.value},
                    )
                    result.reverted += 1

                run.reverted_at = now
                run.reverted_by = actor
                result.runs_reverted.append(run.id)

            config_row = ensure_config_row(session, cycle_id, phase)
            from_status = config_row.status
            config_row.status = PhaseStatus.OPEN.value
            config_row.cutoff_applied_at = None
            config_row.cutoff_applied_by = None
            config_row.cutoff_criteria = None
            config_row.finalized_at = None
            config_row.finalized_by = None
            config_row.updated_at = now

            log_audit_event(
                session,
                actor=actor,
                action="phase.reverted",
                target=f"{cycle_id}_{phase.value}",
                from_state=from_status,
                to_state=PhaseStatus.OPEN.value,
                metadata={
                    "runs": result.runs_reverted,
                    "reverted": result.reverted,
                    "skipped": result.skipped,
                },
            )

        logger.info(
            "phase_reverted",
            extra={
                "cycle_id": cycle_id,
                "phase": phase.value,
                "reverted": result.reverted,
                "skipped": len(result.skipped),
            },
        )
        return result
