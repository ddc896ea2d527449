"""Business and storage errors raised by the phase review engine."""

from __future__ import annotations

from typing import List, Optional, Sequence

from review_models import ReviewerCompletion


class ReviewEngineError(Exception):
    """Base class; `code` is a stable identifier for API payloads."""

    code = "review_engine_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ReviewEngineError):
    """Malformed input. Raised before any side effect."""

    code = "validation_error"


class NotFoundError(ReviewEngineError):
    code = "not_found"


class PhaseLockedError(ReviewEngineError):
    """A write was attempted while the phase is finalized."""

    code = "phase_locked"

    def __init__(self, cycle_id: str, phase: str, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or f"Phase '{phase}' of cycle '{cycle_id}' is finalized; unlock it before making changes"
        )
        self.cycle_id = cycle_id
        self.phase = phase


class PhaseStateError(ReviewEngineError):
    """A lifecycle action does not apply to the phase's current status."""

    code = "phase_state_error"


class IncompleteReviewsError(ReviewEngineError):
    code = "incomplete_reviews"

    def __init__(self, incomplete: Sequence[ReviewerCompletion], total_applicants: int) -> None:
        self.incomplete: List[ReviewerCompletion] = list(incomplete)
        self.total_applicants = total_applicants
        super().__init__(
            f"{len(self.incomplete)} reviewer(s) have not reviewed all {total_applicants} "
            "applicants; complete the reviews or retry with force_finalize"
        )


class NothingToRevertError(ReviewEngineError):
    code = "nothing_to_revert"


class StorageError(ReviewEngineError):
    """Transport or storage failure; the operation was rolled back and may be retried."""

    code = "storage_error"
    retryable = True
