import pytest

from application_store import ApplicationStore
from review_db import ReviewDatabase
from review_models import ApplicationCreate, ApplicationStage, ApplicationTrack


@pytest.fixture
def db():
    database = ReviewDatabase(db_url="sqlite:///:memory:")
    yield database
    database.dispose()


@pytest.fixture
def make_application(db):
    store = ApplicationStore(db)

    def _make(
        name: str,
        track: ApplicationTrack = ApplicationTrack.ENGINEERING,
        stage: ApplicationStage = ApplicationStage.SUBMITTED,
        cycle_id: str = "cycle-1",
    ):
        return store.create_application(
            ApplicationCreate(
                cycle_id=cycle_id,
                track=track,
                stage=stage,
                applicant_name=name,
                applicant_email=f"{name.lower()}@example.com",
            )
        )

    return _make
