import pytest

from api.routes import create_app
from screening.config import Settings
from screening.models import AnalysisJob, Candidate, CandidateEvaluation, JobStatus
from screening.system import ScreeningSystem


class Seeder:
    """Writes the rows the external evaluator would normally produce"""

    def __init__(self, db):
        self.db = db

    def job(self, requirement_id="REQ-1700000000000-abc123xyz", status=JobStatus.COMPLETED, **fields):
        fields.setdefault("job_title", "Senior Python Engineer")
        job = AnalysisJob(requirement_id=requirement_id, status=status, **fields)
        return self.db.upsert("analysis_jobs", job.to_row(), ["requirement_id"])

    def candidate(self, candidate_id, candidate_name, **fields):
        candidate = Candidate(candidate_id=candidate_id, candidate_name=candidate_name, **fields)
        return self.db.upsert("candidates", candidate.to_row(), ["candidate_id"])

    def evaluation(self, job_id, candidate_id, overall_score, **fields):
        fields.setdefault("evaluation_id", f"{job_id}-{candidate_id}")
        evaluation = CandidateEvaluation(job_id=job_id, candidate_id=candidate_id,
                                         overall_score=overall_score, **fields)
        return self.db.upsert("candidate_evaluations", evaluation.to_row(), ["job_id", "candidate_id"])


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "screening.db"),
        app_env="test",
        webhook_url="http://evaluator.test/webhook/submit-resume-analysis",
        webhook_api_key="test-key",
    )


@pytest.fixture
def system(settings):
    system = ScreeningSystem(settings)
    yield system
    system.close()


@pytest.fixture
def db(system):
    return system.db


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def app(system):
    app = create_app(system=system)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client
