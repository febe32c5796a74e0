import io
import json

import pandas as pd
import pytest

from screening.errors import NotFoundError, NotReadyError, ValidationError
from screening.models import JobStatus, Recommendation
from screening.results import decode_json_field, key_strengths, risk_level
from screening.schemas import ResultsQuery

JOB_ID = "REQ-1700000000000-abc123xyz"


@pytest.fixture
def scored_job(seed):
    seed.job(total_candidates=2)
    seed.candidate("c1", "Alice Smith", email="alice@example.com", current_role="Backend Engineer")
    seed.candidate("c2", "Bob Jones", email="bob@example.com", current_role="Data Analyst")
    seed.evaluation(
        JOB_ID, "c1", 90,
        recommendation=Recommendation.STRONGLY_RECOMMEND,
        strengths=["Python", "SQL", "Mentoring", "Testing"],
        concerns=["Limited frontend"],
        candidate_persona_analysis={"risk_profile": {"level": "low"}},
    )
    seed.evaluation(JOB_ID, "c2", 72, recommendation=Recommendation.MAYBE)
    return JOB_ID


def test_decode_json_field():
    assert decode_json_field('["a", "b"]') == ["a", "b"]
    assert decode_json_field("plain text") == ["plain text"]
    assert decode_json_field("plain text", dict) == {"text": "plain text"}
    assert decode_json_field('{"level": "high"}', dict) == {"level": "high"}
    assert decode_json_field({"already": "decoded"}) == {"already": "decoded"}
    assert decode_json_field(None) is None
    assert decode_json_field("") is None


def test_risk_level_defaults_to_medium():
    assert risk_level({"risk_profile": {"level": "high"}}) == "high"
    assert risk_level({"risk_profile": {}}) == "medium"
    assert risk_level(None) == "medium"


def test_key_strengths():
    assert key_strengths(["a", "b", "c", "d"]) == ["a", "b", "c"]
    assert key_strengths({"list": ["a"]}) == ["a"]
    assert key_strengths(None) == []


def test_unknown_job(system):
    with pytest.raises(NotFoundError):
        system.results.get_results("REQ-0-missing00")


def test_results_not_ready(system, seed):
    seed.job(status=JobStatus.PROCESSING)
    with pytest.raises(NotReadyError) as exc:
        system.results.get_results(JOB_ID)
    assert exc.value.to_dict()["status"] == "processing"


def test_results_available_for_failed_job(system, seed):
    seed.job(status=JobStatus.ERROR)
    results = system.results.get_results(JOB_ID)
    assert results["candidates"] == []
    assert results["pagination"]["total"] == 0


def test_results_sorted_by_score(system, scored_job):
    results = system.results.get_results(scored_job)
    assert [c["candidate_id"] for c in results["candidates"]] == ["c1", "c2"]

    top = results["candidates"][0]
    assert top["strengths"] == ["Python", "SQL", "Mentoring", "Testing"]
    assert top["key_strengths"] == ["Python", "SQL", "Mentoring"]
    assert top["risk_level"] == "low"
    assert results["candidates"][1]["risk_level"] == "medium"

    ascending = system.results.get_results(scored_job, ResultsQuery(sort="score_asc"))
    assert [c["candidate_id"] for c in ascending["candidates"]] == ["c2", "c1"]


def test_min_score_filter(system, scored_job):
    results = system.results.get_results(scored_job, ResultsQuery(min_score=80))
    assert results["pagination"]["total"] == 1
    assert results["candidates"][0]["candidate_name"] == "Alice Smith"
    assert results["filters"] == {"minScore": 80, "recommendation": None, "search": None}


def test_recommendation_filter(system, scored_job):
    results = system.results.get_results(scored_job, ResultsQuery(recommendation="Maybe"))
    assert [c["candidate_id"] for c in results["candidates"]] == ["c2"]


def test_search_is_case_insensitive(system, scored_job):
    by_name = system.results.get_results(scored_job, ResultsQuery(search="ALICE"))
    assert [c["candidate_id"] for c in by_name["candidates"]] == ["c1"]

    by_role = system.results.get_results(scored_job, ResultsQuery(search="analyst"))
    assert [c["candidate_id"] for c in by_role["candidates"]] == ["c2"]

    wildcard = system.results.get_results(scored_job, ResultsQuery(search="%"))
    assert wildcard["candidates"] == []


def test_pagination_total_matches_unpaginated_count(system, seed):
    seed.job()
    for i in range(7):
        seed.candidate(f"c{i}", f"Candidate {i}")
        seed.evaluation(JOB_ID, f"c{i}", 60 + i)

    everything = system.results.get_results(JOB_ID, ResultsQuery(limit=100))
    second_page = system.results.get_results(JOB_ID, ResultsQuery(page=2, limit=3))

    assert second_page["pagination"] == {"page": 2, "limit": 3, "total": 7, "totalPages": 3}
    assert second_page["pagination"]["total"] == len(everything["candidates"])
    assert [c["candidate_id"] for c in second_page["candidates"]] == ["c3", "c2", "c1"]


def test_equal_scores_break_ties_by_candidate_id(system, seed):
    seed.job()
    for candidate_id in ("c3", "c1", "c2"):
        seed.candidate(candidate_id, "Same Score")
        seed.evaluation(JOB_ID, candidate_id, 75)

    results = system.results.get_results(JOB_ID)
    assert [c["candidate_id"] for c in results["candidates"]] == ["c1", "c2", "c3"]


def test_results_include_requirements_and_summary(system, scored_job, db):
    db.insert("job_requirements", {"job_id": scored_job, "technical_requirements": '{"must_have": ["Python"]}'})
    db.insert("analysis_summaries", {"job_id": scored_job, "total_candidates": 2, "top_score": 90})

    results = system.results.get_results(scored_job)
    assert results["requirements"]["technical_requirements"] == {"must_have": ["Python"]}
    assert results["requirements"]["soft_skills"] is None
    assert results["summary"]["top_score"] == 90


def test_export_csv(system, scored_job):
    body = system.results.export_results(scored_job, "csv")
    frame = pd.read_csv(io.StringIO(body), keep_default_na=False)

    assert list(frame["Name"]) == ["Alice Smith", "Bob Jones"]
    assert list(frame["Risk Level"]) == ["Low", "Medium"]
    assert frame["Key Strengths"][0] == "Python; SQL; Mentoring"
    assert frame["Main Concerns"][0] == "Limited frontend"
    assert frame["Phone"][0] == "N/A"


def test_export_json_respects_filters(system, scored_job):
    records = json.loads(system.results.export_results(scored_job, "json", ResultsQuery(min_score=80)))
    assert len(records) == 1
    assert records[0]["Recommendation"] == "Strongly Recommend"


def test_export_rejects_unknown_format(system, scored_job):
    with pytest.raises(ValidationError):
        system.results.export_results(scored_job, "xlsx")


def test_get_candidate(system, scored_job):
    candidate = system.results.get_candidate("c1")
    assert candidate["candidate_name"] == "Alice Smith"
    assert candidate["evaluations"][0]["job_title"] == "Senior Python Engineer"
    assert candidate["evaluations"][0]["concerns"] == ["Limited frontend"]

    with pytest.raises(NotFoundError):
        system.results.get_candidate("missing")


def test_search_folds_accented_letters(system, seed):
    seed.job()
    seed.candidate("c1", "Émile Zoë", email="emile@example.com", current_role="ÜBER Engineer")
    seed.candidate("c2", "Bob Jones", email="bob@example.com", current_role="Data Analyst")
    seed.evaluation(JOB_ID, "c1", 90)
    seed.evaluation(JOB_ID, "c2", 72)

    for term in ("émile", "Émile", "ÉMILE", "zoë", "über", "Über engineer"):
        results = system.results.get_results(JOB_ID, ResultsQuery(search=term))
        assert [c["candidate_id"] for c in results["candidates"]] == ["c1"], term
        assert results["pagination"]["total"] == 1
