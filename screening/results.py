import json
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from screening.database import Database
from screening.errors import NotFoundError, NotReadyError, ValidationError
from screening.models import JobStatus
from screening.schemas import ResultsQuery

logger = logging.getLogger(__name__)

DEFAULT_RISK_LEVEL = "medium"
TOP_STRENGTHS = 3

LIST_FIELDS = ("strengths", "concerns", "interview_focus")
OBJECT_FIELDS = ("candidate_persona_analysis", "technical_assessment")
REQUIREMENT_FIELDS = ("technical_requirements", "soft_skills", "ideal_candidate_personas", "scoring_weights")

READY_STATUSES = (JobStatus.COMPLETED.value, JobStatus.ERROR.value)

RESULT_COLUMNS = """
    c.candidate_id,
    c.candidate_name,
    c.email,
    c.phone,
    c.current_role,
    ce.evaluation_id,
    ce.overall_score,
    ce.technical_score,
    ce.experience_score,
    ce.soft_skills_score,
    ce.cultural_fit_score,
    ce.recommendation,
    ce.score_justification,
    ce.strengths,
    ce.concerns,
    ce.interview_focus,
    ce.candidate_persona_analysis,
    ce.technical_assessment,
    ce.hr_recommendation,
    ce.development_potential,
    ce.evaluated_at
"""

RESULT_JOINS = [{"type": "INNER", "table": "candidates c", "on": "ce.candidate_id = c.candidate_id"}]
FILTER_COLUMNS = ("ce.job_id", "ce.overall_score", "ce.recommendation")

# candidate_id breaks ties so equal scores page deterministically
ORDER_BY = {
    "score_desc": [("ce.overall_score", "DESC"), ("c.candidate_id", "ASC")],
    "score_asc": [("ce.overall_score", "ASC"), ("c.candidate_id", "ASC")],
    "name": [("c.candidate_name", "ASC"), ("c.candidate_id", "ASC")],
    "recent": [("ce.evaluated_at", "DESC"), ("c.candidate_id", "ASC")],
}

EXPORT_FORMATS = ("csv", "json")
EXPORT_COLUMNS = [
    "Name", "Email", "Phone", "Current Role", "Overall Score", "Technical Score",
    "Experience Score", "Soft Skills Score", "Cultural Fit Score", "Recommendation",
    "Risk Level", "Key Strengths", "Main Concerns", "HR Recommendation", "Evaluated Date",
]


def decode_json_field(value: Any, expected: type = list) -> Any:
    """Normalize a nested evaluation field to structured data.

    The evaluator stores these either as native JSON values or as JSON
    encoded text. Text that is not JSON is wrapped: ``[text]`` for list
    fields, ``{"text": text}`` for object fields.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            decoded = value
        if isinstance(decoded, (dict, list)):
            return decoded
        value = decoded
    return [value] if expected is list else {"text": value}


def risk_level(persona: Any) -> str:
    if isinstance(persona, dict):
        profile = persona.get("risk_profile")
        if isinstance(profile, dict) and profile.get("level"):
            return profile["level"]
    return DEFAULT_RISK_LEVEL


def key_strengths(strengths: Any, top: int = TOP_STRENGTHS) -> List[Any]:
    if isinstance(strengths, dict):
        strengths = strengths.get("list") or []
    if not isinstance(strengths, list):
        return []
    return strengths[:top]


def normalize_evaluation(row: Dict[str, Any]) -> Dict[str, Any]:
    candidate = dict(row)
    for name in LIST_FIELDS:
        if name in candidate:
            candidate[name] = decode_json_field(candidate[name], list)
    for name in OBJECT_FIELDS:
        if name in candidate:
            candidate[name] = decode_json_field(candidate[name], dict)
    candidate["risk_level"] = risk_level(candidate.get("candidate_persona_analysis"))
    candidate["key_strengths"] = key_strengths(candidate.get("strengths"))
    return candidate


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ResultsAggregator:
    """Paginated, filterable view of candidate evaluations for one job"""

    def __init__(self, db: Database, default_limit: int = 50):
        self.db = db
        self.default_limit = default_limit

    def _ready_job(self, tracking_id: str) -> Dict[str, Any]:
        job = self.db.fetch_one(
            "SELECT status, total_candidates FROM analysis_jobs WHERE requirement_id = ?",
            [tracking_id],
        )
        if job is None:
            raise NotFoundError("No analysis found with the provided ID")
        if job["status"] not in READY_STATUSES:
            raise NotReadyError(job["status"])
        return job

    def _where(self, tracking_id: str, query: ResultsQuery):
        where = self.db.build_where_clause({
            "ce.job_id": tracking_id,
            "ce.overall_score": None if query.min_score is None else {"operator": "gte", "value": query.min_score},
            "ce.recommendation": query.recommendation.value if query.recommendation else None,
        }, FILTER_COLUMNS)

        if query.search:
            pattern = f"%{_escape_like(query.search.casefold())}%"
            where.and_(
                "(casefold(c.candidate_name) LIKE ? ESCAPE '\\'"
                " OR casefold(c.email) LIKE ? ESCAPE '\\'"
                " OR casefold(c.current_role) LIKE ? ESCAPE '\\')",
                pattern, pattern, pattern,
            )
        return where

    def get_results(self, tracking_id: str, query: Optional[ResultsQuery] = None) -> Dict[str, Any]:
        query = query or ResultsQuery(limit=self.default_limit)
        self._ready_job(tracking_id)

        page = self.db.paginated_query(
            table="candidate_evaluations ce",
            columns=RESULT_COLUMNS,
            conditions=self._where(tracking_id, query),
            sort=ORDER_BY[query.sort],
            page=query.page,
            limit=query.limit,
            joins=RESULT_JOINS,
        )
        pagination = page["pagination"]

        return {
            "success": True,
            "candidates": [normalize_evaluation(row) for row in page["data"]],
            "pagination": {
                "page": pagination["page"],
                "limit": pagination["limit"],
                "total": pagination["total"],
                "totalPages": pagination["totalPages"],
            },
            "requirements": self.get_requirements(tracking_id),
            "summary": self.get_summary(tracking_id),
            "filters": query.filters(),
        }

    def get_requirements(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.fetch_one("""
            SELECT * FROM job_requirements
            WHERE job_id = ?
            ORDER BY created_at DESC, requirements_id DESC
            LIMIT 1
        """, [tracking_id])
        if row:
            for name in REQUIREMENT_FIELDS:
                row[name] = decode_json_field(row.get(name), dict)
        return row

    def get_summary(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("""
            SELECT * FROM analysis_summaries
            WHERE job_id = ?
            ORDER BY created_at DESC, summary_id DESC
            LIMIT 1
        """, [tracking_id])

    def export_results(self, tracking_id: str, fmt: str = "csv",
                       query: Optional[ResultsQuery] = None) -> str:
        """Every matching candidate flattened to one row, as CSV or JSON records"""
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {fmt}",
                                  details=[{"field": "format", "message": f"format must be one of: {', '.join(EXPORT_FORMATS)}",
                                            "code": "INVALID_ENUM"}])
        query = query or ResultsQuery()
        self._ready_job(tracking_id)

        where = self._where(tracking_id, query)
        order_by = self.db.build_order_by(ORDER_BY[query.sort])
        rows = self.db.fetch_all(f"""
            SELECT {RESULT_COLUMNS}
            FROM candidate_evaluations ce
            {self.db.build_joins(RESULT_JOINS)}
            {where.clause}
            {order_by}
        """, where.params)

        records = [self._export_record(normalize_evaluation(row)) for row in rows]
        frame = pd.DataFrame(records, columns=EXPORT_COLUMNS)
        logger.info("Exporting %d candidates for %s as %s", len(frame), tracking_id, fmt)

        if fmt == "json":
            return frame.to_json(orient="records")
        return frame.to_csv(index=False)

    @staticmethod
    def _export_record(candidate: Dict[str, Any]) -> Dict[str, Any]:
        concerns = candidate.get("concerns")
        if isinstance(concerns, dict):
            concerns = concerns.get("list") or []
        evaluated = candidate.get("evaluated_at")
        return {
            "Name": candidate["candidate_name"],
            "Email": candidate.get("email") or "N/A",
            "Phone": candidate.get("phone") or "N/A",
            "Current Role": candidate.get("current_role") or "N/A",
            "Overall Score": candidate.get("overall_score"),
            "Technical Score": candidate.get("technical_score"),
            "Experience Score": candidate.get("experience_score"),
            "Soft Skills Score": candidate.get("soft_skills_score"),
            "Cultural Fit Score": candidate.get("cultural_fit_score"),
            "Recommendation": candidate.get("recommendation") or "Not Evaluated",
            "Risk Level": candidate["risk_level"].capitalize(),
            "Key Strengths": "; ".join(str(s) for s in candidate["key_strengths"]),
            "Main Concerns": "; ".join(str(c) for c in (concerns or [])[:2]),
            "HR Recommendation": candidate.get("hr_recommendation") or "N/A",
            "Evaluated Date": str(evaluated)[:10] if evaluated else "N/A",
        }

    def get_candidate(self, candidate_id: str) -> Dict[str, Any]:
        candidate = self.db.fetch_one("SELECT * FROM candidates WHERE candidate_id = ?", [candidate_id])
        if candidate is None:
            raise NotFoundError("Candidate not found")

        evaluations = self.db.fetch_all("""
            SELECT ce.*, aj.job_title, aj.status AS job_status
            FROM candidate_evaluations ce
            LEFT JOIN analysis_jobs aj ON ce.job_id = aj.requirement_id
            WHERE ce.candidate_id = ?
            ORDER BY ce.evaluated_at DESC
        """, [candidate_id])
        candidate["evaluations"] = [normalize_evaluation(row) for row in evaluations]
        return candidate
