import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """UTC timestamp in the format every table stores"""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 to an aware datetime; naive values are UTC, unreadable ones ``None``"""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ExperienceLevel(Enum):
    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"
    LEAD = "lead"
    EXECUTIVE = "executive"


class InputType(Enum):
    TITLE = "title"
    DESCRIPTION = "description"


class JobStatus(Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Recommendation(Enum):
    STRONGLY_RECOMMEND = "Strongly Recommend"
    RECOMMEND = "Recommend"
    MAYBE = "Maybe"
    NOT_RECOMMENDED = "Not Recommended"


class InterviewType(Enum):
    TECHNICAL = "technical"
    BEHAVIORAL = "behavioral"
    CULTURAL = "cultural"
    VIDEO = "video"
    PHONE = "phone"
    HR = "hr"
    FINAL = "final"


class InterviewStatus(Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NO_SHOW = "no_show"


def _to_row(record) -> Dict[str, Any]:
    row = {}
    for key, value in asdict(record).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (dict, list)):
            value = json.dumps(value)
        row[key] = value
    return row


@dataclass
class AnalysisJob:
    """One resume-screening request, keyed by its tracking id"""
    requirement_id: str
    job_title: str
    job_description: str = ""
    input_type: InputType = InputType.TITLE
    experience_level: ExperienceLevel = ExperienceLevel.MID
    status: JobStatus = JobStatus.SUBMITTED
    progress: int = 0
    current_step: Optional[str] = None
    total_candidates: int = 0
    estimated_time: Optional[str] = None
    retry_attempts: int = 0
    error_message: Optional[str] = None
    last_error_id: Optional[int] = None
    created_by: str = "anonymous"
    submitted_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return _to_row(self)


@dataclass
class Candidate:
    candidate_id: str
    candidate_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    current_role: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_row(self) -> Dict[str, Any]:
        return _to_row(self)


@dataclass
class CandidateEvaluation:
    """Scores for one candidate against one job, written by the external evaluator"""
    evaluation_id: str
    job_id: str
    candidate_id: str
    overall_score: float
    technical_score: float = 0
    experience_score: float = 0
    soft_skills_score: float = 0
    cultural_fit_score: float = 0
    recommendation: Recommendation = Recommendation.MAYBE
    score_justification: str = ""
    strengths: Any = field(default_factory=list)
    concerns: Any = field(default_factory=list)
    interview_focus: Any = field(default_factory=list)
    candidate_persona_analysis: Any = field(default_factory=dict)
    technical_assessment: Any = field(default_factory=dict)
    hr_recommendation: Optional[str] = None
    development_potential: Optional[str] = None
    evaluated_at: str = field(default_factory=now_iso)

    def to_row(self) -> Dict[str, Any]:
        return _to_row(self)


@dataclass
class InterviewSchedule:
    job_id: str
    candidate_id: str
    scheduled_at: str
    duration_minutes: int = 60
    interview_type: InterviewType = InterviewType.TECHNICAL
    interviewer_email: Optional[str] = None
    meeting_link: Optional[str] = None
    status: InterviewStatus = InterviewStatus.SCHEDULED
    notes: Optional[str] = None
    feedback_score: Optional[int] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_row(self) -> Dict[str, Any]:
        return _to_row(self)


@dataclass
class InterviewFeedback:
    interview_id: int
    score: int
    interviewer_email: Optional[str] = None
    technical_assessment: Optional[str] = None
    communication_rating: Optional[int] = None
    cultural_fit_rating: Optional[int] = None
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    recommendation: Optional[str] = None
    notes: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_row(self) -> Dict[str, Any]:
        return _to_row(self)
