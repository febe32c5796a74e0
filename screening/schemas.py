from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from screening.errors import ValidationError
from screening.models import ExperienceLevel, InputType, InterviewStatus, InterviewType, Recommendation

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"

MAX_PAGE_SIZE = 100

ERROR_CODES = {
    "missing": "REQUIRED_FIELD",
    "string_too_short": "MIN_LENGTH",
    "string_too_long": "MAX_LENGTH",
    "greater_than_equal": "MIN_VALUE",
    "greater_than": "MIN_VALUE",
    "less_than_equal": "MAX_VALUE",
    "less_than": "MAX_VALUE",
    "enum": "INVALID_ENUM",
    "literal_error": "INVALID_ENUM",
    "string_pattern_mismatch": "INVALID_FORMAT",
    "value_error": "CUSTOM_VALIDATION",
}

Model = TypeVar("Model", bound=BaseModel)


def parse(model_cls: Type[Model], data: Optional[Dict[str, Any]], context: Optional[Dict[str, Any]] = None) -> Model:
    """Validate ``data`` into ``model_cls``, raising the service ValidationError"""
    try:
        return model_cls.model_validate(data or {}, context=context)
    except PydanticValidationError as e:
        details = []
        for err in e.errors():
            cause = (err.get("ctx") or {}).get("error")
            details.append({
                "field": ".".join(str(part) for part in err["loc"]) or "body",
                "message": str(cause) if cause else err["msg"],
                "code": ERROR_CODES.get(err["type"], "INVALID_TYPE"),
            })
        raise ValidationError(details[0]["message"], details=details)


def store_values(model: BaseModel, exclude_unset: bool = False) -> Dict[str, Any]:
    """Model fields as column values: enums by value, datetimes as UTC ISO strings"""
    row = {}
    for key, value in model.model_dump(exclude_unset=exclude_unset).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.astimezone(timezone.utc).isoformat(timespec="seconds")
        row[key] = value
    return row


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class AnalysisRequest(BaseModel):
    """Body of POST /api/analysis/start"""
    model_config = ConfigDict(populate_by_name=True)

    job_title: str = Field("", alias="jobTitle", validate_default=True)
    job_description: str = Field("", alias="jobDescription")
    experience_level: ExperienceLevel = Field(ExperienceLevel.MID, alias="experienceLevel")
    input_type: InputType = Field(InputType.TITLE, alias="inputType")

    @field_validator("job_title", "job_description", mode="before")
    @classmethod
    def strip_text(cls, value):
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("experience_level", "input_type", mode="before")
    @classmethod
    def default_when_blank(cls, value, info: ValidationInfo):
        if not value:
            return ExperienceLevel.MID if info.field_name == "experience_level" else InputType.TITLE
        return value

    @field_validator("job_title")
    @classmethod
    def title_length(cls, value: str) -> str:
        if len(value) < 3:
            raise ValueError("Job title must be at least 3 characters")
        if len(value) > 255:
            raise ValueError("Job title must be at most 255 characters")
        return value

    @model_validator(mode="after")
    def description_required_for_description_input(self):
        if self.input_type == InputType.DESCRIPTION and len(self.job_description) < 50:
            raise ValueError("Job description must be at least 50 characters")
        if len(self.job_description) > 10000:
            raise ValueError("Job description must be at most 10000 characters")
        return self


class InterviewCreate(BaseModel):
    """Body of POST /api/interviews"""
    job_id: str = Field(min_length=1)
    candidate_id: str = Field(min_length=1)
    scheduled_at: datetime
    duration_minutes: int = Field(60, ge=15, le=480)
    interview_type: InterviewType = InterviewType.TECHNICAL
    interviewer_email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)
    meeting_link: Optional[str] = Field(None, pattern=URL_PATTERN)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def must_be_future(cls, value: datetime, info: ValidationInfo) -> datetime:
        now = (info.context or {}).get("now") or datetime.now(timezone.utc)
        value = _as_utc(value)
        if value <= _as_utc(now):
            raise ValueError("Scheduled time must be in the future")
        return value


class InterviewUpdate(BaseModel):
    """Body of PUT /api/interviews/<id>; unknown keys are ignored.

    Fields without ``Optional`` may be omitted but not cleared.
    """
    scheduled_at: datetime = None
    duration_minutes: int = Field(None, ge=15, le=480)
    interview_type: InterviewType = None
    interviewer_email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)
    meeting_link: Optional[str] = Field(None, pattern=URL_PATTERN)
    status: InterviewStatus = None
    notes: Optional[str] = Field(None, max_length=1000)
    feedback_score: Optional[int] = Field(None, ge=1, le=10)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ResultsQuery(BaseModel):
    """Query string of GET /api/analysis/results/<id>"""
    model_config = ConfigDict(populate_by_name=True)

    page: int = 1
    limit: int = 50
    sort: Literal["score_desc", "score_asc", "name", "recent"] = "score_desc"
    min_score: Optional[float] = Field(None, alias="minScore", ge=0, le=100)
    recommendation: Optional[Recommendation] = None
    search: Optional[str] = Field(None, max_length=200)

    @field_validator("min_score", "recommendation", "search", "sort", mode="before")
    @classmethod
    def blank_is_absent(cls, value, info: ValidationInfo):
        value = _blank_to_none(value)
        if value is None and info.field_name == "sort":
            return "score_desc"
        return value

    @field_validator("page", mode="before")
    @classmethod
    def clamp_page(cls, value):
        try:
            return max(1, int(value))
        except (TypeError, ValueError):
            return 1

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, value):
        try:
            return min(MAX_PAGE_SIZE, max(1, int(value)))
        except (TypeError, ValueError):
            return 50

    def filters(self) -> Dict[str, Any]:
        return {
            "minScore": self.min_score,
            "recommendation": self.recommendation.value if self.recommendation else None,
            "search": self.search,
        }
