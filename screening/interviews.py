import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from screening.audit import AuditLog
from screening.database import Database
from screening.errors import ConflictError, NotFoundError, ValidationError
from screening.models import InterviewFeedback, InterviewSchedule, InterviewStatus, now_iso
from screening.schemas import InterviewCreate, InterviewUpdate, parse, store_values

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (InterviewStatus.COMPLETED.value,)

INTERVIEW_QUERY = """
    SELECT
        i.*,
        c.candidate_name,
        c.email AS candidate_email,
        c.phone AS candidate_phone,
        c.current_role AS candidate_current_role,
        j.job_title,
        j.input_type,
        j.experience_level,
        j.status AS job_status,
        ce.overall_score,
        ce.recommendation,
        ce.evaluated_at,
        ce.technical_score,
        ce.experience_score,
        ce.soft_skills_score,
        ce.cultural_fit_score
    FROM interview_schedules i
    LEFT JOIN candidates c ON i.candidate_id = c.candidate_id
    LEFT JOIN analysis_jobs j ON i.job_id = j.requirement_id
    LEFT JOIN candidate_evaluations ce ON ce.candidate_id = i.candidate_id AND ce.job_id = i.job_id
"""


class InterviewScheduler:
    """Interview records for a job and candidate pair.

    Removal is a status change to cancelled; completed interviews are final.
    Every mutation is audited, and a failed audit write never fails the
    mutation.
    """

    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def get(self, interview_id: int) -> Dict[str, Any]:
        interview = self.db.fetch_one(INTERVIEW_QUERY + " WHERE i.interview_id = ?", [interview_id])
        if interview is None:
            raise NotFoundError("Interview not found")

        feedback = None
        if interview["status"] == InterviewStatus.COMPLETED.value and interview["feedback_score"]:
            feedback = self.db.fetch_one("""
                SELECT * FROM interview_feedback
                WHERE interview_id = ?
                ORDER BY created_at DESC, feedback_id DESC
                LIMIT 1
            """, [interview_id])

        interview["feedback"] = feedback
        interview["history"] = self.audit.get_entity_history("interview", interview_id)
        return interview

    def list_for_job(self, job_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            INTERVIEW_QUERY + " WHERE i.job_id = ? ORDER BY i.scheduled_at ASC, i.interview_id ASC",
            [job_id],
        )

    def create(self, data: Dict[str, Any], user_id: str = "system", ip_address: Optional[str] = None,
               now: Optional[datetime] = None) -> Dict[str, Any]:
        request = parse(InterviewCreate, data, context={"now": now} if now else None)

        if not self.db.fetch_one("SELECT 1 FROM analysis_jobs WHERE requirement_id = ?", [request.job_id]):
            raise NotFoundError("Analysis not found")
        if not self.db.fetch_one("SELECT 1 FROM candidates WHERE candidate_id = ?", [request.candidate_id]):
            raise NotFoundError("Candidate not found")

        schedule = InterviewSchedule(**store_values(request))
        interview = self.db.insert("interview_schedules", schedule.to_row())
        logger.info("Scheduled interview %s for candidate %s", interview["interview_id"], request.candidate_id)

        self.audit.log_interview_activity(
            interview["interview_id"], "scheduled",
            job_id=interview["job_id"],
            candidate_id=interview["candidate_id"],
            details={"scheduled_at": interview["scheduled_at"], "interview_type": interview["interview_type"]},
            user_id=user_id,
            ip_address=ip_address,
        )
        return interview

    def update(self, interview_id: int, fields: Dict[str, Any], user_id: str = "system",
               ip_address: Optional[str] = None) -> Dict[str, Any]:
        """Apply allow-listed field changes; completing with a score also records feedback"""

        def apply(conn):
            current = self._fetch(interview_id, conn)
            changes = store_values(parse(InterviewUpdate, fields), exclude_unset=True)
            if not changes:
                raise ValidationError("No fields to update")

            self._check_transition(current["status"], changes.get("status", current["status"]))

            changes["updated_at"] = now_iso()
            self.db.update("interview_schedules", changes, {"interview_id": interview_id}, conn)
            return current, changes, self._fetch(interview_id, conn)

        current, changes, updated = self.db.transaction(apply)

        changes.pop("updated_at")
        self.audit.log_interview_activity(
            interview_id, "updated",
            job_id=updated["job_id"],
            candidate_id=updated["candidate_id"],
            details={
                "changes": changes,
                "previous_status": current["status"],
                "new_status": updated["status"],
            },
            user_id=user_id,
            ip_address=ip_address,
        )

        if changes.get("status") == InterviewStatus.COMPLETED.value and changes.get("feedback_score"):
            self._create_feedback(interview_id, InterviewFeedback(
                interview_id=interview_id,
                score=changes["feedback_score"],
                notes=changes.get("notes"),
                interviewer_email=updated["interviewer_email"],
            ))

        return updated

    def delete(self, interview_id: int, reason: Optional[str] = None, user_id: str = "system",
               ip_address: Optional[str] = None) -> Dict[str, Any]:
        """Cancel the interview; completed interviews cannot be removed"""

        def cancel(conn):
            current = self._fetch(interview_id, conn)
            if current["status"] == InterviewStatus.COMPLETED.value:
                raise ConflictError("Cannot delete completed interviews. Please cancel instead.")
            self.db.update(
                "interview_schedules",
                {"status": InterviewStatus.CANCELLED.value, "updated_at": now_iso()},
                {"interview_id": interview_id},
                conn,
            )
            return current, self._fetch(interview_id, conn)

        current, cancelled = self.db.transaction(cancel)
        logger.info("Cancelled interview %s", interview_id)

        self.audit.log_interview_activity(
            interview_id, "cancelled",
            job_id=current["job_id"],
            candidate_id=current["candidate_id"],
            details={
                "reason": reason or "No reason provided",
                "previous_scheduled_time": current["scheduled_at"],
            },
            user_id=user_id,
            ip_address=ip_address,
        )
        return cancelled

    def _fetch(self, interview_id: int, conn=None) -> Dict[str, Any]:
        interview = self.db.fetch_one(
            "SELECT * FROM interview_schedules WHERE interview_id = ?", [interview_id], conn
        )
        if interview is None:
            raise NotFoundError("Interview not found")
        return interview

    @staticmethod
    def _check_transition(current: str, new: str):
        if current in TERMINAL_STATUSES and new != current:
            raise ConflictError(f"Interview is {current} and can no longer change status")

    def _create_feedback(self, interview_id: int, feedback: InterviewFeedback) -> Optional[Dict[str, Any]]:
        try:
            return self.db.insert("interview_feedback", feedback.to_row())
        except Exception:
            logger.exception("Error creating feedback for interview %s", interview_id)
            return None
