import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from screening.audit import AuditLog
from screening.database import Database
from screening.errors import NotFoundError
from screening.models import JobStatus, parse_timestamp

logger = logging.getLogger(__name__)

STATUS_QUERY = """
    SELECT
        aj.*,
        COUNT(DISTINCT ce.candidate_id) AS evaluated_candidates,
        COUNT(DISTINCT CASE WHEN pq.status = 'skipped' THEN pq.queue_id END) AS skipped_candidates
    FROM analysis_jobs aj
    LEFT JOIN candidate_evaluations ce ON aj.requirement_id = ce.job_id
    LEFT JOIN processing_queue pq ON aj.requirement_id = pq.requirement_id
    WHERE aj.requirement_id = ?
    GROUP BY aj.requirement_id
"""


class AnalysisJobStore:
    """Read-side view of analysis jobs. Job rows are written by the external evaluator."""

    def __init__(self, db: Database, audit: AuditLog, stale_after_minutes: int = 15,
                 max_retry_attempts: int = 3):
        self.db = db
        self.audit = audit
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.max_retry_attempts = max_retry_attempts

    def get_job(self, tracking_id: str) -> Dict[str, Any]:
        job = self.db.fetch_one("SELECT * FROM analysis_jobs WHERE requirement_id = ?", [tracking_id])
        if job is None:
            raise NotFoundError("No analysis found with the provided ID")
        return job

    def get_status(self, tracking_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current state of one job with derived counts and retry/staleness hints"""
        job = self.db.fetch_one(STATUS_QUERY, [tracking_id])
        if job is None:
            raise NotFoundError("No analysis found with the provided ID")

        status = job["status"]

        summary = None
        if status == JobStatus.COMPLETED.value:
            summary = self.db.fetch_one("""
                SELECT * FROM analysis_summaries
                WHERE job_id = ?
                ORDER BY created_at DESC, summary_id DESC
                LIMIT 1
            """, [tracking_id])

        recent_error = None
        if status == JobStatus.ERROR.value or job["last_error_id"]:
            errors = self.audit.get_error_logs({"requirement_id": tracking_id}, limit=1)
            recent_error = errors[0] if errors else None

        return {
            "analysis": {
                "requirement_id": job["requirement_id"],
                "status": status,
                "progress": self.effective_progress(status, job["progress"]),
                "current_step": job["current_step"],
                "job_title": job["job_title"],
                "job_description": job["job_description"],
                "input_type": job["input_type"],
                "experience_level": job["experience_level"],
                "submitted_at": job["submitted_at"],
                "completed_at": job["completed_at"],
                "total_candidates": job["total_candidates"] or 0,
                "evaluated_candidates": int(job["evaluated_candidates"] or 0),
                "skipped_candidates": int(job["skipped_candidates"] or 0),
                "estimated_time": job["estimated_time"],
                "retry_attempts": job["retry_attempts"] or 0,
                "error_message": job["error_message"],
                "created_by": job["created_by"],
            },
            "summary": summary,
            "error": recent_error,
            "metadata": {
                "canRetry": self.can_retry(job),
                "isStale": self.is_stale(job, now),
            },
        }

    @staticmethod
    def effective_progress(status: str, progress: Optional[int]) -> int:
        # stale writes can leave a completed job below 100
        if status == JobStatus.COMPLETED.value:
            return 100
        return progress or 0

    def can_retry(self, job: Dict[str, Any]) -> bool:
        return job["status"] == JobStatus.ERROR.value and (job["retry_attempts"] or 0) < self.max_retry_attempts

    def is_stale(self, job: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        if job["status"] != JobStatus.PROCESSING.value:
            return False
        updated_at = parse_timestamp(job["updated_at"] or job["submitted_at"])
        if updated_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - updated_at > self.stale_after

    def list_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent jobs with their summary totals and interview counts"""
        return self.db.fetch_all("""
            SELECT
                aj.*,
                s.total_candidates AS summary_total_candidates,
                s.recommended_candidates,
                s.average_score,
                COUNT(DISTINCT i.interview_id) AS scheduled_interviews
            FROM analysis_jobs aj
            LEFT JOIN analysis_summaries s ON aj.requirement_id = s.job_id
            LEFT JOIN interview_schedules i ON aj.requirement_id = i.job_id
            GROUP BY aj.requirement_id, s.summary_id
            ORDER BY aj.submitted_at DESC
            LIMIT ?
        """, [limit])

    def get_processing_queue(self, tracking_id: str) -> List[Dict[str, Any]]:
        self.get_job(tracking_id)
        return self.db.fetch_all("""
            SELECT pq.*, c.candidate_name, ce.overall_score
            FROM processing_queue pq
            LEFT JOIN candidates c ON pq.candidate_email = c.email
            LEFT JOIN candidate_evaluations ce ON pq.evaluation_id = ce.evaluation_id
            WHERE pq.requirement_id = ?
            ORDER BY pq.queued_at DESC, pq.queue_id DESC
        """, [tracking_id])

    def get_error_logs(self, tracking_id: str) -> List[Dict[str, Any]]:
        self.get_job(tracking_id)
        return self.audit.get_error_logs({"requirement_id": tracking_id})
