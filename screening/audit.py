import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from screening.database import Database
from screening.models import now_iso

logger = logging.getLogger(__name__)

AUDIT_FILTERS = ("action", "entity_type", "entity_id", "job_id", "candidate_id", "user_id")
ERROR_FILTERS = ("requirement_id", "candidate_id", "error_type", "error_severity", "resolved")
SUMMARY_GROUPS = ("action", "entity_type", "user_id")


class AuditLog:
    """Append-only audit trail and error log.

    Writes never raise: a failed write is logged and reported as ``None`` so
    the caller's own operation is unaffected.
    """

    def __init__(self, db: Database):
        self.db = db

    def log_activity(self, action: str, entity_type: str, entity_id: Any,
                     job_id: Optional[str] = None, candidate_id: Optional[str] = None,
                     user_id: str = "system", ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None,
                     details: Optional[Dict[str, Any]] = None) -> Optional[Dict]:
        try:
            entry = self.db.insert("audit_log", {
                "action": action,
                "entity_type": entity_type,
                "entity_id": None if entity_id is None else str(entity_id),
                "job_id": job_id,
                "candidate_id": candidate_id,
                "user_id": user_id or "system",
                "ip_address": ip_address,
                "user_agent": user_agent,
                "details": json.dumps(details or {}, default=str),
                "created_at": now_iso(),
            })
            return self._decode(entry, "details")
        except Exception:
            logger.exception("Failed to log activity %s for %s %s", action, entity_type, entity_id)
            return None

    def log_analysis_activity(self, job_id: str, action: str, details=None, user_id: str = "system"):
        return self.log_activity(
            action=f"analysis_{action}",
            entity_type="analysis_job",
            entity_id=job_id,
            job_id=job_id,
            user_id=user_id,
            details=details,
        )

    def log_candidate_activity(self, candidate_id: str, action: str, job_id: Optional[str] = None,
                               details=None, user_id: str = "system"):
        return self.log_activity(
            action=f"candidate_{action}",
            entity_type="candidate",
            entity_id=candidate_id,
            candidate_id=candidate_id,
            job_id=job_id,
            user_id=user_id,
            details=details,
        )

    def log_interview_activity(self, interview_id: Any, action: str, job_id: Optional[str] = None,
                               candidate_id: Optional[str] = None, details=None,
                               user_id: str = "system", ip_address: Optional[str] = None):
        return self.log_activity(
            action=f"interview_{action}",
            entity_type="interview",
            entity_id=interview_id,
            job_id=job_id,
            candidate_id=candidate_id,
            user_id=user_id,
            ip_address=ip_address,
            details=details,
        )

    def log_error(self, error_type: str, error_message: str, requirement_id: Optional[str] = None,
                  candidate_id: Optional[str] = None, error_severity: str = "error",
                  error_details: Optional[Dict[str, Any]] = None, workflow_step: Optional[str] = None,
                  node_name: Optional[str] = None, user_message: Optional[str] = None) -> Optional[Dict]:
        """Record a failure, plus an ``error_occurred`` audit entry pointing at it"""
        try:
            entry = self.db.insert("error_logs", {
                "requirement_id": requirement_id,
                "candidate_id": candidate_id,
                "error_type": error_type,
                "error_severity": error_severity,
                "error_message": error_message,
                "error_details": json.dumps(error_details or {}, default=str),
                "workflow_step": workflow_step,
                "node_name": node_name,
                "user_message": user_message,
                "created_at": now_iso(),
            })
        except Exception:
            logger.exception("Failed to log error %s", error_type)
            return None

        self.log_activity(
            action="error_occurred",
            entity_type="error",
            entity_id=entry["error_id"],
            job_id=requirement_id,
            candidate_id=candidate_id,
            details={
                "error_type": error_type,
                "error_severity": error_severity,
                "workflow_step": workflow_step,
            },
        )
        return self._decode(entry, "error_details")

    def get_audit_logs(self, filters: Optional[Dict[str, Any]] = None,
                       limit: int = 100, offset: int = 0) -> List[Dict]:
        filters = filters or {}
        conditions = {f"al.{key}": filters.get(key) for key in AUDIT_FILTERS}
        if filters.get("start_date"):
            conditions["al.created_at"] = {"operator": "gte", "value": filters["start_date"]}
        where = self.db.build_where_clause(conditions)
        if filters.get("end_date"):
            where.and_("al.created_at <= ?", filters["end_date"])

        rows = self.db.fetch_all(f"""
            SELECT al.*, c.candidate_name, aj.job_title
            FROM audit_log al
            LEFT JOIN candidates c ON al.candidate_id = c.candidate_id
            LEFT JOIN analysis_jobs aj ON al.job_id = aj.requirement_id
            {where.clause}
            ORDER BY al.created_at DESC, al.log_id DESC
            LIMIT ? OFFSET ?
        """, where.params + [limit, offset])
        return [self._decode(row, "details") for row in rows]

    def get_entity_history(self, entity_type: str, entity_id: Any, limit: int = 10) -> List[Dict]:
        rows = self.db.fetch_all("""
            SELECT action, details, created_at, user_id
            FROM audit_log
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY created_at DESC, log_id DESC
            LIMIT ?
        """, [entity_type, str(entity_id), limit])
        return [self._decode(row, "details") for row in rows]

    def get_error_logs(self, filters: Optional[Dict[str, Any]] = None,
                       limit: int = 100, offset: int = 0) -> List[Dict]:
        filters = filters or {}
        conditions = {f"el.{key}": filters.get(key) for key in ERROR_FILTERS}
        if conditions["el.resolved"] is not None:
            conditions["el.resolved"] = 1 if conditions["el.resolved"] else 0
        if filters.get("start_date"):
            conditions["el.created_at"] = {"operator": "gte", "value": filters["start_date"]}
        where = self.db.build_where_clause(conditions)
        if filters.get("end_date"):
            where.and_("el.created_at <= ?", filters["end_date"])

        rows = self.db.fetch_all(f"""
            SELECT el.*, aj.job_title, c.candidate_name
            FROM error_logs el
            LEFT JOIN analysis_jobs aj ON el.requirement_id = aj.requirement_id
            LEFT JOIN candidates c ON el.candidate_id = c.candidate_id
            {where.clause}
            ORDER BY el.created_at DESC, el.error_id DESC
            LIMIT ? OFFSET ?
        """, where.params + [limit, offset])
        return [self._decode(row, "error_details") for row in rows]

    def resolve_error(self, error_id: int, user_id: str = "system") -> Optional[Dict]:
        resolved_at = now_iso()
        changed = self.db.update(
            "error_logs",
            {"resolved": 1, "resolved_at": resolved_at},
            {"error_id": error_id},
        )
        if not changed:
            return None

        self.log_activity(
            action="error_resolved",
            entity_type="error",
            entity_id=error_id,
            user_id=user_id,
            details={"resolved_at": resolved_at},
        )
        row = self.db.fetch_one("SELECT * FROM error_logs WHERE error_id = ?", [error_id])
        return self._decode(row, "error_details")

    def get_activity_summary(self, start_date: Optional[str] = None, end_date: Optional[str] = None,
                             group_by: str = "action") -> List[Dict]:
        if group_by not in SUMMARY_GROUPS:
            raise ValueError(f"Cannot group activity by {group_by}")
        now = datetime.now(timezone.utc)
        start_date = start_date or (now - timedelta(days=7)).isoformat(timespec="seconds")
        end_date = end_date or now.isoformat(timespec="seconds")

        return self.db.fetch_all(f"""
            SELECT {group_by},
                   COUNT(*) AS count,
                   COUNT(DISTINCT user_id) AS unique_users,
                   COUNT(DISTINCT job_id) AS unique_jobs,
                   COUNT(DISTINCT candidate_id) AS unique_candidates
            FROM audit_log
            WHERE created_at BETWEEN ? AND ?
            GROUP BY {group_by}
            ORDER BY count DESC
        """, [start_date, end_date])

    def cleanup_audit_logs(self, days_to_keep: int = 90) -> int:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days_to_keep)).isoformat(timespec="seconds")
        deleted = self.db.execute("DELETE FROM audit_log WHERE created_at < ?", [cutoff]).rowcount

        self.log_activity(
            action="audit_cleanup",
            entity_type="system",
            entity_id="audit_log",
            details={"deleted_count": deleted, "cutoff_date": cutoff, "days_kept": days_to_keep},
        )
        return deleted

    @staticmethod
    def _decode(row: Optional[Dict], column: str) -> Optional[Dict]:
        if row and isinstance(row.get(column), str):
            try:
                row[column] = json.loads(row[column])
            except json.JSONDecodeError:
                pass
        return row
