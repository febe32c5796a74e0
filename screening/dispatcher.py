import logging
import secrets
import string
import time
from typing import Any, Dict, Optional

import requests

from screening.audit import AuditLog
from screening.errors import UpstreamError
from screening.models import now_iso
from screening.schemas import AnalysisRequest, parse

logger = logging.getLogger(__name__)

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 9
ESTIMATED_TIME = "3-5 minutes"


def generate_tracking_id() -> str:
    """``REQ-<epoch ms>-<9 random [a-z0-9]>``.

    Unique with overwhelming probability only; nothing checks the store.
    """
    suffix = "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"REQ-{int(time.time() * 1000)}-{suffix}"


class WebhookDispatcher:
    """Hands a new analysis request to the external evaluator workflow"""

    def __init__(self, webhook_url: str, api_key: str = "", timeout: float = 30,
                 audit: Optional[AuditLog] = None, session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout = timeout
        self.audit = audit
        self.session = session or requests.Session()

    def submit(self, data: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        request = parse(AnalysisRequest, data)
        requirement_id = generate_tracking_id()

        payload = {
            "requirement_id": requirement_id,
            "jobTitle": request.job_title,
            "jobDescription": request.job_description,
            "experienceLevel": request.experience_level.value,
            "userId": user_id or "anonymous",
            "timestamp": now_iso(),
        }

        try:
            response = self.session.post(
                self.webhook_url,
                json=payload,
                headers={"X-API-Key": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("Webhook request for %s failed: %s", requirement_id, e)
            self._audit("submit_failed", requirement_id, {"reason": str(e)}, user_id)
            raise UpstreamError("Failed to submit analysis to processing queue")

        if not response.ok:
            logger.error("Webhook error for %s: %s %s", requirement_id, response.status_code, response.text[:500])
            self._audit("submit_failed", requirement_id, {"status_code": response.status_code}, user_id)
            raise UpstreamError("Failed to submit analysis to processing queue")

        try:
            webhook_result = response.json()
        except ValueError:
            webhook_result = {}
        if not isinstance(webhook_result, dict):
            webhook_result = {"webhookResponse": webhook_result}

        logger.info("Submitted analysis %s for '%s'", requirement_id, request.job_title)
        self._audit("submitted", requirement_id, {
            "job_title": request.job_title,
            "experience_level": request.experience_level.value,
            "input_type": request.input_type.value,
        }, user_id)

        return {
            **webhook_result,
            "success": True,
            "requirementId": requirement_id,
            "status": "submitted",
            "message": "Analysis submitted successfully",
            "estimatedTime": ESTIMATED_TIME,
        }

    def _audit(self, action: str, requirement_id: str, details: Dict[str, Any], user_id: Optional[str]):
        if self.audit is not None:
            self.audit.log_analysis_activity(requirement_id, action, details=details, user_id=user_id or "anonymous")

    def close(self):
        self.session.close()
