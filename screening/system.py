import logging
from typing import Optional

from screening.audit import AuditLog
from screening.config import Settings
from screening.database import Database
from screening.dispatcher import WebhookDispatcher
from screening.interviews import InterviewScheduler
from screening.jobs import AnalysisJobStore
from screening.results import ResultsAggregator

logger = logging.getLogger(__name__)


class ScreeningSystem:
    """Main system orchestrator: one database pool shared by every store"""

    def __init__(self, settings: Optional[Settings] = None, db: Optional[Database] = None,
                 dispatcher: Optional[WebhookDispatcher] = None):
        self.settings = settings or Settings.from_env()
        self.db = db or Database.from_settings(self.settings)
        self.audit = AuditLog(self.db)

        self.jobs = AnalysisJobStore(
            self.db, self.audit,
            stale_after_minutes=self.settings.stale_after_minutes,
            max_retry_attempts=self.settings.max_retry_attempts,
        )
        self.results = ResultsAggregator(self.db, default_limit=self.settings.default_results_limit)
        self.interviews = InterviewScheduler(self.db, self.audit)
        self.dispatcher = dispatcher or WebhookDispatcher(
            self.settings.webhook_url,
            api_key=self.settings.webhook_api_key,
            timeout=self.settings.webhook_timeout,
            audit=self.audit,
        )
        self._closed = False
        logger.info("Screening system ready (database: %s)", self.settings.database_path)

    def close(self):
        """Release pooled connections and the webhook session; safe to call twice"""
        if self._closed:
            return
        self._closed = True
        self.dispatcher.close()
        self.db.close()
        logger.info("Screening system shut down")
