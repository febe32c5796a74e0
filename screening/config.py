"""Configuration settings for the Resume Screening Service"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_PATH = os.getenv("DATABASE_PATH", "data/screening.db")
DATABASE_POOL_MAX = int(os.getenv("DATABASE_POOL_MAX", "10"))

# Connections held longer than this without release are reclaimed
DB_RELEASE_TIMEOUT = float(os.getenv("DB_RELEASE_TIMEOUT", "5"))

# Slow query threshold in milliseconds (logged outside production only)
SLOW_QUERY_MS = int(os.getenv("SLOW_QUERY_MS", "1000"))

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# External evaluator (n8n workflow)
N8N_WEBHOOK_URL = os.getenv("N8N_WEBHOOK_URL", "http://localhost:5678/webhook/submit-resume-analysis")
N8N_API_KEY = os.getenv("N8N_API_KEY", "")
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "30"))

# Job status metadata
STALE_AFTER_MINUTES = int(os.getenv("STALE_AFTER_MINUTES", "15"))
MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))

DEFAULT_RESULTS_LIMIT = int(os.getenv("DEFAULT_RESULTS_LIMIT", "50"))


@dataclass
class Settings:
    """Runtime settings, one instance per application"""
    database_path: str = DATABASE_PATH
    pool_max: int = DATABASE_POOL_MAX
    release_timeout: float = DB_RELEASE_TIMEOUT
    slow_query_ms: int = SLOW_QUERY_MS
    app_env: str = APP_ENV
    log_level: str = LOG_LEVEL
    webhook_url: str = N8N_WEBHOOK_URL
    webhook_api_key: str = N8N_API_KEY
    webhook_timeout: float = WEBHOOK_TIMEOUT
    stale_after_minutes: int = STALE_AFTER_MINUTES
    max_retry_attempts: int = MAX_RETRY_ATTEMPTS
    default_results_limit: int = DEFAULT_RESULTS_LIMIT

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"
