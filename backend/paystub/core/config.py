"""
Pydantic Settings — centralized configuration loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ──────────────────────────────
    POSTGRES_USER: str = "paystub_user"
    POSTGRES_PASSWORD: str = "paystub_pass"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "paystub_db"

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for app runtime (asyncpg)."""
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # ── Redis / Celery ────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # ── Queues (fallbacks when a routing rule names none) ──
    COLLECT_QUEUE: str = "pay_stub_collect"
    BATCH_QUEUE: str = "pay_stub_batch"
    UPLOAD_QUEUE: str = "los_upload"

    # ── Retry policy ──────────────────────────
    # Used when the named policy is missing from the retry_policies table.
    RETRY_POLICY_NAME: str = "default"
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_BACKOFF_SEC: int = 30
    RETRY_JITTER_PCT: int = 25

    # ── Batch dispatch ────────────────────────
    BATCH_DEFAULT_SIZE: int = 10_000
    BATCH_MAX_SIZE: int = 50_000
    BATCH_PAGE_SIZE: int = 100
    BATCH_PROGRESS_INTERVAL: int = 100
    BATCH_MILESTONE_INTERVAL: int = 1_000

    # ── Monitoring ────────────────────────────
    STUCK_UPLOAD_THRESHOLD_MINUTES: int = 30
    STUCK_SWEEP_INTERVAL_SEC: float = 300.0
    RETRY_SWEEP_INTERVAL_SEC: float = 120.0

    # ── Escalation ────────────────────────────
    SMS_URGENCY_WINDOW_HOURS: int = 24
    SMS_URGENCY_RETRY_COUNT: int = 2
    EMAIL_WEBHOOK_URL: str = ""
    SMS_WEBHOOK_URL: str = ""
    TEAM_CHAT_WEBHOOK_URL: str = ""
    APPLICANT_WEBHOOK_URL: str = ""
    NOTIFICATION_TIMEOUT_SEC: float = 10.0

    # ── LOS (external transfer target) ────────
    LOS_API_BASE_URL: str = "https://los.example.com/api/v1"
    LOS_API_KEY: str = ""
    LOS_TIMEOUT_SEC: float = 60.0

    # ── Document collection ───────────────────
    SECURE_UPLOAD_BASE_URL: str = "https://secure-upload.example.com/upload"
    DOCUMENT_BUCKET: str = "secure-psc-documents"
    KMS_KEY_REGION: str = "us-east-1"
    DOCUMENT_STORE_URL: str = "https://storage.example.com"
    DOCUMENT_STORE_TOKEN: str = ""
    DOCUMENT_FETCH_TIMEOUT_SEC: float = 30.0

    # ── Application ───────────────────────────
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ["../.env", ".env"], "extra": "ignore"}


settings = Settings()
