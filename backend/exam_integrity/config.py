from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "Exam Integrity Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"

    @property
    def debug(self) -> bool:
        return self.DEBUG

    # API Settings
    API_V1_PREFIX: str = "/api/v1"
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Supabase Configuration (audit mirror, optional)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    @property
    def supabase_url(self) -> Optional[str]:
        return self.SUPABASE_URL

    @property
    def supabase_key(self) -> Optional[str]:
        return self.SUPABASE_KEY

    @property
    def supabase_service_role_key(self) -> Optional[str]:
        return self.SUPABASE_SERVICE_ROLE_KEY

    AUDIT_DECISIONS_TABLE: str = "integrity_escalation_decisions"
    AUDIT_SESSION_TABLE: str = "integrity_session_audit"

    # CORS Settings
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @property
    def host(self) -> str:
        return self.HOST

    @property
    def port(self) -> int:
        return self.PORT

    # Signal ingress
    CLOCK_SKEW_TOLERANCE_SECONDS: float = 30.0
    LATENESS_WINDOW_SECONDS: float = 5.0
    INGRESS_BUFFER_SIZE: int = 500  # per session reorder buffer
    WORKER_QUEUE_SIZE: int = 50  # released batches waiting per session

    # Incident aggregation
    CORRELATION_GAP_SECONDS: float = 10.0
    SEVERITY_MEDIUM_THRESHOLD: float = 0.60
    SEVERITY_HIGH_THRESHOLD: float = 0.85

    # Escalation defaults (per-exam policies override these)
    RECOMMEND_TERMINATE_COUNT: int = 3
    RECOMMEND_TERMINATE_WINDOW_MINUTES: int = 10
    REVIEW_SLA_MINUTES: int = 5
    DIGEST_INTERVAL_SECONDS: int = 60

    # Session control
    TERMINATION_CONFIRMATION_TTL_SECONDS: int = 60
    SESSION_RETENTION_MINUTES: int = 24 * 60
    ARCHIVED_SESSION_IDS_LIMIT: int = 10000  # ids remembered after their records are dropped

    # Alert fan-out
    SUBSCRIBER_BUFFER_LIMIT: int = 200
    SUBSCRIBER_STALL_TIMEOUT_SECONDS: int = 120
    HUB_RETENTION_EVENTS: int = 50000

    # Scheduler
    TICK_INTERVAL_SECONDS: float = 1.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
