"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./newsletter_intel.db"

    # Optional: explicit CA bundle for Supabase (asyncpg SSL verification).
    # If set to a relative path, it's resolved relative to backend/.
    supabase_ssl_ca_file: Optional[str] = None

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # Gmail - paths relative to backend/ or set absolute
    credentials_path: str = "credentials.json"
    token_path: str = "token.pickle"
    # If set, per-user Gmail tokens live at TOKEN_DIR/token_<user_id>.pickle (recommended for multi-user).
    token_dir: Optional[str] = None
    gmail_sender_query: str = "from:substack.com"
    gmail_max_results: int = 500
    gmail_page_size: int = 100

    # AI - set OPENAI_API_KEY for company extraction
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2
    extraction_max_chars: int = 8000
    extraction_max_tokens: int = 4000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (Celery broker, pipeline status, progress events)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set
    # Periodic backlog drain (0 disables the beat entry)
    backlog_drain_interval_s: int = 15 * 60
    backlog_drain_user_ids: list[int] = []

    # Auth - JWT or API key
    secret_key: str = ""
    api_key_header: str = "X-API-Key"
    api_key: str = ""
    api_key_user_id: Optional[int] = None
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7

    # Host execution ceiling and the safety margins measured against it
    host_max_duration_s: float = 60.0
    safety_timer_margin_s: float = 5.0
    continuation_safety_margin_s: float = 15.0
    fetch_timeout_fraction: float = 0.25

    # Continuation loop: per-iteration budget and batch size clamp
    iteration_budget_s: float = 25.0
    rate_limited_iteration_budget_s: float = 12.0
    batch_size_min: int = 10
    batch_size_max: int = 20
    # Hard clamp for direct run_batch calls
    runner_max_batch_size: int = 25

    # Emails shorter than this are completed without an extractor call
    min_content_length: int = 20
    # Re-fetch overlap before the newest stored email, avoids gaps at exact timestamps
    fetch_overlap_minutes: int = 5
    default_days_back: int = 30
    # A completed sync newer than this is "fresh" and skipped unless force_refresh
    freshness_window_s: int = 15 * 60
    # A lock older than this is abandoned
    sync_lock_ttl_s: int = 10 * 60
    # Progress events are best-effort; never wait longer than this on the sink
    progress_publish_timeout_s: float = 2.0

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def fetch_timeout_s(self) -> float:
        return self.host_max_duration_s * self.fetch_timeout_fraction

    @property
    def safety_timer_delay_s(self) -> float:
        return max(0.0, self.host_max_duration_s - self.safety_timer_margin_s)

    @property
    def continuation_deadline_s(self) -> float:
        return max(0.0, self.host_max_duration_s - self.continuation_safety_margin_s)


settings = Settings()
