from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional
import os

class Settings(BaseSettings):
    # Provider (OpenRouter speaks the OpenAI wire protocol)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    provider_timeout_seconds: float = 60.0
    provider_temperature: float = 0.7
    app_url: str = "http://localhost:3000"  # sent as HTTP-Referer for OpenRouter attribution

    # BYOK - Fernet key used to decrypt user-supplied provider keys
    byok_encryption_key: str = ""

    # Models usable without BYOK (comma-separated)
    curated_models: str = "openai/gpt-5-mini"

    # Database - DATABASE_URL in hosted environments, SQLite locally
    database_url: Optional[str] = None

    # Redis - optional, enables cross-process event relay
    redis_url: str = ""

    # Queue
    queue_backend: str = "sql"  # sql | memory
    queue_attempts: int = 3
    queue_backoff_base_seconds: float = 1.0
    queue_kind_aware_retry: bool = False
    queue_stalled_seconds: int = 300
    queue_keep_completed_hours: int = 24
    queue_keep_completed_count: int = 1000
    queue_keep_failed_hours: int = 168

    # Worker
    worker_concurrency: int = 4
    worker_poll_interval: float = 0.5
    worker_max_idle_interval: float = 5.0
    run_worker_in_process: bool = True

    # Streaming
    sse_ping_seconds: int = 15

    # Conversations
    archive_threshold: int = 50
    enqueue_rate_limit: str = "30/minute"

    # App Settings
    app_name: str = "Thinkspace"
    app_version: str = "1.0.0"
    debug: bool = False
    allowed_origins: str = "http://localhost:3000"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # DATABASE_URL is picked up by the field itself; hosted Postgres URLs
        # need the asyncpg driver spelled out for SQLAlchemy async
        url = self.database_url
        if not url:
            self.database_url = "sqlite+aiosqlite:///./thinkspace.db"
        elif url.startswith("postgres://"):
            self.database_url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            self.database_url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def curated_models_list(self) -> List[str]:
        return [m.strip() for m in self.curated_models.split(",") if m.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

@lru_cache()
def get_settings() -> Settings:
    return Settings()
