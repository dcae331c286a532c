"""Environment-driven configuration with Pydantic v2."""

from typing import Any, Dict, Literal, Optional
from pathlib import Path
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")

    # Job Queue
    worker_id_prefix: str = Field(default="worker", env="WORKER_ID_PREFIX")
    max_jobs_per_request: int = Field(default=10, env="MAX_JOBS_PER_REQUEST", ge=1, le=100)
    job_max_attempts: int = Field(default=3, env="JOB_MAX_ATTEMPTS", ge=1, le=20)
    max_pending_jobs_per_org: int = Field(default=100, env="MAX_PENDING_JOBS_PER_ORG", ge=1)
    job_stale_lock_seconds: int = Field(default=300, env="JOB_STALE_LOCK_SECONDS", ge=30)
    cron_secret: Optional[str] = Field(default=None, env="CRON_SECRET")

    # Handler Timeouts
    http_default_timeout_ms: int = Field(default=30000, env="HTTP_DEFAULT_TIMEOUT_MS", ge=100)
    code_default_timeout_ms: int = Field(default=5000, env="CODE_DEFAULT_TIMEOUT_MS", ge=10)
    code_max_timeout_ms: int = Field(default=30000, env="CODE_MAX_TIMEOUT_MS", ge=10)
    code_max_workers: int = Field(default=4, env="CODE_MAX_WORKERS", ge=1, le=64)
    database_query_timeout: float = Field(default=30.0, env="DATABASE_QUERY_TIMEOUT", gt=0)

    # Connection pooling for database handlers
    connection_idle_ttl: int = Field(default=300, env="CONNECTION_IDLE_TTL", ge=1)

    # Connection vault (vault id -> {connectionString, database})
    vault_connections: Dict[str, Dict[str, Any]] = Field(default_factory=dict, env="VAULT_CONNECTIONS")

    # SMTP (email-send handler)
    smtp_host: Optional[str] = Field(default=None, env="SMTP_HOST")
    smtp_port: int = Field(default=587, env="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, env="SMTP_USER")
    smtp_password: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SMTP_PASS", "SMTP_PASSWORD", "smtp_password"),
    )
    from_email: Optional[str] = Field(default=None, env="FROM_EMAIL")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
