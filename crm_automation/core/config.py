"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables (AUTOMATION_ prefix)."""

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/automation.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # HTTP nodes
    http_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    http_max_retries: int = Field(default=5, ge=0, le=10)

    # Execution Engine
    engine_max_steps: int = Field(default=500, ge=1)

    # External collaborators
    messaging_service_url: str = Field(default="http://localhost:5000")
    ai_service_url: str = Field(default="http://localhost:5001")
    crm_service_url: str = Field(default="http://localhost:5002")
    service_api_key: Optional[str] = Field(default=None)

    email_api_url: str = Field(default="https://api.resend.com/emails")
    email_api_key: Optional[str] = Field(default=None)
    email_from: str = Field(default="no-reply@example.com")
    sms_api_url: str = Field(default="http://localhost:5003/sms")
    sms_api_key: Optional[str] = Field(default=None)
    sms_from: Optional[str] = Field(default=None)

    # Business hours triggers
    business_timezone: str = Field(default="UTC")
    business_hours_start: int = Field(default=9, ge=0, le=23)
    business_hours_end: int = Field(default=18, ge=1, le=24)
    business_days: List[int] = Field(default=[0, 1, 2, 3, 4])

    # Background sweeps
    scheduler_enabled: bool = Field(default=True)
    timeout_sweep_interval_seconds: int = Field(default=60, ge=5)
    delay_sweep_interval_seconds: int = Field(default=60, ge=5)
    sweep_batch_size: int = Field(default=50, ge=1, le=1000)
    delay_job_max_attempts: int = Field(default=3, ge=1)
    delay_job_retry_minutes: int = Field(default=5, ge=1)

    # HTTP surface
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1, le=65535)
    cors_origins: List[str] = Field(default=["*"])

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for file-based SQLite."""
        if v and v.startswith("sqlite") and ":///" in v and ":memory:" not in v:
            db_path = v.split("///")[1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("business_days")
    @classmethod
    def validate_business_days(cls, v):
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("business_days must contain weekday numbers 0 (Monday) to 6 (Sunday)")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = SettingsConfigDict(
        env_prefix="AUTOMATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="none",
        env_nested_delimiter="__",
    )
