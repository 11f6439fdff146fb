"""
Application settings (pydantic-settings v2, nested env keys with `__`).
"""
import json
from typing import Annotated, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RedisSettings(BaseModel):
    url: Optional[str] = None
    namespace: str = "premium-billing"
    lock_timeout: float = 15.0
    lock_blocking_timeout: float = 5.0


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./premium.db"
    echo: bool = False


class Settings(BaseSettings):
    """Project settings"""

    PROJECT_NAME: str = "Premium Billing"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Browser-facing checkout return pages
    FRONTEND_URL: str = "http://localhost:3000"
    # Public base URL providers post notifications to
    BACKEND_URL: str = "http://localhost:8000"

    CORS_ORIGINS: Annotated[list[str], NoDecode] = Field(default=["http://localhost:3000"])

    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """Accept a JSON list or a comma separated string."""
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                return json.loads(s)
            return [item.strip() for item in s.split(",") if item.strip()]
        return v

    @field_validator("FRONTEND_URL", "BACKEND_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


settings = Settings()
