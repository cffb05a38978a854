"""Runtime settings, read from the environment."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class Settings(BaseModel):
    engine_timeout: int = Field(default=60, ge=1, description="Per-request docker client timeout (s)")
    engine_connect_retries: int = Field(default=3, ge=1)
    request_timeout: float = Field(default=30.0, gt=0, description="Deadline for mutating API calls (s)")
    start_concurrency: int = Field(default=4, ge=1)
    stop_timeout: int = Field(default=10, ge=0)
    log_close_grace: float = Field(default=2.0, gt=0)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    postgres_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "http://localhost:5173")
        return cls(
            engine_timeout=_env_int("ENGINE_TIMEOUT_SECONDS", 60),
            engine_connect_retries=_env_int("ENGINE_CONNECT_RETRIES", 3),
            request_timeout=_env_float("REQUEST_TIMEOUT_SECONDS", 30.0),
            start_concurrency=_env_int("START_CONCURRENCY", 4),
            stop_timeout=_env_int("STOP_TIMEOUT_SECONDS", 10),
            log_close_grace=_env_float("LOG_CLOSE_GRACE_SECONDS", 2.0),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8080),
            postgres_url=os.getenv("POSTGRES_URL") or None,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
