from __future__ import annotations

import os
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

load_dotenv()


class Settings(BaseModel):
    STORE_BACKEND: Literal["json", "sqlite"] = Field(default="json")
    STORE_PATH: str = Field(default="data/notification_tokens.json")
    STORE_DB_PATH: str = Field(default="data/basefruits.db")
    REMOVE_DELETES_SUBSCRIBER: bool = Field(default=False)
    BROADCAST_RATE_LIMITER: Literal["fixed", "token_bucket"] = Field(default="fixed")
    BROADCAST_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    BROADCAST_RPS: float = Field(default=1.0, gt=0)
    BROADCAST_BURST: int = Field(default=1, ge=1)
    BROADCAST_CONCURRENCY: int = Field(default=1, ge=1)
    PUSH_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    NOTIFICATION_TITLE: str = Field(default="Base Fruits Alert 🔥")
    NOTIFICATION_TARGET_URL: str = Field(default="https://base-fruits.vercel.app/")
    NOTIFICATION_ID_PREFIX: str = Field(default="daily-reminder")
    BROADCAST_SCHEDULE_ENABLED: bool = Field(default=False)
    BROADCAST_INTERVAL_SECONDS: int = Field(default=86400)
    BROADCAST_JITTER_SECONDS: int = Field(default=60)
    BROADCAST_BACKOFF_MAX_SECONDS: int = Field(default=3600)
    API_KEYS: str = Field(default="", description="comma-separated API keys")
    TRIGGER_REQUIRE_KEY: bool = Field(default=False)
    CORS_ALLOW_ORIGINS: str = Field(default="*")
    LOG_LEVEL: str = Field(default="INFO")
    RATE_LIMIT_ENABLED: bool = Field(default=False)
    RATE_LIMIT_RPS: float = Field(default=5.0)
    RATE_LIMIT_BURST: int = Field(default=20)

    @model_validator(mode="after")
    def _trigger_key_needs_keys(self) -> "Settings":
        if self.TRIGGER_REQUIRE_KEY and not self.api_keys():
            raise ValueError("TRIGGER_REQUIRE_KEY needs at least one API_KEYS entry")
        return self

    def api_keys(self) -> set[str]:
        return {k.strip() for k in self.API_KEYS.split(",") if k.strip()}


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        bad = [
            str(error["loc"][0]) if error.get("loc") else error["msg"]
            for error in exc.errors()
        ]
        joined = ", ".join(sorted(set(bad)))
        raise RuntimeError(f"Invalid configuration values: {joined}") from exc


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings
