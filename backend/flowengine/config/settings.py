# /flowengine/config/settings.py

import sys
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Runtime
    environment: str = "production"
    log_level: str = "INFO"

    # Execution Driver
    max_steps: int = Field(default=20, description="Step budget for a single Driver invocation")

    # Webhook nodes
    webhook_default_timeout_ms: int = 5000
    webhook_max_timeout_ms: int = 30000
    webhook_retry_attempts: int = 2

    # AI nodes
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    ai_default_model: str = "gpt-4o-mini"
    ai_default_temperature: float = 0.7
    ai_default_max_tokens: int = 200
    ai_timeout_seconds: float = 20.0
    ai_default_system_prompt: str = "You are a helpful assistant."

    # Node defaults
    transfer_default_text: str = "Transferring you to an agent..."
    delay_default_seconds: float = 2.0
    delay_max_seconds: float = 10.0

    # Session store
    redis_url: Optional[str] = None
    session_ttl_seconds: int = 86400

    # Observability
    alerting_webhook_url: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="FLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ---------------- Validators ---------------- #

    @field_validator("max_steps", "webhook_retry_attempts")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_timeouts(self):
        if self.webhook_default_timeout_ms > self.webhook_max_timeout_ms:
            raise ValueError("webhook_default_timeout_ms cannot exceed webhook_max_timeout_ms")
        if self.delay_default_seconds < 0 or self.delay_max_seconds < 0:
            raise ValueError("delay settings cannot be negative")
        return self


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production" and not (settings_obj.openai_api_key or settings_obj.gemini_api_key):
            # AI nodes degrade to a failure marker without a provider, so this is not fatal.
            print("--- [WARN] No AI API key configured; ai_response nodes will fail softly.")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


try:
    settings = Settings()
except ValueError as e:
    print(f"--- [ERROR] Environment validation failed: {e}")
    sys.exit(1)
validate_environment(settings)
