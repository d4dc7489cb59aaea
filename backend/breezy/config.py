"""
Service configuration loaded from environment variables (and .env) with pydantic-settings.
"""
import pathlib
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_environment() -> Optional[pathlib.Path]:
    """Load .env from the project root if present, else from the current directory."""
    project_root = pathlib.Path(__file__).parent.parent.parent
    env_path = project_root / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        return env_path
    load_dotenv()
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    # Language-model service
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI chat model")
    groq_api_key: Optional[str] = Field(default=None, description="Groq API key; preferred over OpenAI when set")
    groq_model: str = Field(default="llama-3.1-8b-instant", description="Groq chat model")
    llm_timeout_seconds: float = Field(default=8.0, description="Per-attempt timeout for a model call")
    llm_max_attempts: int = Field(default=3, description="Attempts before the orchestrator gives up")
    llm_backoff_seconds: float = Field(default=1.0, description="Linear backoff step between attempts")

    # Telephony
    twilio_account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    twilio_auth_token: Optional[str] = Field(default=None, description="Twilio auth token; enables signature checks")
    public_base_url: Optional[str] = Field(default=None, description="Public URL Twilio calls, when behind a proxy")

    # Store
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_service_role_key: Optional[str] = Field(default=None, description="Supabase service role key")
    business_seed_file: Optional[str] = Field(default=None, description="JSON list of businesses for the in-memory store")

    log_level: str = Field(default="INFO", description="Root log level")
    broadcast_queue_size: int = Field(default=100, description="Per-listener event queue size")

    @field_validator(
        "openai_api_key", "groq_api_key", "twilio_account_sid", "twilio_auth_token",
        "supabase_url", "supabase_service_role_key", "business_seed_file",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _strip_base_url(cls, v):
        if isinstance(v, str):
            return v.strip().rstrip("/") or None
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_environment()
    return Settings()
