"""Settings via pydantic-settings with WARDEN_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from warden.utils import strip_env_var_quotes

ProviderDialect = Literal["openai", "anthropic"]

# Provider name -> wire dialect. OpenAI-compatible vendors share one adapter.
PROVIDER_DIALECTS: dict[str, ProviderDialect] = {
    "openai": "openai",
    "anthropic": "anthropic",
    "xai": "openai",
    "cerebras": "openai",
    "vllm": "openai",
    "ollama": "openai",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WARDEN_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("warden", validation_alias="DB_USER")
    db_password: str = Field("warden_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("warden", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 9000
    conversation_header: str = "x-warden-conversation-id"

    # Upstream providers
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com"
    xai_base_url: str = "https://api.x.ai/v1"
    cerebras_base_url: str = "https://api.cerebras.ai/v1"
    vllm_base_url: str = "http://localhost:8000/v1"
    ollama_base_url: str = "http://localhost:11434/v1"
    upstream_timeout_connect: int = 10  # seconds
    upstream_timeout_read: int = 300  # seconds

    # Dual LLM (quarantine + privileged stages)
    dual_llm_provider: ProviderDialect = "anthropic"
    dual_llm_model: str = "claude-sonnet-4-5-20250514"
    dual_llm_api_key: str = ""
    dual_llm_temperature: float = 0.1
    dual_llm_max_tokens: int = 1024
    dual_llm_timeout: float = 30.0  # seconds, per model call

    @field_validator(
        "openai_base_url",
        "anthropic_base_url",
        "xai_base_url",
        "cerebras_base_url",
        "vllm_base_url",
        "ollama_base_url",
        "dual_llm_api_key",
        "db_password",
        mode="before",
    )
    @classmethod
    def _strip_quotes(cls, value: object) -> object:
        if isinstance(value, str):
            return strip_env_var_quotes(value.strip())
        return value

    @model_validator(mode="after")
    def _validate_dual_llm(self) -> "Settings":
        if self.dual_llm_timeout <= 0:
            raise ValueError("dual_llm_timeout must be > 0 (model calls must be bounded)")
        if not 0.0 <= self.dual_llm_temperature <= 2.0:
            raise ValueError("dual_llm_temperature must be within [0, 2]")
        return self

    def provider_base_url(self, provider: str) -> str | None:
        """Return the configured upstream base URL, or None for unknown providers."""
        if provider not in PROVIDER_DIALECTS:
            return None
        return getattr(self, f"{provider}_base_url").rstrip("/")

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
