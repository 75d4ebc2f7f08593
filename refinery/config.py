"""Configuration management using Pydantic Settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Reasoning oracle
    # LiteLLM picks the provider from the model name prefix:
    #   - OpenAI: gpt-4o, gpt-4o-mini (OPENAI_API_KEY)
    #   - Anthropic: claude-3-5-sonnet-20241022 (ANTHROPIC_API_KEY)
    #   - Ollama: ollama/llama3 (see ollama_base_url)
    litellm_model: str = "gpt-4o-mini"
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    llm_timeout_seconds: float = Field(default=60.0, gt=0.0)
    # Transport retries belong to the orchestrator; the adapter makes one call by default.
    llm_max_attempts: int = Field(default=1, ge=1)
    ollama_base_url: str = "http://127.0.0.1:11434"
    llm_provider_path: str = "refinery.adapters.llm.litellm_adapter:LiteLLMAdapter"

    # Pipeline
    retry_bound: int = Field(default=2, ge=0, description="Additional attempts after the first")
    judge_reject_floor: int = Field(default=2, ge=1, le=5)
    max_item_text_length: int = Field(default=500, gt=0)
    max_reasoning_length: int = Field(default=240, gt=0)
    max_detailed_iterations: int = Field(default=5, ge=1)

    # Observability
    log_level: str = "INFO"
    log_json: bool = False
    enable_tracing: bool = False


settings = Settings()
