from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


MODEL = "qwen3"

class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    openai_api_key: str | None = Field(default=None)
    openai_api_url: str | None = Field(default=None)
    model_name: str = Field(default=MODEL)
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    searx_search_api_url: str = Field(default="http://localhost:8080")
    searx_num_results: int = Field(default=5)
    repository_url: str = Field(default="https://github.com/woody-willis/artificial-agentics.git")
    agents_temp_dir: str = Field(default="temp")
    git_push: bool = Field(default=False)
    browser_headless: bool = Field(default=True)

    # Shared admission control for every model call in the process.
    token_bucket_capacity: int = Field(default=100_000)
    token_bucket_refill_rate: float = Field(default=100_000 / 60)

    agent_max_iterations: int = Field(default=25)
    context_token_limit: int = Field(default=30_000)
    context_soft_target: int = Field(default=25_000)
    message_chunk_tokens: int = Field(default=5_000)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
