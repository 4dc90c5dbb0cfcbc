from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./genrelay.db"

    # JWT (tokens are issued by the auth service; we only verify them)
    secret_key: str = "your-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    # Redis counter store for rate limits and quotas (empty = in-process memory store)
    redis_url: str = ""  # e.g. redis://localhost:6379/0
    # What the rate limiter does when the counter store errors: False = deny (fail closed)
    rate_limit_fail_open: bool = False

    # Default per-minute rate limits; plans may override them
    rate_chat_per_minute: int = 200
    rate_search_per_minute: int = 60
    rate_limit_window_seconds: int = 60

    # Admission holds expire after this long if a request never settles
    budget_hold_ttl_seconds: int = 600
    # Output tokens assumed when estimating the cost of a chat before it runs
    estimated_output_tokens: int = 500

    # Relay
    stream_idle_timeout_seconds: float = 60.0

    # Web search (SearXNG JSON API; empty = search disabled, returns no results)
    searxng_url: str = ""
    search_max_results: int = 5
    search_timeout_seconds: float = 8.0
    search_language: str = "en-US"

    # OpenAI-compatible chat completions provider
    openai_base_url: str = "https://openrouter.ai/api/v1"
    openai_api_key: str = ""
    provider_timeout_seconds: float = 120.0
    max_output_tokens: int = 4096

    # Vertex AI (Gemini) provider
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    vertex_credentials_path: str = ""  # path to service account JSON; empty = use ADC

    # Model used for chat titles (catalog key)
    title_model: str = "seed-1-6-flash"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
