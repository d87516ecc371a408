"""Central configuration management."""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = Field(default="sqlite:///./meeting_scheduler.db", env="DATABASE_URL")
    storage_backend: str = Field(default="sql", env="STORAGE_BACKEND")

    # Model backends
    gemini_api_key: Optional[str] = Field(default=None, env="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", env="GEMINI_MODEL")
    mistral_api_key: Optional[str] = Field(default=None, env="MISTRAL_API_KEY")
    mistral_base_url: str = Field(default="https://api.mistral.ai/v1", env="MISTRAL_BASE_URL")
    mistral_model: str = Field(default="mistral-small-latest", env="MISTRAL_MODEL")

    # AI router
    ai_router_default_timeout: int = Field(default=30000, env="AI_ROUTER_DEFAULT_TIMEOUT")
    ai_router_enable_fallback: bool = Field(default=True, env="AI_ROUTER_ENABLE_FALLBACK")
    ai_router_enable_logging: bool = Field(default=True, env="AI_ROUTER_ENABLE_LOGGING")
    ai_router_max_retries: int = Field(default=3, env="AI_ROUTER_MAX_RETRIES")
    ai_router_fallback_max_retries: int = Field(default=2, env="AI_ROUTER_FALLBACK_MAX_RETRIES")
    ai_router_base_delay_ms: int = Field(default=1000, env="AI_ROUTER_BASE_DELAY_MS")
    ai_router_max_delay_ms: int = Field(default=30000, env="AI_ROUTER_MAX_DELAY_MS")
    ai_router_circuit_threshold: int = Field(default=5, env="AI_ROUTER_CIRCUIT_THRESHOLD")
    ai_router_circuit_reset_seconds: int = Field(default=60, env="AI_ROUTER_CIRCUIT_RESET_SECONDS")

    # Conversation context
    context_max_tokens: int = Field(default=4000, env="CONTEXT_MAX_TOKENS")
    context_compression_threshold: float = Field(default=0.7, env="CONTEXT_COMPRESSION_THRESHOLD")
    intent_confidence_threshold: float = Field(default=0.7, env="INTENT_CONFIDENCE_THRESHOLD")

    # In-process caches
    conversation_cache_max_size: int = Field(default=500, env="CONVERSATION_CACHE_MAX_SIZE")
    conversation_cache_ttl_seconds: int = Field(default=3600, env="CONVERSATION_CACHE_TTL_SECONDS")
    attendee_cache_max_size: int = Field(default=1000, env="ATTENDEE_CACHE_MAX_SIZE")
    attendee_cache_ttl_seconds: int = Field(default=300, env="ATTENDEE_CACHE_TTL_SECONDS")

    # Google Calendar
    google_client_secret_file: str = Field(default="client_secret.json", env="GOOGLE_CLIENT_SECRET_FILE")
    google_token_file: str = Field(default="token.json", env="GOOGLE_TOKEN_FILE")
    google_scopes: str = Field(
        default="https://www.googleapis.com/auth/calendar.events,https://www.googleapis.com/auth/calendar.readonly",
        env="GOOGLE_SCOPES"
    )

    # Application
    app_name: str = Field(default="Meeting Scheduler", env="APP_NAME")
    app_env: str = Field(default="development", env="APP_ENV")
    app_debug: bool = Field(default=True, env="APP_DEBUG")
    port: int = Field(default=8000, env="PORT")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    @property
    def google_scopes_list(self) -> List[str]:
        """Parse Google scopes string into a list."""
        return [scope.strip() for scope in self.google_scopes.split(",") if scope.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
