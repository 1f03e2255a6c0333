from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    redis_socket_timeout: float = 5.0

    session_ttl_days: int = 30
    autosave_debounce_seconds: float = 1.0

    anthropic_api_key: str = ""
    claude_model: str = "claude-3-5-haiku-20241022"
    claude_max_tokens: int = 8192
    max_upload_bytes: int = 25 * 1024 * 1024

    exchange_api_url: str = "https://api.frankfurter.app"
    exchange_cache_seconds: int = 3600
    exchange_fallback_rate: float = 7.2

    allowed_origins: str = "http://localhost:3000,http://localhost:5173"
    log_level: str = "INFO"

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse comma-separated origins into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_days * 24 * 60 * 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
