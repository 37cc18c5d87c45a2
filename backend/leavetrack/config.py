"""
Application configuration loaded from environment variables.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Database
    database_url: str = "sqlite:///./leavetrack.db"

    # Google OAuth (used only to refresh stored Gmail tokens)
    google_client_id: str = ""
    google_client_secret: str = ""

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    # Session
    session_secret: str = "dev-secret-change-in-production"
    session_expire_hours: int = 24

    # Reply checking
    reply_check_window_days: int = 90
    reply_check_fallback_periods: int = 3
    thread_check_timeout_seconds: float = 60.0
    # Threads fetched at once per user; their database work runs in the threadpool
    thread_check_concurrency: int = 1
    reply_snippet_length: int = 500

    # Gmail API
    gmail_request_timeout_seconds: float = 30.0
    gmail_max_retries: int = 3

    # Keyword hints for suggested decisions
    approval_keywords: str = "approved,approve,yes,ok,confirmed"
    denial_keywords: str = "denied,deny,no,rejected,decline"

    # Debug mode
    debug: bool = False
    log_level: str = "INFO"

    @property
    def approval_keyword_list(self) -> list[str]:
        return [k.strip().lower() for k in self.approval_keywords.split(",") if k.strip()]

    @property
    def denial_keyword_list(self) -> list[str]:
        return [k.strip().lower() for k in self.denial_keywords.split(",") if k.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
