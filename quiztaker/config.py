from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Application
    log_level: str = "INFO"

    # Assessment service (Moodle web services)
    moodle_domain: str = ""
    moodle_token: str = ""
    moodle_user_id: int = 0
    request_timeout: int = 30
    max_retries: int = 3

    # Attempt session
    timer_tick_seconds: float = 1.0
    autosave_interval_seconds: float = 30.0
    time_warning_seconds: int = 300
    expiry_grace_seconds: float = 2.0

    # Host service
    session_ttl_seconds: int = 3600
    host: str = "0.0.0.0"
    port: int = 8000


# Global settings instance
settings = Settings()
