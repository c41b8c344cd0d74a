from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/workdesk"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True
    SQL_ECHO: bool = False

    # Notification dispatcher
    NOTIFY_DISPATCHER_ENABLED: bool = True
    NOTIFY_POLL_INTERVAL_SECONDS: int = 3
    NOTIFY_RULES_INTERVAL_MINUTES: int = 5

    # Derivation rule windows
    MEETING_LOOKAHEAD_MINUTES: int = 60
    MEETING_SUPPRESSION_MINUTES: int = 60
    TASK_SUPPRESSION_DAYS: int = 1

    # Push delivery (Firebase Cloud Messaging)
    FIREBASE_CREDENTIALS_PATH: str | None = None
    PUSH_TOKEN_MIN_LENGTH: int = 51
    PUSH_MAX_PAYLOAD_BYTES: int = 4000
    PUSH_DEFAULT_CHANNEL_ID: str = "default"
    PUSH_INSTANT_CHANNEL_ID: str = "alarm_channel"
    PUSH_INSTANT_SOUND: str = "alarm_sound"

    # Realtime websocket transport
    REALTIME_ENABLED: bool = True

    @field_validator(
        'NOTIFY_POLL_INTERVAL_SECONDS',
        'NOTIFY_RULES_INTERVAL_MINUTES',
        'MEETING_LOOKAHEAD_MINUTES',
        'MEETING_SUPPRESSION_MINUTES',
        'TASK_SUPPRESSION_DAYS',
    )
    @classmethod
    def require_positive_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("interval settings must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        """SQL echo is only allowed outside production."""
        return self.SQL_ECHO and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
