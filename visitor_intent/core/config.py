import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "Visitor Intent"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str = "sqlite+aiosqlite:///./visitor_intent.db"
    BACKEND_CORS_ORIGINS: list[str] = ["*"]
    ENVIRONMENT: str = "development"
    DB_AUTO_INIT_ON_STARTUP: bool | None = None

    # Session lifecycle
    SESSION_TOKEN_LENGTH: int = 64
    SESSION_RESUME_MINUTES: int = 30
    SESSION_IDLE_MINUTES: int = 30
    ACTIVE_SESSION_MINUTES: int = 30
    LIVE_SESSION_MINUTES: int = 5

    # Intent level bands: [0, warm) cold, [warm, hot) warm, [hot, 100] hot,
    # qualified from the qualified threshold up, gated on form completion.
    INTENT_WARM_THRESHOLD: float = 20.0
    INTENT_HOT_THRESHOLD: float = 50.0
    INTENT_QUALIFIED_THRESHOLD: float = 80.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_settings(self):
        if self.SESSION_TOKEN_LENGTH < 64:
            raise ValueError("SESSION_TOKEN_LENGTH must be at least 64")

        thresholds = (
            self.INTENT_WARM_THRESHOLD,
            self.INTENT_HOT_THRESHOLD,
            self.INTENT_QUALIFIED_THRESHOLD,
        )
        if not (0 < thresholds[0] < thresholds[1] < thresholds[2] <= 100):
            raise ValueError(
                "Intent thresholds must satisfy 0 < warm < hot < qualified <= 100, "
                f"got warm={thresholds[0]} hot={thresholds[1]} qualified={thresholds[2]}"
            )

        if self.ENVIRONMENT == "production":
            if "sqlite" in self.DATABASE_URL:
                raise ValueError(
                    "Production environment detected but DATABASE_URL points at SQLite. "
                    "Set DATABASE_URL to a PostgreSQL connection string."
                )

            # asyncpg needs the explicit driver in the scheme
            if self.DATABASE_URL.startswith("postgres://"):
                logger.info("Rewriting postgres:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
            elif self.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in self.DATABASE_URL:
                logger.info("Rewriting postgresql:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

        if self.DB_AUTO_INIT_ON_STARTUP is None:
            self.DB_AUTO_INIT_ON_STARTUP = self.ENVIRONMENT != "production"

        return self


settings = Settings()
