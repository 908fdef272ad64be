from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # --- Basic configuration ---
    APP_NAME: str = "datacore"
    APP_ENV: str = "development"  # development, production, testing
    DEBUG: bool = True

    # --- Logging ---
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False

    # --- Change tracking ---
    DEFAULT_CASCADE_POLICY: str = "restrict"  # restrict, cascade
    AUTO_DETECT_CHANGES: bool = True  # Diff snapshots before commit

    # --- Store boundary ---
    STORE_TIMEOUT_SECONDS: Optional[float] = None  # None disables the timeout

    # --- Pydantic ---
    # Load env from project root .env; priority: env vars > .env > defaults
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )


# Singleton settings instance
settings = Settings()
