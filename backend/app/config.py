"""
Application configuration loaded from environment variables.

Uses Pydantic Settings to:
1. Read from .env file automatically
2. Validate values at startup
3. Provide type-safe access throughout the app

Usage:
    from app.config import settings
    print(settings.UPLOAD_URL)

Note: We use a custom Settings source that prefers .env values over
empty shell environment variables, so a blank UPLOAD_URL exported in
the shell doesn't shadow the real value in the .env file.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All application configuration in one place."""

    model_config = SettingsConfigDict(
        env_file=".env",        # Load from .env file
        env_file_encoding="utf-8",
        case_sensitive=True,     # ENV_VAR must match exactly
    )

    @model_validator(mode="before")
    @classmethod
    def prefer_dotenv_over_empty_env(cls, data):
        """If an env var is empty but .env has a value, use the .env value.

        Pydantic Settings prioritizes real env vars over .env file values,
        so an exported-but-empty variable would otherwise win.
        """
        from dotenv import dotenv_values

        dotenv_vals = dotenv_values(".env")
        for key, dotenv_value in dotenv_vals.items():
            if dotenv_value and (key not in data or not data.get(key)):
                data[key] = dotenv_value
        return data

    # --- Database ---
    # SQLite (aiosqlite) for local development; asyncpg URL in production.
    DATABASE_URL: str = "sqlite+aiosqlite:///./formfighter.db"

    # --- Processing server ---
    UPLOAD_URL: str = "https://www.form-fighter.com/api/upload"
    UPLOAD_TIMEOUT_SECONDS: float = 300.0
    UPLOAD_MIME_TYPE: str = "video/quicktime"
    # Shared secret the processing server sends with status callbacks.
    # Empty disables the callback endpoint.
    PIPELINE_TOKEN: str = ""

    # --- Capture storage ---
    STORAGE_PATH: str = "uploads"

    # --- Presentation ---
    FEEDBACK_PAGE_SIZE: int = 5

    # --- Application ---
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


# Singleton instance: import this everywhere
settings = Settings()
