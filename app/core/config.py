import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for environment variables."""

    APP_NAME: str = "Lex Connect Chat"
    ENV: str = os.getenv("ENV", "development")

    # Server config
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", 8080))
    CLIENT_URL: str = os.getenv("CLIENT_URL", "http://localhost:5173")

    # Debug
    DEBUG: bool = os.getenv("DEBUG", "True").lower() in ("1", "true")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Auth (tokens are issued by the auth service, we only verify them)
    JWT_SUPER_SECRET: str = os.getenv("JWT_SUPER_SECRET", "dev-secret")
    JWT_REFRESH_SECRET: str = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret")

    # Postgres
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "")

    # Redis
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD: str | None = os.getenv("REDIS_PASSWORD") or None
    REDIS_SSL: bool = os.getenv("REDIS_SSL", "false").lower() == "true"

    # Chat
    RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory")  # Options: "memory", "redis"
    MESSAGE_RATE_LIMIT: int = int(os.getenv("MESSAGE_RATE_LIMIT", "30"))
    MESSAGE_RATE_WINDOW_SECONDS: float = float(os.getenv("MESSAGE_RATE_WINDOW_SECONDS", "60"))
    MAX_MESSAGE_LENGTH: int = int(os.getenv("MAX_MESSAGE_LENGTH", "1000"))
    HISTORY_PAGE_SIZE: int = int(os.getenv("HISTORY_PAGE_SIZE", "50"))

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")


settings = Settings()
