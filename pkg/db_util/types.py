from dataclasses import dataclass


@dataclass
class PostgresConfig:
    host: str
    port: int
    username: str
    password: str
    database: str = "postgres"  # Default database
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 10  # seconds
    pool_recycle: int = 86400
    connect_timeout: int = 15  # seconds, also used as asyncpg command_timeout
    application_name: str = "lex-connect-chat"
    echo: bool = False

    @classmethod
    def from_settings(cls, settings, **overrides) -> "PostgresConfig":
        """Build from the app Settings (POSTGRES_* fields)."""
        values = dict(
            host=settings.POSTGRES_HOST.strip(),
            port=settings.POSTGRES_PORT,
            username=settings.POSTGRES_USER.strip(),
            password=settings.POSTGRES_PASSWORD.strip(),
            database=settings.POSTGRES_DB.strip() or "postgres",
            application_name=settings.APP_NAME.lower().replace(" ", "-"),
        )
        values.update(overrides)
        return cls(**values)
