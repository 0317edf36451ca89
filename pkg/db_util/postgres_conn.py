from typing import Dict, AsyncGenerator
from contextlib import asynccontextmanager
import urllib.parse
import asyncio
import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from pkg.db_util.types import PostgresConfig
from pkg.log.logger import get_logger


# One engine/sessionmaker per database URL for the whole process
_engine_cache: Dict[str, AsyncEngine] = {}
_sessionmaker_cache: Dict[str, async_sessionmaker] = {}


class PostgresConnection:
    """Async SQLAlchemy engine + session provider for the chat store."""

    def __init__(self, db_config: PostgresConfig, logger: logging.Logger | None = None):
        self.db_config = db_config
        self.logger = logger or get_logger(__name__)
        self._db_url = self._generate_db_url(db_config)

    @staticmethod
    def _generate_db_url(db_config: PostgresConfig) -> str:
        if not db_config.host:
            raise ValueError("Database host configuration is missing.")

        encoded_password = urllib.parse.quote_plus(db_config.password) if db_config.password else ''
        return (
            f"postgresql+asyncpg://{db_config.username}:{encoded_password}"
            f"@{db_config.host}:{db_config.port}/{db_config.database}"
        )

    def get_db_url(self) -> str:
        return self._db_url

    async def get_engine(self, max_retries: int = 3, initial_delay: float = 2.0) -> AsyncEngine:
        """Get or create the engine, retrying with exponential backoff."""
        if self._db_url in _engine_cache:
            return _engine_cache[self._db_url]

        self.logger.info("Database engine not initialized. Creating new engine...")
        pool_opts = {
            "pool_size": self.db_config.pool_size,
            "max_overflow": self.db_config.max_overflow,
            "pool_timeout": self.db_config.pool_timeout,
            "pool_recycle": self.db_config.pool_recycle,
            "pool_pre_ping": True,
        }

        last_error = None
        for attempt in range(max_retries):
            try:
                engine = create_async_engine(
                    self._db_url,
                    echo=self.db_config.echo,
                    connect_args={
                        "timeout": self.db_config.connect_timeout,
                        "command_timeout": self.db_config.connect_timeout,
                        "server_settings": {"application_name": self.db_config.application_name},
                    },
                    **pool_opts
                )

                self.logger.info(f"Testing database connection (attempt {attempt + 1}/{max_retries})...")
                async with engine.connect() as conn:
                    await conn.exec_driver_sql("SELECT 1")

                _engine_cache[self._db_url] = engine
                _sessionmaker_cache[self._db_url] = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )
                self.logger.info("Async engine and sessionmaker created successfully and cached.")
                return engine

            except (SQLAlchemyError, OSError, ConnectionError) as e:
                last_error = e
                delay = initial_delay * (2 ** attempt)
                if attempt < max_retries - 1:
                    self.logger.warning(
                        f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    self.logger.error(f"Failed to create database engine after {max_retries} attempts: {e}", exc_info=True)

        raise ConnectionError(f"Could not create database engine after {max_retries} attempts: {last_error}") from last_error

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session; commit on success, roll back on error, always close."""
        await self.get_engine()

        sessionmaker = _sessionmaker_cache.get(self._db_url)
        if sessionmaker is None:
            self.logger.error("Sessionmaker is not available even after engine initialization attempt.")
            raise ConnectionError("Database engine/sessionmaker not initialized.")

        session: AsyncSession = sessionmaker()
        session_id = id(session)
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception as e:
            self.logger.error(f"Error in session {session_id}: {e}. Rolling back.", exc_info=True)
            if session.in_transaction():
                await session.rollback()
            raise
        finally:
            await session.close()

    async def close_engine(self):
        """Dispose the engine and drop it from the cache."""
        engine = _engine_cache.pop(self._db_url, None)
        _sessionmaker_cache.pop(self._db_url, None)
        if engine is None:
            self.logger.info("Database engine was not initialized, no need to close.")
            return
        self.logger.info("Closing database engine and connection pool...")
        await engine.dispose()
        self.logger.info("Database engine closed and removed from cache.")
