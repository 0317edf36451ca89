from typing import Optional, Any, Dict, List
import logging

import redis.asyncio as aioredis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError


class RedisClient:
    """
    Async Redis client with a shared connection pool.

    Only the operations the chat core needs are wrapped here; everything else
    is reachable through ``client``.
    """

    def __init__(
        self,
        logger: logging.Logger,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        ssl: bool = False,
    ):
        self.logger = logger
        self.host = host
        self.port = port
        self.password = password
        self.ssl = ssl

        self._redis: Optional[aioredis.Redis] = None
        self._pool: Optional[aioredis.ConnectionPool] = None

    @property
    def client(self) -> aioredis.Redis:
        """Get (lazily creating) the async Redis client"""
        if self._redis is None:
            pool_kwargs: Dict[str, Any] = {
                "host": self.host,
                "port": self.port,
                "password": self.password,
                "decode_responses": True,
                "max_connections": 20,
                "socket_timeout": 5.0,
                "socket_connect_timeout": 5.0,
                "retry_on_timeout": True,
            }
            if self.ssl:
                pool_kwargs["connection_class"] = aioredis.SSLConnection
            self._pool = aioredis.ConnectionPool(**pool_kwargs)
            self._redis = aioredis.Redis(connection_pool=self._pool)
        return self._redis

    async def ping(self) -> bool:
        try:
            result = await self.client.ping()
            self.logger.info(f"Successfully connected to Redis at {self.host}:{self.port}")
            return bool(result)
        except RedisError as e:
            self.logger.error(f"Failed to connect to Redis: {str(e)}")
            raise

    async def close(self) -> None:
        """Close the async connection pool"""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            self.logger.info("Redis connection pool closed")

    def pipeline(self, transaction: bool = True) -> Pipeline:
        """Create a pipeline; queued commands run on ``await pipe.execute()``."""
        return self.client.pipeline(transaction=transaction)

    async def sorted_set_remove(self, key: str, *members: Any) -> int:
        try:
            return await self.client.zrem(key, *members)
        except RedisError as e:
            self.logger.error(f"Error removing members from {key}: {str(e)}")
            raise

    async def execute_pipeline(self, pipe: Pipeline) -> List[Any]:
        try:
            return await pipe.execute()
        except RedisError as e:
            self.logger.error(f"Error executing pipeline: {str(e)}")
            raise
