"""
PostgreSQL / Redis 连接管理
仓位账本、统计服务走 asyncpg 连接池；汇率缓存、互斥租约、执行进度走 Redis
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

import asyncpg
import redis.asyncio as redis

from ..config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECT_ATTEMPTS = 5
_BACKOFF_START = 1.0
_BACKOFF_CAP = 5.0


async def _connect_with_backoff(name: str, connect: Callable[[], Awaitable[T]]) -> T:
    """启动时数据库可能还没就绪，按指数退避重试"""
    delay = _BACKOFF_START
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            return await connect()
        except Exception as e:
            if attempt == _CONNECT_ATTEMPTS:
                logger.error(f"❌ {name} 连接失败，放弃重试: {e}")
                raise
            logger.warning(f"{name} 连接失败 ({attempt}/{_CONNECT_ATTEMPTS})，{delay:.1f}s 后重试: {e}")
            await asyncio.sleep(delay)
            delay = min(delay * 2, _BACKOFF_CAP)


class DatabaseManager:
    """进程内唯一的连接持有者"""

    _instance: Optional['DatabaseManager'] = None

    def __init__(self):
        self._pg_pool: Optional[asyncpg.Pool] = None
        self._redis_client: Optional[redis.Redis] = None

    @classmethod
    def get_instance(cls) -> 'DatabaseManager':
        if cls._instance is None:
            cls._instance = DatabaseManager()
        return cls._instance

    async def initialize(self):
        if not settings.POSTGRES_PASSWORD:
            logger.warning("POSTGRES_PASSWORD 为空，仅适合本地开发")

        self._pg_pool = await _connect_with_backoff("PostgreSQL", self._open_pg_pool)
        logger.info(f"✅ PostgreSQL 已连接 {settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}")

        self._redis_client = await _connect_with_backoff("Redis", self._open_redis)
        logger.info(f"✅ Redis 已连接 {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")

    async def _open_pg_pool(self) -> asyncpg.Pool:
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_url,
            min_size=1,
            max_size=10,
            command_timeout=30,
            init=self._prepare_connection,
        )
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return pool

    async def _open_redis(self) -> redis.Redis:
        client = self._new_redis_client()
        await client.ping()
        return client

    @staticmethod
    def _new_redis_client() -> redis.Redis:
        # decode_responses: 汇率缓存 / 进度 hash 全部按字符串读取
        return redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )

    @staticmethod
    async def _prepare_connection(conn):
        # 入账时间统一按 UTC 存储，日收益按 Asia/Seoul 在 SQL 中换算
        await conn.execute("SET TIME ZONE 'UTC'")

    async def close(self):
        if self._pg_pool is not None:
            await self._pg_pool.close()
            self._pg_pool = None
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
        logger.info("数据库连接已释放")

    @property
    def pg_pool(self) -> asyncpg.Pool:
        if self._pg_pool is None:
            raise RuntimeError("PostgreSQL 尚未初始化")
        return self._pg_pool

    @property
    def redis(self) -> redis.Redis:
        if self._redis_client is None:
            raise RuntimeError("Redis 尚未初始化")
        return self._redis_client

    @asynccontextmanager
    async def pg_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        async with self.pg_pool.acquire() as conn:
            yield conn


async def get_db() -> DatabaseManager:
    db = DatabaseManager.get_instance()
    if db._pg_pool is None:
        await db.initialize()
    return db


async def get_pg_pool() -> asyncpg.Pool:
    return (await get_db()).pg_pool


async def get_redis() -> redis.Redis:
    """只需要 Redis 的调用方 (汇率、租约) 不强制初始化 PostgreSQL"""
    db = DatabaseManager.get_instance()
    if db._redis_client is None:
        db._redis_client = await db._open_redis()
    return db._redis_client
