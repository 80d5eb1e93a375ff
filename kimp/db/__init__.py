# 数据库模块
from .connection import (
    DatabaseManager,
    get_db,
    get_pg_pool,
    get_redis
)
from .schema import ensure_schema

__all__ = [
    'DatabaseManager',
    'get_db',
    'get_pg_pool',
    'get_redis',
    'ensure_schema',
]
