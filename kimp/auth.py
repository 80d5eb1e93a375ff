"""
会话鉴权 - Bearer token 对应 Redis 中的 session 记录，值为用户ID
登录 / 注册由主站负责，这里只读
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException

from .db import get_pg_pool, get_redis
from .db.redis_schema import SESSION_KEY_PREFIX

_BEARER = "Bearer "


@dataclass(frozen=True)
class CurrentUser:
    id: UUID
    username: str
    email: Optional[str]


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"success": False, "message": reason})


async def get_current_user_from_token(token: str) -> CurrentUser:
    if not token:
        raise _unauthorized("未登录")

    r = await get_redis()
    stored = await r.get(f"{SESSION_KEY_PREFIX}:{token}")
    if not stored:
        raise _unauthorized("会话已过期，请重新登录")
    try:
        user_id = UUID(stored)
    except ValueError:
        raise _unauthorized("会话数据无效")

    pool = await get_pg_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT id, username, email FROM users WHERE id = $1 AND is_active = true",
            user_id,
        )
    if row is None:
        raise _unauthorized("用户不存在或已停用")
    return CurrentUser(id=row["id"], username=row["username"], email=row["email"])


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    if not authorization or not authorization.startswith(_BEARER):
        raise _unauthorized("未登录")
    return await get_current_user_from_token(authorization[len(_BEARER):].strip())
