"""
Kimp 仓位引擎配置 (环境变量 / .env)
数据库连接、仓位引擎节奏参数、USDT汇率来源统一在此定义
"""
from pydantic_settings import BaseSettings
from pydantic import validator, Field
from functools import lru_cache
from typing import Literal


class Settings(BaseSettings):
    """所有字段均可由同名环境变量覆盖"""

    # 仓位账本 (PostgreSQL)
    POSTGRES_HOST: str = Field(default="localhost", description="PostgreSQL主机")
    POSTGRES_PORT: int = Field(default=5432, ge=1, le=65535)
    POSTGRES_USER: str = Field(default="kimp", description="PostgreSQL用户名")
    POSTGRES_PASSWORD: str = Field(default="", description="PostgreSQL密码")
    POSTGRES_DB: str = Field(default="kimp", description="PostgreSQL数据库名")

    # 汇率缓存 / 租约 / 执行进度 (Redis)
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0, ge=0, le=15)

    # 下单后确认订单前的固定等待
    ORDER_CONFIRM_DELAY_SECONDS: float = Field(default=0.5, description="下单后查询订单前的等待秒数")

    # 订单确认轮询 (开仓 3次/1秒, 平仓 5次/2秒)
    OPEN_FINALIZE_MAX_ATTEMPTS: int = Field(default=3)
    OPEN_FINALIZE_DELAY_SECONDS: float = Field(default=1.0)
    CLOSE_FINALIZE_MAX_ATTEMPTS: int = Field(default=5)
    CLOSE_FINALIZE_DELAY_SECONDS: float = Field(default=2.0)

    # USDT/KRW 汇率
    CROSS_RATE_CACHE_KEY: str = Field(default="upbit:KRW-USDT")
    CROSS_RATE_MAX_AGE_MS: int = Field(default=10_000, ge=0)
    CROSS_RATE_CACHE_TTL_SECONDS: int = Field(default=10, ge=1)
    CROSS_RATE_REFRESH_SECONDS: float = Field(default=3.0)
    CROSS_RATE_FALLBACK: float = Field(default=1380.0, description="缓存和实时接口都失败时使用的近似汇率")
    CROSS_RATE_TICKER_URL: str = Field(default="https://api.upbit.com/v1/ticker?markets=KRW-USDT")

    # 同一用户同一币种的开平仓互斥租约
    POSITION_LEASE_TTL_SECONDS: int = Field(default=120, ge=1)
    # 平仓已下单但未确认入账期间，同币种禁止开仓
    CLOSE_PENDING_TTL_SECONDS: int = Field(default=86400, ge=1)

    # exchange_configs 中 pgcrypto 加密凭证的对称密钥
    EXCHANGE_KEY_SECRET: str = Field(default="kimp_secret_key")

    # 使用 Bybit 测试网
    BYBIT_TESTNET: bool = Field(default=False)

    # 日志级别
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )

    # HTTP 服务监听
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000, ge=1, le=65535)

    @validator('OPEN_FINALIZE_MAX_ATTEMPTS', 'CLOSE_FINALIZE_MAX_ATTEMPTS')
    def validate_attempts(cls, v):
        """轮询次数至少为1"""
        if v < 1:
            raise ValueError("轮询次数必须至少为1")
        return v

    @validator(
        'ORDER_CONFIRM_DELAY_SECONDS',
        'OPEN_FINALIZE_DELAY_SECONDS',
        'CLOSE_FINALIZE_DELAY_SECONDS',
        'CROSS_RATE_REFRESH_SECONDS',
    )
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("等待时间不能为负数")
        return v

    @validator('CROSS_RATE_FALLBACK')
    def validate_fallback_rate(cls, v):
        """兜底汇率必须为正"""
        if v <= 0:
            raise ValueError("兜底汇率必须大于0")
        return v

    @property
    def postgres_url(self) -> str:
        """asyncpg DSN"""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        """redis.asyncio from_url 使用"""
        password_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{password_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """进程内只构造一次 Settings"""
    return Settings()


# 模块级单例
settings = get_settings()
