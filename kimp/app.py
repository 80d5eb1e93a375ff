"""
Kimp 仓位引擎 HTTP 服务入口
"""
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import __version__
from .api import position_router
from .config import settings
from .db import DatabaseManager, ensure_schema
from .services import ServiceContainer

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(LOG_DIR / 'kimp.log', encoding='utf-8'),
    ],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = DatabaseManager.get_instance()
    await db.initialize()
    async with db.pg_connection() as conn:
        await ensure_schema(conn)

    ServiceContainer.initialize()
    cross_rate = ServiceContainer.get_cross_rate_service()
    try:
        await cross_rate.start()
    except Exception as e:
        # 没有后台刷新时，引擎按需实时拉取汇率
        logger.warning(f"USDT/KRW 汇率刷新任务未启动: {e}")

    logger.info(f"🚀 Kimp 仓位引擎 v{__version__} 已启动 (Bybit testnet={settings.BYBIT_TESTNET})")
    try:
        yield
    finally:
        await cross_rate.stop()
        await db.close()
        ServiceContainer.reset()
        logger.info("👋 Kimp 仓位引擎已停止")


app = FastAPI(
    title="Kimp Arbitrage Position Engine",
    description="韩国溢价 (泡菜溢价) 跨所套利仓位引擎 REST API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"未处理异常 {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "服务器内部错误", "path": request.url.path},
    )


app.include_router(position_router)


@app.get("/", tags=["Health Check"])
async def root():
    return {"service": "kimp-arbitrage", "version": __version__, "docs": "/api/docs"}


@app.get("/health", tags=["Health Check"])
async def health_check():
    """PostgreSQL / Redis 连通性，以及当前 USDT/KRW 汇率缓存"""
    db = DatabaseManager.get_instance()
    checks = {}

    try:
        async with db.pg_connection() as conn:
            await conn.fetchval("SELECT 1")
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    try:
        await db.redis.ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    cached = None
    try:
        cached = await ServiceContainer.get_cross_rate_service().get_cached_rate()
    except Exception as e:
        logger.debug(f"汇率缓存读取失败: {e}")
    checks["cross_rate"] = {"price": cached[0], "timestamp": cached[1]} if cached else None

    healthy = checks["postgres"] == "ok" and checks["redis"] == "ok"
    return jsonable_encoder({"status": "healthy" if healthy else "degraded", "version": __version__, "checks": checks})


def main():
    import uvicorn

    uvicorn.run("kimp.app:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
