"""
FastAPI应用主入口 - 统一支付处理器接入（Stripe / PayPal / Square）
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.database import create_tables, engine


configure_logging()
logger = get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：开发环境自动建表，退出时释放连接池"""
    logger.info("application_startup", environment=settings.ENVIRONMENT, debug=settings.DEBUG)
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", tables=["settings", "payment_customer_links"])
    yield
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="统一支付处理器接入：结账、退款、客户映射、已存支付方式与 webhook",
)

# 中间件按添加顺序逆序执行：CORS -> RequestID -> Logging
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix=API_PREFIX)


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "payments": f"{API_PREFIX}{payments_routes.router.prefix}",
            "docs": "/docs",
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查：确认配置库可连接（凭证每次调用都从这里读取）"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_check_database_unavailable", error=str(exc))
        return success_response(data={"status": "degraded", "database": "unavailable"}, message="degraded")
    return success_response(data={"status": "healthy", "database": "ok"}, message="ok")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
