"""
数据库连接管理

只承载两张表：settings（处理器开关与网关凭证）和 payment_customer_links。
凭证每次调用都从 settings 表读取，因此这里不做任何缓存。
"""
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动（asyncpg / aiosqlite）"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 postgresql 或 sqlite")
    return str(url.set(drivername=_ASYNC_DRIVERS[url.drivername]))


def _engine_options(database_url: str) -> dict:
    # 内存 sqlite 每个连接都是一个新库，必须共享同一连接
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


_url = _build_async_url(settings.database.url)
engine = create_async_engine(_url, echo=settings.database.echo, **_engine_options(_url))

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（不自动提交，由仓储控制事务）"""
    async with AsyncSessionLocal() as session:
        yield session


async def create_tables():
    """创建 settings 与 payment_customer_links 表（仅开发环境在启动时调用）"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
