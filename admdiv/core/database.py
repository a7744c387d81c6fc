# admdiv/core/database.py
# 数据库连接模块
#
# 功能说明：
# 1. 创建 SQLAlchemy 异步引擎（asyncpg 驱动）
# 2. 提供 ORM 模型基类 Base
# 3. 提供 asyncpg 原生连接串（COPY 和 pg_dump 需要）
#
# 使用方法：
#   from admdiv.core.database import Base, create_engine
#   engine = create_engine()

from typing import Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from admdiv.core.config import settings


class Base(DeclarativeBase):
    """ORM 模型基类"""


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """
    创建异步数据库引擎

    Args:
        url: 连接串，默认使用 settings.DATABASE_URL

    Returns:
        AsyncEngine: 异步引擎
    """
    return create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
    )


def libpq_dsn(url: Optional[str] = None) -> str:
    """
    把 SQLAlchemy 连接串转换为 libpq 格式

    postgresql+asyncpg://u:p@host/db -> postgresql://u:p@host/db
    asyncpg.connect() / asyncpg.create_pool() 使用这种格式
    """
    parsed = make_url(url or settings.DATABASE_URL)
    return parsed.set(drivername="postgresql").render_as_string(hide_password=False)


def libpq_env(url: Optional[str] = None) -> Dict[str, str]:
    """
    把连接串转换为 libpq 环境变量（PGHOST、PGPASSWORD 等）

    pg_dump/pg_restore 通过环境变量接收连接参数，密码不会出现在进程参数里
    """
    parsed = make_url(url or settings.DATABASE_URL)
    env = {
        "PGHOST": parsed.host,
        "PGPORT": str(parsed.port) if parsed.port else None,
        "PGUSER": parsed.username,
        "PGPASSWORD": parsed.password,
        "PGDATABASE": parsed.database,
    }
    return {key: value for key, value in env.items() if value}
