# admdiv/storage/__init__.py
# 存储层模块
#
# - base.py: 存储后端接口（BaseStore）、代码区间、表状态
# - postgres.py: PostgreSQL 实现（SQLAlchemy + asyncpg + pg_dump）

from admdiv.storage.base import BaseStore, CodeRange, TableStatus
from admdiv.storage.postgres import PostgresStore

__all__ = [
    "BaseStore",
    "CodeRange",
    "TableStatus",
    "PostgresStore",
]
