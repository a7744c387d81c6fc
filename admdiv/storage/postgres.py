# admdiv/storage/postgres.py
# PostgreSQL 存储后端
#
# 功能说明：
# 1. 表结构操作走 SQLAlchemy 异步引擎（create/drop/index/inspect）
# 2. 批量读写走 asyncpg 连接池的 COPY（bulk_dump / bulk_load）
# 3. 快照备份/恢复调用 pg_dump / pg_restore 子进程
# 4. 把驱动异常转换为 admdiv.core.exceptions 中的业务异常
#
# 使用方法：
#   from admdiv.storage.postgres import PostgresStore
#
#   async with PostgresStore(settings.DATABASE_URL, parallelism=16) as store:
#       await store.bulk_dump("adcode", Path("data/dump/110101.csv"), CodeRange(...))

import asyncio
import os
import socket
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional, Sequence

import asyncpg
from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncEngine

from admdiv.core.config import settings
from admdiv.core.database import create_engine, libpq_dsn, libpq_env
from admdiv.core.exceptions import ConstraintViolation, StoreCommandError, StoreUnavailable
from admdiv.core.logging import get_logger
from admdiv.models.division import COLUMNS, ORDER_BY, division_indexes, division_table
from admdiv.storage.base import BaseStore, CodeRange, TableStatus

logger = get_logger(__name__)

_PREPARER = postgresql.dialect().identifier_preparer

# 连接类异常：连接不上（认证失败、库不存在、主机无法解析）或中途断开
_CONNECTION_ERRORS = (
    ConnectionError,
    asyncio.TimeoutError,
    socket.gaierror,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InvalidAuthorizationSpecificationError,
    asyncpg.exceptions.InvalidCatalogNameError,
)


def _caused_by_connection(error: BaseException) -> bool:
    """SQLAlchemy 包装后的异常是否源于连接失败（沿 orig / __cause__ 查找）"""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, _CONNECTION_ERRORS):
            return True
        seen.add(id(error))
        error = getattr(error, "orig", None) or error.__cause__
    return False


def quote(identifier: str) -> str:
    """按 PostgreSQL 规则给标识符加引号（仅在需要时）"""
    return _PREPARER.quote(identifier)


def rowcount(status: str) -> int:
    """
    从命令状态中解析行数

    "COPY 42" -> 42，"INSERT 0 42" -> 42，"SELECT 42" -> 42
    """
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else 0


class PostgresStore(BaseStore):
    """
    PostgreSQL 存储后端

    连接池上限等于导出并发数，每个分区导出占用一条连接。
    """

    name = "postgres"

    def __init__(
        self,
        url: Optional[str] = None,
        parallelism: Optional[int] = None,
        pg_dump_bin: Optional[str] = None,
        pg_restore_bin: Optional[str] = None,
    ):
        self.url = url or settings.DATABASE_URL
        self.parallelism = parallelism or settings.EXPORT_PARALLELISM
        self.pg_dump_bin = pg_dump_bin or settings.PG_DUMP_BIN
        self.pg_restore_bin = pg_restore_bin or settings.PG_RESTORE_BIN

        self._engine: Optional[AsyncEngine] = None
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    # ==================== 连接管理 ====================

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_engine(self.url)
        return self._engine

    async def _get_pool(self) -> asyncpg.Pool:
        """获取 asyncpg 连接池（首次调用时创建）"""
        async with self._pool_lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        libpq_dsn(self.url),
                        min_size=1,
                        max_size=self.parallelism,
                    )
                except (OSError, asyncio.TimeoutError, asyncpg.exceptions.PostgresError) as e:
                    raise StoreUnavailable(f"无法连接数据库: {e}") from e
                logger.debug(f"[PostgresStore] 连接池已创建, max_size={self.parallelism}")
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @asynccontextmanager
    async def _translated(self, action: str):
        """把驱动异常转换为业务异常"""
        try:
            yield
        except (asyncpg.exceptions.IntegrityConstraintViolationError, sa_exc.IntegrityError) as e:
            raise ConstraintViolation(f"{action} 违反约束: {e}") from e
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailable(f"{action} 数据库连接失败: {e}") from e
        except sa_exc.DBAPIError as e:
            if e.connection_invalidated or _caused_by_connection(e.orig):
                raise StoreUnavailable(f"{action} 数据库连接中断: {e}") from e
            raise

    # ==================== 语句执行 ====================

    async def execute(self, statement: str) -> str:
        async with self._translated("execute"):
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                return await conn.execute(statement)

    # ==================== 表结构 ====================

    async def create_table(self, table: str) -> None:
        target = division_table(table)
        async with self._translated(f"create {table}"):
            async with self.engine.begin() as conn:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
                await conn.run_sync(target.create, checkfirst=True)
        logger.info(f"[PostgresStore] 表已创建: {table}")

    async def drop_table(self, table: str) -> None:
        async with self._translated(f"drop {table}"):
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {quote(table)}")
        logger.info(f"[PostgresStore] 表已删除: {table}")

    async def truncate(self, table: str) -> None:
        async with self._translated(f"truncate {table}"):
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(f"TRUNCATE TABLE {quote(table)}")
        logger.info(f"[PostgresStore] 表已清空: {table}")

    async def create_indexes(self, table: str) -> None:
        target = division_table(table)
        async with self._translated(f"index {table}"):
            async with self.engine.begin() as conn:
                for index in division_indexes(target):
                    await conn.run_sync(index.create, checkfirst=True)
                    logger.info(f"[PostgresStore] 索引已创建: {index.name}")
                await conn.exec_driver_sql(f"ANALYZE {quote(table)}")

    async def inspect(self, table: str) -> TableStatus:
        expected = {index.name for index in division_indexes(division_table(table))}

        def _index_names(sync_conn) -> Optional[set]:
            inspector = sa_inspect(sync_conn)
            if not inspector.has_table(table):
                return None
            return {index["name"] for index in inspector.get_indexes(table)}

        async with self._translated(f"inspect {table}"):
            async with self.engine.connect() as conn:
                names = await conn.run_sync(_index_names)
                if names is None:
                    return TableStatus(exists=False)
                rows = await conn.scalar(text(f"SELECT count(*) FROM {quote(table)}"))

        return TableStatus(exists=True, rows=rows or 0, indexed=expected <= names)

    # ==================== 批量读写 ====================

    async def fetch_codes(self, table: str, divisible_by: Optional[int] = None) -> List[int]:
        query = f"SELECT code FROM {quote(table)}"
        args = []
        if divisible_by:
            query += " WHERE code % $1 = 0"
            args.append(divisible_by)
        query += " ORDER BY code"

        async with self._translated(f"fetch codes {table}"):
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                records = await conn.fetch(query, *args)
        return [record["code"] for record in records]

    async def bulk_dump(
        self,
        table: str,
        path: Path,
        code_range: Optional[CodeRange] = None,
        order_by: Sequence[str] = ORDER_BY,
    ) -> int:
        columns = ", ".join(quote(column) for column in COLUMNS)
        query = f"SELECT {columns} FROM {quote(table)}"
        args = []
        if code_range is not None:
            query += " WHERE code >= $1 AND code < $2"
            args.extend([code_range.low, code_range.high])
        if order_by:
            query += " ORDER BY " + ", ".join(quote(column) for column in order_by)

        async with self._translated(f"dump {table}"):
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                status = await conn.copy_from_query(
                    query, *args, output=str(path), format="csv"
                )
        return rowcount(status)

    async def bulk_load(self, table: str, path: Path) -> int:
        async with self._translated(f"load {table}"):
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                status = await conn.copy_to_table(
                    table, source=str(path), columns=list(COLUMNS), format="csv"
                )
        return rowcount(status)

    async def copy_rows(
        self,
        source: str,
        target: str,
        order_by: Sequence[str] = ORDER_BY,
        create: bool = False,
    ) -> int:
        order = ", ".join(quote(column) for column in order_by)
        if create:
            # 中转表不需要 WAL
            statement = f"CREATE UNLOGGED TABLE {quote(target)} AS SELECT * FROM {quote(source)} ORDER BY {order}"
        else:
            statement = f"INSERT INTO {quote(target)} SELECT * FROM {quote(source)} ORDER BY {order}"
        return rowcount(await self.execute(statement))

    # ==================== 快照 ====================

    async def dump(self, path: Path, table: str) -> None:
        await self._run_client(
            self.pg_dump_bin,
            "--format=custom",
            f"--table={table}",
            f"--file={path}",
        )

    async def restore(self, path: Path, table: str) -> None:
        """
        从快照恢复

        快照由 dump() 以 --table 生成，只含这一张表及其主键、外键、索引。
        恢复时不能再加 --table：pg_restore -t 只恢复表本身，不恢复约束和索引。
        """
        logger.info(f"[PostgresStore] 恢复 {table} <- {path}")
        await self._run_client(
            self.pg_restore_bin,
            "--clean",
            "--if-exists",
            "--no-owner",
            f"--dbname={libpq_env(self.url).get('PGDATABASE', '')}",
            str(path),
        )

    async def _run_client(self, program: str, *args: str) -> None:
        """
        运行 PostgreSQL 客户端程序

        连接参数通过 PG* 环境变量传递；非零退出码转换为 StoreCommandError，
        exit_code 与客户端返回码一致。
        """
        env = {**os.environ, **libpq_env(self.url)}
        logger.info(f"[PostgresStore] 执行: {program} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise StoreCommandError(program, 127, f"找不到命令 {program}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            raise StoreCommandError(program, process.returncode, stderr.decode(errors="replace"))
