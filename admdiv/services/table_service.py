# admdiv/services/table_service.py
# 行政区划表生命周期服务
#
# 功能说明：
# 1. 根据表状态推导数据集状态（EMPTY / SCHEMA_ONLY / LOADED / INDEXED）
# 2. 在执行每个操作前校验状态是否允许
# 3. 组合操作：reload（清空+导入+重排）、reset（删除+建表）、setup（建表+导入+重排+索引）
#
# 状态机：
#   create   -> SCHEMA_ONLY
#   load     -> LOADED     （需要 SCHEMA_ONLY / LOADED / INDEXED，INDEXED 上导入不会自动重建索引）
#   index    -> INDEXED    （需要 LOADED / INDEXED）
#   order、dump、backup    （需要 LOADED / INDEXED）
#   truncate -> SCHEMA_ONLY
#   drop     -> EMPTY
#
# 注意：本服务不加锁，破坏性操作（create/drop/truncate/order/load）由调用方保证串行执行。

from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from admdiv.core.config import PartitionConfig
from admdiv.core.exceptions import InvalidStateError, PartitionIOError
from admdiv.core.logging import get_logger
from admdiv.schemas.division import CheckReport
from admdiv.services.partitioner import (
    ExportSummary,
    LoadResult,
    Partitioner,
    check_records,
    discover_partitions,
    staging_file,
)
from admdiv.storage.base import BaseStore, TableStatus

logger = get_logger(__name__)


class DatasetState(str, Enum):
    """数据集状态"""
    EMPTY = "empty"               # 表不存在
    SCHEMA_ONLY = "schema_only"   # 表存在但没有数据
    LOADED = "loaded"             # 已导入数据
    INDEXED = "indexed"           # 已导入数据并创建索引

    @classmethod
    def from_status(cls, status: TableStatus) -> "DatasetState":
        if not status.exists:
            return cls.EMPTY
        if status.rows == 0:
            return cls.SCHEMA_ONLY
        if status.indexed:
            return cls.INDEXED
        return cls.LOADED


HAS_DATA = (DatasetState.LOADED, DatasetState.INDEXED)
HAS_TABLE = (DatasetState.SCHEMA_ONLY, DatasetState.LOADED, DatasetState.INDEXED)


class TableService:
    """
    行政区划表生命周期服务

    使用方法：
        service = TableService(store, PartitionConfig.from_settings(settings))
        await service.setup()
        summary = await service.dump([110000, 310000])
    """

    def __init__(self, store: BaseStore, config: PartitionConfig):
        self.store = store
        self.config = config
        self.partitioner = Partitioner(store, config)

    @property
    def table(self) -> str:
        return self.config.table

    async def state(self) -> DatasetState:
        """当前数据集状态"""
        return DatasetState.from_status(await self.store.inspect(self.table))

    async def _require(self, operation: str, allowed: Sequence[DatasetState]) -> DatasetState:
        current = await self.state()
        if current not in allowed:
            expected = " / ".join(state.value for state in allowed)
            raise InvalidStateError(
                f"{operation} 需要表 {self.table} 处于 {expected} 状态，当前为 {current.value}"
            )
        return current

    # ==================== 表结构 ====================

    async def create(self) -> None:
        """建表（幂等）"""
        if await self.state() != DatasetState.EMPTY:
            logger.info(f"[TableService] 表 {self.table} 已存在，跳过建表")
            return
        await self.store.create_table(self.table)

    async def index(self) -> None:
        """创建二级索引（幂等）"""
        await self._require("index", HAS_DATA)
        await self.store.create_indexes(self.table)

    async def drop(self) -> None:
        """删除表（幂等）"""
        await self.store.drop_table(self.table)

    async def truncate(self) -> None:
        """清空数据（幂等）"""
        await self._require("trunc", HAS_TABLE)
        await self.store.truncate(self.table)

    async def order(self) -> int:
        """按 (rank, code) 重排"""
        await self._require("order", HAS_DATA)
        return await self.partitioner.reorder()

    # ==================== 导出/导入 ====================

    async def clean(self) -> int:
        """
        清理导出目录中的分区文件和未完成的 .part 文件

        Returns:
            int: 删除的文件数
        """
        export_dir = self.config.export_dir
        removed = 0
        for path in discover_partitions(export_dir).values():
            path.unlink(missing_ok=True)
            removed += 1
        if export_dir.is_dir():
            for path in export_dir.glob("*.csv.part"):
                path.unlink(missing_ok=True)
                removed += 1
        logger.info(f"[TableService] 已清理 {removed} 个文件: {export_dir}")
        return removed

    async def dump(
        self,
        keys: Optional[Sequence[int]] = None,
        parallelism: Optional[int] = None,
    ) -> ExportSummary:
        """并发导出分区文件"""
        await self._require("dump", HAS_DATA)
        return await self.partitioner.export_all(keys, parallelism)

    async def load(self, keys: Optional[Sequence[int]] = None) -> LoadResult:
        """从分区文件导入"""
        current = await self._require("load", HAS_TABLE)
        files = self.partitioner.select_partitions(keys)
        result = await self.partitioner.merge_and_load(files)
        if current == DatasetState.INDEXED:
            logger.warning(f"[TableService] {self.table} 已有索引，本次导入未重建索引")
        return result

    # ==================== 备份/恢复 ====================

    async def backup(self) -> Path:
        """导出快照"""
        await self._require("backup", HAS_DATA)
        target = self.config.backup_file
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PartitionIOError(f"无法创建备份目录: {e}", path=target.parent) from e
        await self.store.dump(target, self.table)
        logger.info(f"[TableService] 备份完成: {target}")
        return target

    async def restore(self) -> Path:
        """从快照恢复"""
        source = self.config.backup_file
        if not source.is_file():
            raise PartitionIOError(f"备份文件不存在: {source}", path=source)
        await self.store.restore(source, self.table)
        logger.info(f"[TableService] 恢复完成: {source}")
        return source

    # ==================== 检查 ====================

    async def check(self) -> CheckReport:
        """导出整张表并检查结构约束"""
        await self._require("check", HAS_TABLE)
        with staging_file(self.config.staging_dir, prefix=f"{self.table}-check-") as staging:
            records = await self.partitioner.read_records(staging)
        report = check_records(records)
        if report.ok:
            logger.info(f"[TableService] 检查通过: {report.total} 行, {report.partitions} 个分区")
        else:
            logger.warning(f"[TableService] 检查发现问题: {report.model_dump(exclude={'by_level'})}")
        return report

    # ==================== 组合操作 ====================

    async def reload(self, keys: Optional[Sequence[int]] = None) -> LoadResult:
        """清空后重新导入并重排"""
        await self.truncate()
        result = await self.load(keys)
        await self.order()
        return result

    async def reset(self) -> None:
        """删除并重新建表"""
        await self.drop()
        await self.create()

    async def setup(self, keys: Optional[Sequence[int]] = None) -> LoadResult:
        """建表、导入、重排、建索引"""
        await self.create()
        result = await self.load(keys)
        await self.order()
        await self.index()
        return result
