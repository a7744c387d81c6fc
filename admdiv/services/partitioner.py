# admdiv/services/partitioner.py
# 分区导出/导入服务
#
# 功能说明：
# 1. 按顶级区划代码把整张表拆成互不相交的分区（每个县级及以上区划一个分区）
# 2. 并发导出分区文件 <export_dir>/<key>.csv，单个分区失败不影响其他分区
# 3. 按分区代码升序合并任意分区子集，一次 COPY 导入
# 4. 按 (rank, code) 重排表的物理顺序
#
# 分区规则：
#   key = code // 10^6，只有低 6 位为 0 的记录（县级及以上）产生分区键。
#   上级代码总是小于下级代码，分区内按 (rank, code) 导出、分区间按 key 升序合并，
#   合并后的数据流保证上级先于下级导入。
#
# 使用方法：
#   from admdiv.services.partitioner import Partitioner
#
#   partitioner = Partitioner(store, PartitionConfig.from_settings(settings))
#   summary = await partitioner.export_all()
#   files = partitioner.select_partitions([310000, 110000])
#   result = await partitioner.merge_and_load(files)

import asyncio
import csv
import os
import re
import shutil
import tempfile
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

from admdiv.core.config import PartitionConfig
from admdiv.core.exceptions import PartitionIOError, PartitionNotFoundError
from admdiv.core.logging import get_logger, log_execution
from admdiv.models.division import ORDER_BY
from admdiv.schemas.division import PARTITION_SCALE, CheckReport, DivisionRecord
from admdiv.storage.base import BaseStore, CodeRange

logger = get_logger(__name__)

# 分区文件名：十进制区划代码 + .csv
PARTITION_FILE = re.compile(r"^([1-9][0-9]*)\.csv$")


# ==================== 分区规则 ====================

def partition_key_of(code: int) -> int:
    """记录所属分区"""
    return code // PARTITION_SCALE


def partition_range(key: int) -> CodeRange:
    """分区对应的代码区间"""
    return CodeRange(low=key * PARTITION_SCALE, high=(key + 1) * PARTITION_SCALE)


def partition_keys(codes: Iterable[int]) -> Set[int]:
    """
    从区划代码中计算分区键

    只有县级及以上记录（低 6 位为 0）产生分区键，
    乡级、村级记录归入所在县级区划的分区。
    """
    return {code // PARTITION_SCALE for code in codes if code % PARTITION_SCALE == 0}


def partition_path(export_dir: Path, key: int) -> Path:
    """分区文件路径"""
    return export_dir / f"{key}.csv"


def discover_partitions(export_dir: Path) -> Dict[int, Path]:
    """
    扫描导出目录，把文件名解析回分区键

    不符合 <key>.csv 的文件（包括未完成的 .part 文件）被忽略。
    """
    if not export_dir.is_dir():
        return {}

    found: Dict[int, Path] = {}
    for entry in export_dir.iterdir():
        match = PARTITION_FILE.match(entry.name)
        if match and entry.is_file():
            found[int(match.group(1))] = entry
    return found


@contextmanager
def staging_file(staging_dir: Path, prefix: str) -> Iterator[Path]:
    """
    暂存文件

    正常结束、异常、任务取消时都会删除文件。
    """
    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=".csv", dir=staging_dir)
    except OSError as e:
        raise PartitionIOError(f"无法创建暂存文件: {e}", path=staging_dir) from e
    os.close(fd)

    path = Path(name)
    logger.debug(f"[Partitioner] 暂存文件: {path}")
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
        logger.debug(f"[Partitioner] 暂存文件已删除: {path}")


def check_records(records: Iterable[DivisionRecord]) -> CheckReport:
    """
    检查数据集的结构约束

    - 代码唯一
    - 上级代码存在
    - level 与 rank 一致
    - 每条记录都落在某个分区内
    - 只有一个根节点
    """
    report = CheckReport()
    codes: Set[int] = set()
    parents: Dict[int, int] = {}
    levels: Counter = Counter()
    keys: Set[int] = set()
    members: Dict[int, int] = {}

    for record in records:
        report.total += 1
        levels[record.level.value] += 1

        if record.code in codes:
            report.duplicate_codes.append(record.code)
        codes.add(record.code)

        if record.parent is None:
            report.roots.append(record.code)
        else:
            parents[record.code] = record.parent

        if not record.is_consistent:
            report.rank_mismatches.append(record.code)

        if record.is_partition_marker:
            keys.add(record.partition_key)
        members[record.code] = record.partition_key

    report.by_level = dict(levels)
    report.partitions = len(keys)
    report.dangling_parents = sorted(code for code, parent in parents.items() if parent not in codes)
    report.uncovered = sorted(code for code, key in members.items() if key not in keys)
    report.duplicate_codes.sort()
    return report


# ==================== 结果类型 ====================

@dataclass
class ExportSummary:
    """
    并发导出结果

    Attributes:
        succeeded: 分区键 -> 导出文件
        failed: 分区键 -> 异常
    """
    succeeded: Dict[int, Path] = field(default_factory=dict)
    failed: Dict[int, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class LoadResult:
    """
    合并导入结果

    Attributes:
        keys: 导入的分区键（升序）
        files: 导入的分区文件
        rows: 导入行数
        elapsed: 耗时（秒）
    """
    keys: List[int]
    files: List[Path]
    rows: int
    elapsed: float


# ==================== 分区服务 ====================

class Partitioner:
    """
    分区导出/导入服务

    并发约束：
    - export_all 的各分区互不依赖，可以并发
    - merge_and_load、reorder 是破坏性操作，调用方负责保证它们不与其他操作并发
    """

    def __init__(self, store: BaseStore, config: PartitionConfig):
        self.store = store
        self.config = config

    @property
    def table(self) -> str:
        return self.config.table

    async def partition_keys(self) -> List[int]:
        """当前表中的全部分区键（升序）"""
        codes = await self.store.fetch_codes(self.table, divisible_by=PARTITION_SCALE)
        return sorted(partition_keys(codes))

    async def export_partition(self, key: int) -> Path:
        """
        导出单个分区

        先写 <key>.csv.part，成功后重命名，导出目录里不会出现不完整的分区文件。

        Raises:
            PartitionIOError: 目标文件无法写入
        """
        target = partition_path(self.config.export_dir, key)
        partial = target.with_name(target.name + ".part")

        try:
            rows = await self.store.bulk_dump(self.table, partial, partition_range(key), ORDER_BY)
            os.replace(partial, target)
        except OSError as e:
            raise PartitionIOError(f"分区 {key} 导出失败: {e}", key=key, path=target) from e
        finally:
            if partial.exists():
                partial.unlink(missing_ok=True)

        logger.info(
            f"[Partitioner] 分区 {key} 导出 {rows} 行 -> {target}",
            extra={"table": self.table, "partition": key, "rows": rows, "path": target},
        )
        return target

    async def export_all(
        self,
        keys: Optional[Sequence[int]] = None,
        parallelism: Optional[int] = None,
    ) -> ExportSummary:
        """
        并发导出分区

        单个分区失败只记录在 summary.failed 中，不会取消其他分区。

        Args:
            keys: 只导出这些分区（默认全部）
            parallelism: 并发数（默认 config.parallelism）
        """
        available = await self.partition_keys()
        summary = ExportSummary()

        if keys:
            known = set(available)
            targets = []
            for key in sorted(set(keys)):
                if key in known:
                    targets.append(key)
                else:
                    summary.failed[key] = PartitionNotFoundError([key])
        else:
            targets = available

        try:
            self.config.export_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PartitionIOError(f"无法创建导出目录: {e}", path=self.config.export_dir) from e

        workers = parallelism or self.config.parallelism
        semaphore = asyncio.Semaphore(workers)
        logger.info(f"[Partitioner] 开始导出 {len(targets)} 个分区, 并发 {workers}")

        async def _export(key: int) -> None:
            async with semaphore:
                try:
                    summary.succeeded[key] = await self.export_partition(key)
                except Exception as e:
                    summary.failed[key] = e
                    logger.error(
                        f"[Partitioner] 分区 {key} 导出失败: {e}",
                        extra={"table": self.table, "partition": key},
                    )

        await asyncio.gather(*(_export(key) for key in targets))

        logger.info(
            f"[Partitioner] 导出完成: 成功 {len(summary.succeeded)}, 失败 {len(summary.failed)}"
        )
        return summary

    def select_partitions(self, requested: Optional[Sequence[int]] = None) -> List[Path]:
        """
        选择要导入的分区文件，按分区键升序返回

        Args:
            requested: 指定分区键（默认导出目录中的全部分区）

        Raises:
            PartitionNotFoundError: 指定的分区没有导出文件，或目录为空
        """
        available = discover_partitions(self.config.export_dir)

        if requested:
            keys = sorted(set(requested))
            missing = [key for key in keys if key not in available]
            if missing:
                raise PartitionNotFoundError(missing)
        else:
            keys = sorted(available)
            if not keys:
                raise PartitionNotFoundError(
                    [], f"导出目录中没有分区文件: {self.config.export_dir}"
                )

        return [available[key] for key in keys]

    @log_execution()
    async def merge_and_load(self, files: Sequence[Path]) -> LoadResult:
        """
        合并分区文件并一次性导入

        按传入顺序拼接到暂存文件（保持各文件内部行序），再执行一次 COPY。
        暂存文件在任何情况下都会被删除；导入失败时整体失败，不做部分重试。

        Raises:
            PartitionIOError: 分区文件读取或暂存文件写入失败
            ConstraintViolation: 数据库拒绝导入
        """
        started = time.monotonic()

        with staging_file(self.config.staging_dir, prefix=f"{self.table}-merge-") as staging:
            try:
                await asyncio.to_thread(_concatenate, files, staging)
            except OSError as e:
                raise PartitionIOError(f"合并分区文件失败: {e}", path=staging) from e

            logger.info(f"[Partitioner] 合并 {len(files)} 个分区文件, 开始导入 {self.table}")
            rows = await self.store.bulk_load(self.table, staging)

        result = LoadResult(
            keys=[int(path.stem) for path in files],
            files=list(files),
            rows=rows,
            elapsed=time.monotonic() - started,
        )
        logger.info(f"[Partitioner] 导入完成: {result.rows} 行, 耗时 {result.elapsed:.1f}s")
        return result

    @log_execution()
    async def reorder(self) -> int:
        """
        按 (rank, code) 重排表的物理顺序

        复制到中转表 -> 清空 -> 按顺序插回，中转表在任何情况下都会被删除。
        中途被打断时表内容不确定，需要从备份恢复。

        Returns:
            int: 插回的行数
        """
        holding = f"{self.table}_reorder"

        # 上次中断可能遗留中转表
        await self.store.drop_table(holding)
        try:
            await self.store.copy_rows(self.table, holding, ORDER_BY, create=True)
            await self.store.truncate(self.table)
            rows = await self.store.copy_rows(holding, self.table, ORDER_BY)
        finally:
            await self.store.drop_table(holding)

        logger.info(f"[Partitioner] {self.table} 已按 {', '.join(ORDER_BY)} 重排, {rows} 行")
        return rows

    async def read_records(self, staging: Path) -> List[DivisionRecord]:
        """把整张表导出到暂存文件并解析为记录（按 code 排序）"""
        await self.store.bulk_dump(self.table, staging, order_by=("code",))
        return await asyncio.to_thread(_read_records, staging)


def _concatenate(files: Sequence[Path], output: Path) -> None:
    """按顺序拼接文件，补齐缺失的行尾换行"""
    with output.open("wb") as out:
        for path in files:
            with path.open("rb") as src:
                shutil.copyfileobj(src, out)
                if src.tell() > 0:
                    src.seek(-1, os.SEEK_END)
                    if src.read(1) != b"\n":
                        out.write(b"\n")


def _read_records(path: Path) -> List[DivisionRecord]:
    with path.open(newline="", encoding="utf-8") as f:
        return [DivisionRecord.from_row(row) for row in csv.reader(f) if row]
