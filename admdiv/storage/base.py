# admdiv/storage/base.py
# 存储后端基类
#
# 定义服务层依赖的数据库能力，所有实现（PostgreSQL、测试用内存实现）都要实现这些方法。
# 服务层只通过这个接口访问数据库：
# - 表结构：create_table / drop_table / truncate / create_indexes / inspect
# - 批量读写：bulk_dump（COPY TO）/ bulk_load（COPY FROM）/ copy_rows
# - 快照：dump / restore
# - 任意语句：execute

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from admdiv.models.division import ORDER_BY


@dataclass(frozen=True)
class CodeRange:
    """
    区划代码半开区间 [low, high)

    一个分区对应 [key * 10^6, (key + 1) * 10^6)，可以直接走主键索引。
    """
    low: int
    high: int

    def __contains__(self, code: int) -> bool:
        return self.low <= code < self.high


@dataclass(frozen=True)
class TableStatus:
    """
    表状态

    Attributes:
        exists: 表是否存在
        rows: 行数（表不存在时为 0）
        indexed: 二级索引是否已创建
    """
    exists: bool
    rows: int = 0
    indexed: bool = False


class BaseStore(ABC):
    """
    存储后端基类

    示例：
        async with PostgresStore(url, parallelism=16) as store:
            await store.create_table("adcode")
            rows = await store.bulk_load("adcode", Path("data/tmp/merge.csv"))
    """

    # 后端名称
    name: str = "base"

    @abstractmethod
    async def execute(self, statement: str) -> str:
        """执行任意语句，返回状态字符串"""

    @abstractmethod
    async def create_table(self, table: str) -> None:
        """创建表（不含二级索引），已存在时跳过"""

    @abstractmethod
    async def drop_table(self, table: str) -> None:
        """删除表，不存在时跳过"""

    @abstractmethod
    async def truncate(self, table: str) -> None:
        """清空表数据，保留结构和索引"""

    @abstractmethod
    async def create_indexes(self, table: str) -> None:
        """创建二级索引，已存在时跳过"""

    @abstractmethod
    async def inspect(self, table: str) -> TableStatus:
        """查询表状态"""

    @abstractmethod
    async def fetch_codes(self, table: str, divisible_by: Optional[int] = None) -> List[int]:
        """
        查询区划代码

        Args:
            table: 表名
            divisible_by: 只返回能被该值整除的代码（None 表示全部）
        """

    @abstractmethod
    async def bulk_dump(
        self,
        table: str,
        path: Path,
        code_range: Optional[CodeRange] = None,
        order_by: Sequence[str] = ORDER_BY,
    ) -> int:
        """
        批量导出为 CSV 文件，字段顺序与表结构一致

        Returns:
            int: 导出行数

        Raises:
            OSError: 目标文件无法写入
        """

    @abstractmethod
    async def bulk_load(self, table: str, path: Path) -> int:
        """
        从 CSV 文件批量导入（单次 COPY，要么全部成功要么全部失败）

        Returns:
            int: 导入行数

        Raises:
            ConstraintViolation: 主键重复或上级代码不存在
        """

    @abstractmethod
    async def copy_rows(
        self,
        source: str,
        target: str,
        order_by: Sequence[str] = ORDER_BY,
        create: bool = False,
    ) -> int:
        """
        按指定顺序把 source 的全部行复制到 target

        Args:
            create: True 时新建 target（CREATE TABLE AS），否则插入已有表
        """

    @abstractmethod
    async def dump(self, path: Path, table: str) -> None:
        """导出快照（数据库原生备份格式）"""

    @abstractmethod
    async def restore(self, path: Path, table: str) -> None:
        """从快照恢复"""

    async def close(self) -> None:
        """释放连接资源"""

    async def __aenter__(self) -> "BaseStore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
