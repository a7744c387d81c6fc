# tests/conftest.py
# Pytest 配置文件
#
# 功能：
# 1. 自动加载环境变量
# 2. 提供内存存储后端 MemoryStore（立即检查主键/外键和 level/rank 一致性，记录插入顺序）
# 3. 提供示例行政区划数据和指向临时目录的 PartitionConfig

import csv
import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest

from admdiv.core.config import PartitionConfig
from admdiv.core.exceptions import AdmdivError, ConstraintViolation
from admdiv.models.division import COLUMNS, ORDER_BY, Level
from admdiv.schemas.division import DivisionRecord
from admdiv.storage.base import BaseStore, CodeRange, TableStatus


# ==================== 环境配置 ====================

def pytest_configure(config):
    """Pytest 启动时配置"""
    from dotenv import load_dotenv
    load_dotenv()


# ==================== 内存存储后端 ====================

_INT_COLUMNS = {"code", "rank"}


class MemoryStore(BaseStore):
    """
    内存存储后端

    行以 CSV 字符串列表保存，导出/导入与真实 COPY 一样逐字节往返。
    bulk_load 像带立即外键检查的 COPY 一样：任一行失败则整体不生效。
    """

    name = "memory"

    def __init__(self):
        self.tables: Dict[str, List[List[str]]] = {}
        self.indexed: Set[str] = set()
        self.snapshots: Dict[str, str] = {}
        self.statements: List[str] = []
        # 最近一次写入目标表的代码顺序
        self.inserted: List[int] = []

    def _rows(self, table: str) -> List[List[str]]:
        if table not in self.tables:
            raise AdmdivError(f'relation "{table}" does not exist')
        return self.tables[table]

    @staticmethod
    def _sort_key(order_by: Sequence[str]):
        positions = [COLUMNS.index(column) for column in order_by]

        def key(row):
            return tuple(
                int(row[pos]) if COLUMNS[pos] in _INT_COLUMNS else row[pos]
                for pos in positions
            )
        return key

    def _insert(self, table: str, rows: List[List[str]]) -> int:
        target = self._rows(table)
        codes = {int(row[0]) for row in target}
        for row in rows:
            code = int(row[0])
            if code in codes:
                raise ConstraintViolation(f"duplicate key value violates unique constraint: code={code}")
            if row[1] and int(row[1]) not in codes:
                raise ConstraintViolation(f"foreign key violation: parent {row[1]} of {code} is not present")
            if Level(row[3]).rank != int(row[4]):
                raise ConstraintViolation(f"check constraint violation: level {row[3]} with rank {row[4]} at {code}")
            codes.add(code)
        target.extend(rows)
        self.inserted = [int(row[0]) for row in rows]
        return len(rows)

    async def execute(self, statement: str) -> str:
        self.statements.append(statement)
        return "OK"

    async def create_table(self, table: str) -> None:
        self.tables.setdefault(table, [])

    async def drop_table(self, table: str) -> None:
        self.tables.pop(table, None)
        self.indexed.discard(table)

    async def truncate(self, table: str) -> None:
        self._rows(table).clear()

    async def create_indexes(self, table: str) -> None:
        self._rows(table)
        self.indexed.add(table)

    async def inspect(self, table: str) -> TableStatus:
        if table not in self.tables:
            return TableStatus(exists=False)
        return TableStatus(exists=True, rows=len(self.tables[table]), indexed=table in self.indexed)

    async def fetch_codes(self, table: str, divisible_by: Optional[int] = None) -> List[int]:
        codes = sorted(int(row[0]) for row in self._rows(table))
        if divisible_by:
            codes = [code for code in codes if code % divisible_by == 0]
        return codes

    async def bulk_dump(
        self,
        table: str,
        path: Path,
        code_range: Optional[CodeRange] = None,
        order_by: Sequence[str] = ORDER_BY,
    ) -> int:
        rows = [row for row in self._rows(table) if code_range is None or int(row[0]) in code_range]
        if order_by:
            rows = sorted(rows, key=self._sort_key(order_by))
        with open(path, "w", newline="", encoding="utf-8") as f:
            csv.writer(f, lineterminator="\n").writerows(rows)
        return len(rows)

    async def bulk_load(self, table: str, path: Path) -> int:
        with open(path, newline="", encoding="utf-8") as f:
            rows = [row for row in csv.reader(f) if row]
        return self._insert(table, rows)

    async def copy_rows(
        self,
        source: str,
        target: str,
        order_by: Sequence[str] = ORDER_BY,
        create: bool = False,
    ) -> int:
        rows = [list(row) for row in sorted(self._rows(source), key=self._sort_key(order_by))]
        if create:
            if target in self.tables:
                raise AdmdivError(f'relation "{target}" already exists')
            self.tables[target] = rows
            return len(rows)
        return self._insert(target, rows)

    async def dump(self, path: Path, table: str) -> None:
        path.write_text(json.dumps(self._rows(table), ensure_ascii=False), encoding="utf-8")

    async def restore(self, path: Path, table: str) -> None:
        self.tables[table] = json.loads(path.read_text(encoding="utf-8"))


# ==================== 示例数据 ====================

def make_record(code: int, parent: Optional[int], name: str, level: Level, **extra) -> DivisionRecord:
    """构造一条示例记录，rank 与 level 一致"""
    values = dict(
        code=code,
        parent=parent,
        name=name,
        level=level,
        rank=level.rank,
        adcode=code // 10 ** 6 if code % 10 ** 6 == 0 else None,
        longitude=116.4,
        latitude=39.9,
        center="0101000020E61000009A99999999195D403333333333F34340",
    )
    values.update(extra)
    return DivisionRecord(**values)


SAMPLE_RECORDS = [
    make_record(100000000000, None, "中华人民共和国", Level.COUNTRY),
    make_record(110000000000, 100000000000, "北京市", Level.PROVINCE, municipality=True, province="北京市"),
    make_record(110100000000, 110000000000, "市辖区", Level.CITY, virtual=True, province="北京市"),
    make_record(110101000000, 110100000000, "东城区", Level.COUNTY, post_code="100010", area_code="010",
                province="北京市", city="市辖区"),
    make_record(110101001000, 110101000000, "东华门街道", Level.TOWNSHIP, province="北京市", city="市辖区",
                county="东城区"),
    make_record(110101001001, 110101001000, "多福巷社区", Level.VILLAGE, ur_code="111", province="北京市",
                city="市辖区", county="东城区", town="东华门街道"),
    make_record(110101002000, 110101000000, "景山街道", Level.TOWNSHIP, province="北京市", city="市辖区",
                county="东城区"),
    make_record(110102000000, 110100000000, "西城区", Level.COUNTY, province="北京市", city="市辖区"),
    make_record(110102001000, 110102000000, "西长安街街道", Level.TOWNSHIP, province="北京市", city="市辖区",
                county="西城区"),
    make_record(310000000000, 100000000000, "上海市", Level.PROVINCE, municipality=True, province="上海市"),
    make_record(310100000000, 310000000000, "市辖区", Level.CITY, virtual=True, province="上海市"),
    make_record(310101000000, 310100000000, "黄浦区", Level.COUNTY, province="上海市", city="市辖区"),
    make_record(310101002000, 310101000000, "南京东路街道", Level.TOWNSHIP, province="上海市", city="市辖区",
                county="黄浦区"),
    make_record(310101002001, 310101002000, "贵州路社区", Level.VILLAGE, ur_code="111", province="上海市",
                city="市辖区", county="黄浦区", town="南京东路街道", dummy=False),
]

SAMPLE_KEYS = [100000, 110000, 110100, 110101, 110102, 310000, 310100, 310101]


@pytest.fixture
def records() -> List[DivisionRecord]:
    return list(SAMPLE_RECORDS)


@pytest.fixture
def config(tmp_path) -> PartitionConfig:
    """指向临时目录的配置"""
    return PartitionConfig(
        table="adcode",
        export_dir=tmp_path / "dump",
        staging_dir=tmp_path / "tmp",
        backup_dir=tmp_path / "backup",
        parallelism=4,
    )


@pytest.fixture
def empty_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def loaded_store(records) -> MemoryStore:
    """已导入示例数据的存储，物理顺序为代码倒序"""
    store = MemoryStore()
    store.tables["adcode"] = [record.to_row() for record in sorted(records, key=lambda r: -r.code)]
    return store
