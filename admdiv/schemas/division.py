# admdiv/schemas/division.py
# 行政区划记录 Schema
#
# 功能说明：
# 1. DivisionRecord - 一条行政区划记录，字段顺序与表结构一致
# 2. 在 COPY CSV 文本（空串为 NULL，布尔为 t/f）与 Python 类型之间转换
# 3. CheckReport - check 操作的检查结果

from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, field_validator

from admdiv.models.division import COLUMNS, Level


PARTITION_SCALE = 10 ** 6


class DivisionRecord(BaseModel):
    """行政区划记录"""

    # ==================== 层级结构 ====================
    code: int = Field(..., description="统计用区划代码")
    parent: Optional[int] = Field(None, description="上级区划代码")
    name: str = Field(..., description="区划名称")
    level: Level = Field(..., description="层级")
    rank: int = Field(..., ge=0, le=5, description="层级深度")

    # ==================== 描述信息 ====================
    adcode: Optional[int] = None
    post_code: Optional[str] = None
    area_code: Optional[str] = None
    ur_code: Optional[str] = None
    municipality: Optional[bool] = None
    virtual: Optional[bool] = None
    dummy: Optional[bool] = None

    # ==================== 地理信息 ====================
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    center: Optional[str] = Field(None, description="中心点，数据库原生文本表示（EWKB hex）")

    # ==================== 冗余的上级名称 ====================
    province: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    town: Optional[str] = None
    village: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _empty_as_null(cls, value):
        # COPY CSV 中未加引号的空字段表示 NULL
        if value == "":
            return None
        return value

    @property
    def partition_key(self) -> int:
        """所属分区（顶级区划代码）"""
        return self.code // PARTITION_SCALE

    @property
    def is_partition_marker(self) -> bool:
        """县级及以上记录：低 6 位为 0"""
        return self.code % PARTITION_SCALE == 0

    @property
    def is_consistent(self) -> bool:
        """level 与 rank 是否一致"""
        return self.level.rank == self.rank

    @classmethod
    def from_row(cls, row: Sequence[str]) -> "DivisionRecord":
        """从 CSV 行解析"""
        if len(row) != len(COLUMNS):
            raise ValueError(f"字段数量不符: 期望 {len(COLUMNS)}，实际 {len(row)}")
        return cls(**dict(zip(COLUMNS, row)))

    def to_row(self) -> List[str]:
        """渲染为 CSV 行"""
        row = []
        for column in COLUMNS:
            value = getattr(self, column)
            if value is None:
                row.append("")
            elif isinstance(value, bool):
                row.append("t" if value else "f")
            elif isinstance(value, Level):
                row.append(value.value)
            else:
                row.append(str(value))
        return row


class CheckReport(BaseModel):
    """数据检查结果"""
    total: int = 0
    by_level: Dict[str, int] = Field(default_factory=dict)
    partitions: int = 0
    duplicate_codes: List[int] = Field(default_factory=list)
    dangling_parents: List[int] = Field(default_factory=list)
    rank_mismatches: List[int] = Field(default_factory=list)
    uncovered: List[int] = Field(default_factory=list)
    roots: List[int] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (
            self.duplicate_codes
            or self.dangling_parents
            or self.rank_mismatches
            or self.uncovered
            or len(self.roots) > 1
        )
