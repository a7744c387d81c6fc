# admdiv/models/division.py
# 行政区划数据库模型
#
# 功能说明：
# 1. Level - 区划层级枚举（country/province/city/county/township/village）
# 2. division_table() - 按表名构造行政区划表结构（支持自定义表名）
# 3. division_indexes() - 二级索引定义（index 操作时创建，create 时不创建）
# 4. AdminDivision - 默认表 adcode 的 ORM 模型
#
# 代码编码规则（统计用区划代码，12 位）：
#   11 0000 000000  省级
#   11 01 00 000000 地级
#   11 01 01 000000 县级
#   11 01 01 001 000 乡级
#   11 01 01 001 001 村级
# 上级代码总是小于下级代码。

from enum import Enum
from typing import List, Optional

from geoalchemy2 import Geometry
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
)

from admdiv.core.database import Base


DEFAULT_TABLE = "adcode"


class Level(str, Enum):
    """区划层级，rank 为层级深度（0-5）"""
    COUNTRY = "country"       # 国家
    PROVINCE = "province"     # 省级
    CITY = "city"             # 地级
    COUNTY = "county"         # 县级
    TOWNSHIP = "township"     # 乡级
    VILLAGE = "village"       # 村级

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "Level":
        if not 0 <= rank < len(_LEVEL_ORDER):
            raise ValueError(f"无效的 rank: {rank}")
        return _LEVEL_ORDER[rank]


_LEVEL_ORDER = [
    Level.COUNTRY,
    Level.PROVINCE,
    Level.CITY,
    Level.COUNTY,
    Level.TOWNSHIP,
    Level.VILLAGE,
]


# 列顺序即 COPY 文件的字段顺序，不能调整
COLUMNS = (
    "code", "parent", "name", "level", "rank",
    "adcode", "post_code", "area_code", "ur_code",
    "municipality", "virtual", "dummy",
    "longitude", "latitude", "center",
    "province", "city", "county", "town", "village",
)

# 物理排序键（order 操作）
ORDER_BY = ("rank", "code")


def level_rank_clause() -> str:
    """level 与 rank 一致性约束：rank 必须等于 level 对应的层级深度"""
    cases = " ".join(f"WHEN '{level.value}' THEN {level.rank}" for level in Level)
    return f"rank = CASE level {cases} END"


def division_table(name: str = DEFAULT_TABLE, metadata: Optional[MetaData] = None) -> Table:
    """
    构造行政区划表结构

    Args:
        name: 表名
        metadata: 所属 MetaData，不传则新建

    Returns:
        Table: 表对象（未创建二级索引）
    """
    if metadata is None:
        metadata = MetaData()

    levels = ", ".join(f"'{level.value}'" for level in Level)

    return Table(
        name,
        metadata,
        # ==================== 层级结构 ====================
        Column("code", BigInteger, primary_key=True, autoincrement=False,
               comment="统计用区划代码（12位）"),
        Column("parent", BigInteger, ForeignKey(f"{name}.code"), nullable=True,
               comment="上级区划代码，国家级为空"),
        Column("name", Text, nullable=False, comment="区划名称"),
        Column("level", String(8), nullable=False, comment="层级名称"),
        Column("rank", SmallInteger, nullable=False, comment="层级深度 0-5"),

        # ==================== 描述信息 ====================
        Column("adcode", Integer, comment="6位行政区划代码"),
        Column("post_code", String(8), comment="邮政编码"),
        Column("area_code", String(6), comment="电话区号"),
        Column("ur_code", String(4), comment="城乡分类代码"),
        Column("municipality", Boolean, comment="是否直辖市"),
        Column("virtual", Boolean, comment="是否虚拟区划（如省直辖县级行政区划）"),
        Column("dummy", Boolean, comment="是否统计用虚拟节点"),

        # ==================== 地理信息 ====================
        Column("longitude", Float, comment="中心经度"),
        Column("latitude", Float, comment="中心纬度"),
        Column("center", Geometry(geometry_type="POINT", srid=4326, spatial_index=False),
               comment="中心点"),

        # ==================== 冗余的上级名称 ====================
        Column("province", Text),
        Column("city", Text),
        Column("county", Text),
        Column("town", Text),
        Column("village", Text),

        CheckConstraint(f"level IN ({levels})", name=f"{name}_level_check"),
        CheckConstraint("rank BETWEEN 0 AND 5", name=f"{name}_rank_check"),
        CheckConstraint(level_rank_clause(), name=f"{name}_level_rank_check"),
    )


def division_indexes(table: Table) -> List[Index]:
    """
    二级索引定义

    这些索引由 index 操作单独创建，批量导入前不存在，导入更快。
    """
    name = table.name
    return [
        Index(f"{name}_parent_idx", table.c.parent),
        Index(f"{name}_name_idx", table.c.name),
        Index(f"{name}_level_idx", table.c.level),
        Index(f"{name}_adcode_idx", table.c.adcode),
        Index(f"{name}_rank_code_idx", table.c.rank, table.c.code),
        Index(f"{name}_center_idx", table.c.center, postgresql_using="gist"),
    ]


class AdminDivision(Base):
    """
    行政区划表（默认表名 adcode）

    只读参考数据：通过批量导入创建，除全量重载外不做行级修改。
    """

    __table__ = division_table(DEFAULT_TABLE, Base.metadata)

    def __repr__(self) -> str:
        return f"<AdminDivision {self.code} {self.name}>"
