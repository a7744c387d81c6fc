# admdiv/models/__init__.py
# 数据模型包
#
# 使用方式：from admdiv.models import AdminDivision, Level

from admdiv.models.division import (
    AdminDivision,
    COLUMNS,
    DEFAULT_TABLE,
    Level,
    ORDER_BY,
    division_indexes,
    division_table,
)

__all__ = [
    "AdminDivision",
    "COLUMNS",
    "DEFAULT_TABLE",
    "Level",
    "ORDER_BY",
    "division_indexes",
    "division_table",
]
