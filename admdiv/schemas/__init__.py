# admdiv/schemas/__init__.py
# Pydantic Schema 包
#
# 使用方式：from admdiv.schemas import DivisionRecord

from admdiv.schemas.division import (
    CheckReport,
    DivisionRecord,
    PARTITION_SCALE,
)

__all__ = [
    "CheckReport",
    "DivisionRecord",
    "PARTITION_SCALE",
]
