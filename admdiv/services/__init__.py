# admdiv/services/__init__.py
# 服务层
#
# - partitioner.py: 分区并发导出、合并导入、重排
# - table_service.py: 表生命周期与状态校验

from admdiv.services.partitioner import (
    ExportSummary,
    LoadResult,
    Partitioner,
    check_records,
    discover_partitions,
    partition_keys,
)
from admdiv.services.table_service import DatasetState, TableService

__all__ = [
    "DatasetState",
    "ExportSummary",
    "LoadResult",
    "Partitioner",
    "TableService",
    "check_records",
    "discover_partitions",
    "partition_keys",
]
