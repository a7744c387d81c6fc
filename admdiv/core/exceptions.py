# admdiv/core/exceptions.py
# 异常定义
#
# 所有业务异常都继承 AdmdivError，命令行入口统一捕获并按 exit_code 退出：
# - PartitionIOError: 分区文件/暂存文件读写失败
# - PartitionNotFoundError: 请求的分区没有对应的导出文件
# - ConstraintViolation: 数据库拒绝导入（主键重复、父级不存在）
# - StoreUnavailable: 数据库连接失败或中途断开
# - StoreCommandError: pg_dump / pg_restore 等客户端程序返回非零
# - InvalidStateError: 当前表状态不允许执行该操作

from pathlib import Path
from typing import Iterable, Optional


class AdmdivError(Exception):
    """所有业务异常的基类"""

    exit_code: int = 1


class PartitionIOError(AdmdivError, OSError):
    """分区文件无法创建、读取或写入（权限、磁盘空间、目录不存在）"""

    def __init__(self, message: str, key: Optional[int] = None, path: Optional[Path] = None):
        super().__init__(message)
        self.key = key
        self.path = path

    def __str__(self) -> str:
        return self.args[0]


class PartitionNotFoundError(AdmdivError, LookupError):
    """请求的分区代码没有对应的导出文件"""

    def __init__(self, keys: Iterable[int], message: Optional[str] = None):
        self.keys = tuple(sorted(set(keys)))
        if message is None:
            message = "分区不存在: " + ", ".join(str(k) for k in self.keys)
        super().__init__(message)


class ConstraintViolation(AdmdivError):
    """数据库因主键/外键约束拒绝导入"""


class StoreUnavailable(AdmdivError):
    """数据库连接无法建立或中途断开"""


class StoreCommandError(AdmdivError):
    """外部客户端程序执行失败，exit_code 为客户端的返回码"""

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        if returncode < 0:
            # 被信号终止：按 shell 约定为 128 + 信号编号
            self.exit_code = 128 - returncode
        else:
            self.exit_code = returncode or 1
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"{command} 退出码 {returncode}{detail}")


class InvalidStateError(AdmdivError):
    """当前数据集状态不允许执行该操作"""
