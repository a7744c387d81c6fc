# admdiv/core/logging.py
# 日志配置模块
#
# 功能说明：
# 1. 日志统一写到 stderr，stdout 只留给命令的结果输出
# 2. 支持两种格式：彩色控制台（交互使用）和 JSON（定时任务/采集）
# 3. 分区、表名等上下文通过 extra 传入，JSON 格式下作为独立字段输出
#
# 使用方法：
#   from admdiv.core.logging import get_logger
#   logger = get_logger(__name__)
#   logger.info("分区导出完成", extra={"partition": 110101, "table": "adcode"})

import json
import logging
import sys
import time
from datetime import datetime
from functools import wraps
from typing import Callable, Optional, TextIO

from admdiv.core.config import settings


# 通过 extra 传入、JSON 格式下单独输出的上下文字段
CONTEXT_FIELDS = ("table", "partition", "path", "rows")


# ==================== 彩色输出支持 ====================

class Colors:
    """终端颜色代码"""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    GRAY = "\033[90m"


LEVEL_COLORS = {
    "DEBUG": Colors.BLUE,
    "INFO": Colors.GREEN,
    "WARNING": Colors.YELLOW,
    "ERROR": Colors.RED,
    "CRITICAL": Colors.MAGENTA,
}


# ==================== 自定义 Formatter ====================

class ColoredFormatter(logging.Formatter):
    """
    控制台日志格式化器

    输出格式：
    12:00:00 INFO     partitioner - [Partitioner] 分区 110101 导出 5321 行

    输出不是终端时（重定向到文件、管道）不带颜色。
    """

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f"{color}{text}{Colors.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        # admdiv.services.partitioner -> partitioner
        source = record.name.rsplit(".", 1)[-1]

        formatted = (
            f"{self._paint(timestamp, Colors.GRAY)} "
            f"{self._paint(level, LEVEL_COLORS.get(record.levelname, Colors.RESET))} "
            f"{self._paint(source, Colors.GRAY)} - "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


class JSONFormatter(logging.Formatter):
    """
    JSON 日志格式化器

    每行一个 JSON 对象：
    {"timestamp": "...", "level": "INFO", "logger": "admdiv.services.partitioner",
     "message": "...", "partition": 110101, "rows": 5321}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        elapsed = getattr(record, "elapsed", None)
        if elapsed is not None:
            log_data["elapsed"] = round(elapsed, 3)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


# ==================== Logger 工厂函数 ====================

def setup_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    初始化日志系统（命令行入口调用一次）

    Args:
        level: 日志级别，默认取 settings.LOG_LEVEL
        fmt: 日志格式（console/json），默认取 settings.LOG_FORMAT
        stream: 输出流，默认 stderr
    """
    level = level or settings.LOG_LEVEL
    fmt = fmt or settings.LOG_FORMAT
    stream = stream or sys.stderr

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ColoredFormatter(use_color=stream.isatty()))
    root_logger.addHandler(handler)

    # SQL 语句只在 DEBUG 模式下显示
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """获取 logger 实例，每个模块传入自己的 __name__"""
    return logging.getLogger(name)


# ==================== 耗时日志装饰器 ====================

def log_execution(logger: Optional[logging.Logger] = None):
    """
    异步操作耗时日志装饰器

    开始时记录 DEBUG，结束时记录耗时（elapsed 字段），异常时记录 ERROR 后继续抛出。

    使用示例：
        @log_execution()
        async def reorder(self):
            ...
    """
    def decorator(func: Callable):
        func_logger = logger or get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            func_logger.debug(f"开始 {func.__qualname__}")
            started = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = time.monotonic() - started
                func_logger.error(
                    f"{func.__qualname__} 失败 ({elapsed:.1f}s): {e}",
                    extra={"elapsed": elapsed},
                )
                raise
            elapsed = time.monotonic() - started
            func_logger.debug(
                f"{func.__qualname__} 完成 ({elapsed:.1f}s)",
                extra={"elapsed": elapsed},
            )
            return result

        return wrapper

    return decorator
