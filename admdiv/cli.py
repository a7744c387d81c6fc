# admdiv/cli.py
# 命令行入口
#
# 使用方法：
#   admdiv setup                     # 建表 + 导入全部分区 + 重排 + 建索引
#   admdiv dump                      # 并发导出全部分区到 EXPORT_DIR
#   admdiv dump 110000 310000 -j 4   # 只导出指定分区
#   admdiv load 110101 110102        # 只导入指定分区
#   admdiv backup / restore          # 快照备份与恢复
#
# 退出码：
#   0   成功
#   1   参数错误、部分分区失败、检查未通过
#   其他 pg_dump / pg_restore 的返回码

import argparse
import asyncio
import signal
import sys
from typing import Awaitable, Callable, Dict, List, Optional

from admdiv import __version__
from admdiv.core.config import PartitionConfig, settings
from admdiv.core.exceptions import AdmdivError, InvalidStateError
from admdiv.core.logging import get_logger, setup_logging
from admdiv.storage.base import BaseStore
from admdiv.storage.postgres import PostgresStore
from admdiv.services.table_service import TableService

logger = get_logger("admdiv.cli")


class UsageParser(argparse.ArgumentParser):
    """参数错误时以退出码 1 结束"""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        print(f"{self.prog}: 错误: {message}", file=sys.stderr)
        sys.exit(1)


def region_code(value: str) -> int:
    """解析区划代码参数"""
    if not value.isdigit() or value.startswith("0"):
        raise argparse.ArgumentTypeError(f"无效的区划代码: {value}")
    return int(value)


def build_parser() -> UsageParser:
    parser = UsageParser(
        prog="admdiv",
        description="行政区划参考表运维工具",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  admdiv setup
  admdiv dump 110000 310000 -j 4
  admdiv load
  admdiv reload 110101
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", metavar="command")

    commands.add_parser("create", help="建表（不含索引）")
    commands.add_parser("index", help="创建二级索引")
    commands.add_parser("order", help="按 (rank, code) 重排物理顺序")
    commands.add_parser("drop", help="删除表")
    commands.add_parser("trunc", help="清空表数据")
    commands.add_parser("clean", help="清理导出目录中的分区文件")

    dump = commands.add_parser("dump", help="并发导出分区文件")
    dump.add_argument("codes", nargs="*", type=region_code, help="区划代码（默认全部分区）")
    dump.add_argument("-j", "--jobs", type=int, default=None,
                      help=f"并发数（默认 {settings.EXPORT_PARALLELISM}）")

    for name, text in (
        ("load", "从分区文件导入"),
        ("reload", "清空后重新导入并重排"),
        ("setup", "建表、导入、重排、建索引"),
    ):
        sub = commands.add_parser(name, help=text)
        sub.add_argument("codes", nargs="*", type=region_code, help="区划代码（默认全部分区）")

    commands.add_parser("backup", help="备份表快照")
    commands.add_parser("restore", help="从快照恢复")
    commands.add_parser("check", help="检查数据约束")
    commands.add_parser("reset", help="删除并重新建表")
    commands.add_parser("usage", help="显示帮助")
    return parser


# ==================== 子命令实现 ====================

async def _create(service: TableService, args) -> int:
    await service.create()
    print(f"✅ 表 {service.table} 已就绪")
    return 0


async def _index(service: TableService, args) -> int:
    await service.index()
    print(f"✅ 索引已创建: {service.table}")
    return 0


async def _order(service: TableService, args) -> int:
    rows = await service.order()
    print(f"✅ 已重排 {rows} 行")
    return 0


async def _drop(service: TableService, args) -> int:
    await service.drop()
    print(f"✅ 表 {service.table} 已删除")
    return 0


async def _trunc(service: TableService, args) -> int:
    await service.truncate()
    print(f"✅ 表 {service.table} 已清空")
    return 0


async def _clean(service: TableService, args) -> int:
    removed = await service.clean()
    print(f"✅ 已删除 {removed} 个文件")
    return 0


async def _dump(service: TableService, args) -> int:
    if args.jobs is not None and args.jobs < 1:
        print("❌ 并发数至少为 1", file=sys.stderr)
        return 1
    summary = await service.dump(args.codes, args.jobs)
    print(f"✅ 导出成功 {len(summary.succeeded)} 个分区 -> {service.config.export_dir}")
    if summary.failed:
        print(f"❌ 导出失败 {len(summary.failed)} 个分区:", file=sys.stderr)
        for key in sorted(summary.failed):
            print(f"   {key}: {summary.failed[key]}", file=sys.stderr)
        return 1
    return 0


def _print_load(result) -> None:
    print(f"✅ 导入 {len(result.keys)} 个分区, {result.rows} 行, 耗时 {result.elapsed:.1f}s")


async def _load(service: TableService, args) -> int:
    _print_load(await service.load(args.codes))
    return 0


async def _reload(service: TableService, args) -> int:
    _print_load(await service.reload(args.codes))
    return 0


async def _setup(service: TableService, args) -> int:
    _print_load(await service.setup(args.codes))
    print(f"✅ 表 {service.table} 已就绪（已重排、已建索引）")
    return 0


async def _backup(service: TableService, args) -> int:
    path = await service.backup()
    print(f"✅ 备份完成: {path}")
    return 0


async def _restore(service: TableService, args) -> int:
    path = await service.restore()
    print(f"✅ 已从 {path} 恢复")
    return 0


async def _check(service: TableService, args) -> int:
    state = await service.state()
    report = await service.check()
    print(f"状态: {state.value}")
    print(f"总行数: {report.total}, 分区数: {report.partitions}")
    for level, count in sorted(report.by_level.items()):
        print(f"  {level:10} {count}")

    problems = {
        "重复代码": report.duplicate_codes,
        "上级不存在": report.dangling_parents,
        "level/rank 不一致": report.rank_mismatches,
        "不属于任何分区": report.uncovered,
    }
    if len(report.roots) > 1:
        problems["多个根节点"] = report.roots
    for label, codes in problems.items():
        if codes:
            preview = ", ".join(str(code) for code in codes[:10])
            more = " ..." if len(codes) > 10 else ""
            print(f"❌ {label} {len(codes)} 条: {preview}{more}")

    if report.ok:
        print("✅ 检查通过")
        return 0
    return 1


async def _reset(service: TableService, args) -> int:
    await service.reset()
    print(f"✅ 表 {service.table} 已重建")
    return 0


COMMANDS: Dict[str, Callable[[TableService, argparse.Namespace], Awaitable[int]]] = {
    "create": _create,
    "index": _index,
    "order": _order,
    "drop": _drop,
    "trunc": _trunc,
    "clean": _clean,
    "dump": _dump,
    "load": _load,
    "backup": _backup,
    "restore": _restore,
    "check": _check,
    "reload": _reload,
    "reset": _reset,
    "setup": _setup,
}


async def run(
    args: argparse.Namespace,
    config: PartitionConfig,
    store: Optional[BaseStore] = None,
) -> int:
    """
    执行子命令

    SIGTERM 会取消当前任务，暂存文件和中转表照常清理。
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows 或非主线程
        pass

    if store is None:
        store = PostgresStore(parallelism=config.parallelism)

    try:
        async with store:
            service = TableService(store, config)
            return await COMMANDS[args.command](service, args)
    except AdmdivError as e:
        logger.error(f"{args.command} 失败: {e}")
        print(f"❌ {e}", file=sys.stderr)
        # 状态检查失败时表未被改动
        if args.command in ("order", "reload") and not isinstance(e, InvalidStateError):
            print("   表内容可能不完整，可使用 admdiv restore 从备份恢复", file=sys.stderr)
        return e.exit_code
    except asyncio.CancelledError:
        logger.warning(f"{args.command} 被中断")
        return 143
    finally:
        try:
            loop.remove_signal_handler(signal.SIGTERM)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 1
    if args.command == "usage":
        parser.print_help()
        return 0

    setup_logging()
    config = PartitionConfig.from_settings(settings)

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        logger.warning(f"{args.command} 被用户中断")
        return 130


if __name__ == "__main__":
    sys.exit(main())
