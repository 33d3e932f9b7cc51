"""
Flow Runner - Command-line entry point.
Flow Runner - 命令行入口。

Loads a flow file (or the built-in demo flow), runs it with FlowScheduler
and renders the final task statuses with a rich table.
加载流程文件（或内置演示流程），用 FlowScheduler 运行，并以 Rich 表格展示最终任务状态。

Usage:
    python main.py                 # demo: echo "Hello" -> sleep 3 -> echo "World"
    python main.py flow.json -v    # run a flow file with DEBUG logging
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dag.graph import GraphValidationError
from dag.loader import build_flow, load_flow
from dag.scheduler import FlowScheduler
from schema import FlowSpec, RunOutcome, RunResult, TaskSpec
from tasks.registry import UnknownTaskKindError

console = Console()

# Status -> Rich style mapping
# 任务状态 -> Rich 样式映射
_STATUS_STYLES = {
    "pending": "dim",
    "running": "bold yellow",
    "done": "green",
    "failed": "red",
    "skipped": "dim strike",
}

# Run outcome -> process exit code
# 运行结果 -> 进程退出码
EXIT_CODES = {
    RunOutcome.DONE: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.STALLED: 3,
    RunOutcome.CANCELLED: 130,
}
EXIT_CONFIG_ERROR = 2


def demo_flow() -> FlowSpec:
    """
    The built-in demo: task 0 echoes, task 1 waits 3 seconds, task 2 echoes.
    内置演示流程：任务 0 回显，任务 1 等待 3 秒，任务 2 回显。
    """
    return FlowSpec(
        name="demo",
        tasks=[
            TaskSpec(id=0, kind="echo", params={"message": "Hello"}),
            TaskSpec(id=1, kind="sleep", params={"seconds": 3}, depends_on=[0]),
            TaskSpec(id=2, kind="echo", params={"message": "World"}, depends_on=[1]),
        ],
    )


# ======================================================================
# UI Event Handler
# UI 事件处理器
# ======================================================================

def on_event(event: str, data: Any) -> None:
    if event == "task_started":
        console.print(f"[bold yellow]>>> started[/bold yellow] {data['task_id']}")
    elif event == "task_skipped":
        console.print(f"[dim]--- skipped {data['task_id']} (upstream {data['because_of']} failed)[/dim]")
    elif event == "task_finished":
        style = _STATUS_STYLES.get(data["status"].value, "white")
        console.print(f"[{style}]<<< {data['status'].value}[/{style}] {data['task_id']}")


def render_result(name: str, result: RunResult) -> None:
    table = Table(title=f"Flow '{name}'")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Start #", justify="right")
    order = {tid: i + 1 for i, tid in enumerate(result.start_order)}
    for tid, status in result.statuses.items():
        style = _STATUS_STYLES.get(status.value, "white")
        table.add_row(str(tid), f"[{style}]{status.value}[/{style}]", str(order.get(tid, "-")))
    console.print(table)

    color = "green" if result.succeeded else "red"
    console.print(
        f"[bold {color}]{result.outcome.value.upper()}[/bold {color}] "
        f"after {result.iterations} iterations in {result.elapsed_seconds:.2f}s"
    )


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统。verbose=True 时启用 DEBUG 级别。
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


async def run_flow(scheduler: FlowScheduler) -> RunResult:
    """
    Run with SIGINT mapped to cooperative cancellation.
    运行调度器，并将 SIGINT（Ctrl+C）映射为协作式取消。
    """
    loop = asyncio.get_running_loop()
    installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, scheduler.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows / 非主线程：Ctrl+C 退化为 KeyboardInterrupt
        logging.debug("SIGINT handler not available; Ctrl+C will interrupt instead of cancel")
        installed = False
    try:
        return await scheduler.run()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def main(argv: list[str] | None = None) -> int:
    """
    程序入口：解析命令行参数。
    - 有位置参数：运行指定的流程文件
    - 无位置参数：运行内置演示流程
    - -v / --verbose：启用调试日志
    """
    argv = sys.argv[1:] if argv is None else argv
    verbose = "--verbose" in argv or "-v" in argv
    setup_logging(verbose)

    args = [a for a in argv if not a.startswith("-")]
    try:
        if args:
            spec, tasks, graph = load_flow(args[0])
        else:
            spec = demo_flow()
            tasks, graph = build_flow(spec)
        scheduler = FlowScheduler(tasks, graph, on_event=on_event)
    except (OSError, ValidationError, GraphValidationError, UnknownTaskKindError, ValueError) as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        return EXIT_CONFIG_ERROR

    result = asyncio.run(run_flow(scheduler))
    render_result(spec.name, result)
    return EXIT_CODES[result.outcome]


if __name__ == "__main__":
    sys.exit(main())
