"""
minidag - Command line entry point.
minidag —— 命令行入口。

    minidag dags list
    minidag dags trigger tutorial --conf '{"name": "x"}'
    minidag dags test tutorial
    minidag tasks logs tutorial print_date 2024-01-01
    minidag dags delete tutorial manual__2024-01-01T00:00:00+00:00
    minidag scheduler

Commands render with a rich console; `dags test` and `scheduler` print
pipeline events (runs created, task state changes, run results) as they
happen.
命令输出通过 Rich 控制台渲染；`dags test` 和 `scheduler` 会实时打印流水线事件
（运行创建、任务状态变化、运行结果）。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

import config
from dag.graph import DAG
from dag.registry import DagRegistry
from exceptions import MiniDagException
from runtime.engine import Engine
from runtime.task_runner import attempt_log_path
from scheduler.loop import SchedulerLoop
from schema import DagRun, DagRunState, TaskInstance, TaskOutcome, ensure_utc, utcnow
from store.json_file import JsonFileStateStore

console = Console()

# Status -> Rich style mapping
# 状态 -> Rich 样式映射
_STATUS_STYLES = {
    "pending": "dim",
    "scheduled": "cyan",
    "queued": "blue",
    "running": "bold yellow",
    "success": "green",
    "failed": "red",
    "up_for_retry": "yellow",
    "upstream_failed": "dark_orange",
    "skipped": "dim strike",
    "cancelled": "magenta",
}

app = typer.Typer(
    name="minidag",
    help="minidag - a minimal DAG workflow orchestrator.",
    no_args_is_help=True,
    add_completion=False,
)
dags_app = typer.Typer(help="Inspect, trigger and test DAGs.", no_args_is_help=True)
tasks_app = typer.Typer(help="Inspect task instances and their logs.", no_args_is_help=True)
app.add_typer(dags_app, name="dags")
app.add_typer(tasks_app, name="tasks")


def _styled(state: str) -> str:
    style = _STATUS_STYLES.get(state, "white")
    return f"[{style}]{state}[/{style}]"


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


# ======================================================================
# UI Event Handler
# UI 事件处理器
# ======================================================================

def on_event(event: str, data: Any) -> None:
    """
    Render engine events on the console.
    将引擎事件渲染到控制台。
    """
    if event == "dag_run_created":
        run: DagRun = data
        console.print(f"[cyan]+ Created {run.run_id}[/cyan] [dim]({run.dag_id})[/dim]")

    elif event == "dag_run_started":
        run = data
        console.print(Panel(
            f"[bold]{run.dag_id}[/bold]  run_id={run.run_id}\n"
            f"interval: {run.data_interval_start.isoformat()} -> {run.data_interval_end.isoformat()}",
            title="[bold blue]DAG Run[/bold blue]",
            border_style="blue",
        ))

    elif event == "task_state":
        ti: TaskInstance = data
        if ti.state.value in ("scheduled", "queued"):
            return   # 中间状态不刷屏
        line = f"    {ti.task_id} [dim]try {ti.try_number}[/dim] -> {_styled(ti.state.value)}"
        if ti.error and ti.state.value in ("failed", "up_for_retry"):
            line += f" [dim]{ti.error[:120]}[/dim]"
        console.print(line)

    elif event == "task_outcome":
        outcome: TaskOutcome = data
        if outcome.success and outcome.return_value is not None:
            console.print(f"      [dim]return_value: {str(outcome.return_value)[:200]}[/dim]")

    elif event == "dag_run_finished":
        run = data
        style = _STATUS_STYLES.get(run.state.value, "white")
        console.print(Panel(
            f"{run.run_id}: [{style}]{run.state.value.upper()}[/{style}]",
            title=f"[bold]{run.dag_id}[/bold]",
            border_style=style,
        ))

    elif event == "dag_run_cancelled":
        console.print(f"[magenta]Cancelled {data.run_id}[/magenta]")

    elif event == "scheduler_error":
        console.print(f"[red]Scheduler error in {data['dag_id']}: {data['error']}[/red]")


# ======================================================================
# Helpers
# 辅助函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统，verbose=True 时启用 DEBUG 级别。
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _settings(ctx: typer.Context) -> dict[str, Any]:
    return ctx.obj or {"dags_folder": config.DAGS_FOLDER, "state_file": config.STATE_FILE}


def _open(ctx: typer.Context) -> tuple[DagRegistry, JsonFileStateStore]:
    settings = _settings(ctx)
    store = JsonFileStateStore(settings["state_file"])
    registry = DagRegistry(store)
    registry.collect_dags(settings["dags_folder"])
    return registry, store


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise typer.BadParameter(f"Not an ISO date: {value!r}") from None


def _find_run(store: JsonFileStateStore, dag_id: str, run_ref: str) -> DagRun:
    """
    Resolve a run id, an exact logical date or a calendar date to one run;
    the newest run wins when several match.
    按 run_id、精确逻辑日期或日历日期定位运行；匹配多个时取最新创建的。
    """
    runs = store.list_dag_runs(dag_id)
    for run in runs:
        if run.run_id == run_ref:
            return run
    when = _parse_date(run_ref)
    if len(run_ref) == 10:
        # 只给出日期：匹配该日（UTC）的所有运行
        matches = [r for r in runs if r.logical_date.date() == when.date()]
    else:
        matches = [r for r in runs if r.logical_date == when]
    if not matches:
        _fail(ValueError(f"No run of DAG '{dag_id}' matches {run_ref!r}"))
    return max(matches, key=lambda r: r.created_at)


def _parse_conf(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        conf = json.loads(value)
    except ValueError as exc:
        raise typer.BadParameter(f"--conf must be a JSON object: {exc}") from None
    if not isinstance(conf, dict):
        raise typer.BadParameter("--conf must be a JSON object")
    return conf


def _fail(exc: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=1)


def _build_task_tree(dag: DAG) -> Tree:
    """
    Rich Tree of the DAG: roots at the top, downstream tasks nested.
    以树形展示 DAG：根任务在最上层，下游任务嵌套显示。
    """
    tree = Tree(f"[bold]{dag.dag_id}[/bold] [dim]{dag.timetable.summary}[/dim]")
    shown: set[str] = set()

    def add(branch: Tree, task_id: str) -> None:
        task = dag.get_task(task_id)
        label = f"[cyan]{task_id}[/cyan] [dim]{type(task).__name__}, {task.trigger_rule.value}[/dim]"
        if task_id in shown:
            branch.add(f"{label} [dim](see above)[/dim]")
            return
        shown.add(task_id)
        child = branch.add(label)
        for down in sorted(dag.downstream_ids(task_id), key=dag.task_ids.index):
            add(child, down)

    for root in dag.roots:
        add(tree, root)
    return tree


def _instances_table(title: str, instances: list[TaskInstance]) -> Table:
    table = Table(title=title, border_style="cyan")
    table.add_column("Task", style="cyan")
    table.add_column("State")
    table.add_column("Try", justify="right")
    table.add_column("Start", style="dim")
    table.add_column("Duration", justify="right", style="dim")
    table.add_column("Error", style="dim", overflow="fold")
    for ti in instances:
        duration = f"{ti.duration:.2f}s" if ti.duration is not None else "-"
        table.add_row(
            ti.task_id, _styled(ti.state.value), f"{ti.try_number}/{ti.max_tries + 1}",
            _fmt_time(ti.start_date), duration, (ti.error or "")[:80],
        )
    return table


# ======================================================================
# Global options
# 全局选项
# ======================================================================

@app.callback()
def main_cli(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging."),
    dags_folder: Optional[str] = typer.Option(None, "--dags-folder", help="Folder to load DAG files from."),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="JSON state file."),
):
    """
    minidag CLI. Global options are handled here.
    minidag 命令行，全局选项在此处理。
    """
    setup_logging(verbose)
    ctx.obj = {
        "dags_folder": os.path.expanduser(dags_folder or config.DAGS_FOLDER),
        "state_file": os.path.expanduser(state_file or config.STATE_FILE),
    }


# ======================================================================
# dags
# ======================================================================

@dags_app.command("list")
def dags_list(ctx: typer.Context):
    """List registered DAGs. / 列出已注册的 DAG。"""
    registry, _ = _open(ctx)
    table = Table(title="DAGs", border_style="cyan")
    table.add_column("DAG", style="cyan")
    table.add_column("Schedule")
    table.add_column("Tasks", justify="right")
    table.add_column("Paused")
    table.add_column("Tags", style="dim")
    table.add_column("File", style="dim")
    for dag in registry.list():
        paused = registry.is_paused(dag.dag_id)
        table.add_row(
            dag.dag_id, dag.timetable.summary, str(len(dag.task_dict)),
            "[yellow]yes[/yellow]" if paused else "no", ", ".join(dag.tags), os.path.basename(dag.fileloc),
        )
    console.print(table)
    for path, error in registry.import_errors.items():
        console.print(Panel(error, title=f"[red]Import error: {path}[/red]", border_style="red"))


@dags_app.command("trigger")
def dags_trigger(
    ctx: typer.Context,
    dag_id: str = typer.Argument(..., help="DAG to trigger."),
    conf: Optional[str] = typer.Option(None, "--conf", "-c", help="JSON object passed as dag_run.conf."),
    logical_date: Optional[str] = typer.Option(None, "--logical-date", "-l", help="ISO logical date."),
):
    """Create a manual DAG run; a running scheduler executes it. / 创建手动运行，由运行中的调度器执行。"""
    registry, store = _open(ctx)
    try:
        run = SchedulerLoop(registry, store).trigger(
            dag_id, logical_date=_parse_date(logical_date), conf=_parse_conf(conf),
        )
    except MiniDagException as exc:
        _fail(exc)
    console.print(f"[green]Triggered[/green] {run.run_id} [dim](logical date {run.logical_date.isoformat()})[/dim]")


@dags_app.command("test")
def dags_test(
    ctx: typer.Context,
    dag_id: str = typer.Argument(..., help="DAG to run."),
    conf: Optional[str] = typer.Option(None, "--conf", "-c", help="JSON object passed as dag_run.conf."),
    logical_date: Optional[str] = typer.Option(None, "--logical-date", "-l", help="ISO logical date."),
    executor: Optional[str] = typer.Option(None, "--executor", "-e", help="sequential | local | queued"),
):
    """Run one DAG run in-process until it finishes. / 在当前进程内运行一次 DAG 直到结束。"""
    registry, store = _open(ctx)
    engine = Engine(registry=registry, store=store, executor=executor, on_event=on_event)

    async def _run() -> DagRun:
        try:
            return await engine.run_dag(dag_id, logical_date=_parse_date(logical_date), conf=_parse_conf(conf))
        finally:
            await engine.shutdown()

    try:
        run = asyncio.run(_run())
    except MiniDagException as exc:
        _fail(exc)
    console.print(_instances_table(f"{dag_id} / {run.run_id}", store.list_task_instances(run.run_id)))
    if run.state != DagRunState.SUCCESS:
        raise typer.Exit(code=1)


@dags_app.command("runs")
def dags_runs(
    ctx: typer.Context,
    dag_id: str = typer.Argument(...),
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Filter by run state."),
):
    """List runs of a DAG. / 列出某个 DAG 的运行记录。"""
    _, store = _open(ctx)
    try:
        run_state = DagRunState(state) if state else None
    except ValueError:
        raise typer.BadParameter(f"Unknown state {state!r}") from None
    table = Table(title=f"Runs of {dag_id}", border_style="cyan")
    table.add_column("Run ID", style="cyan")
    table.add_column("State")
    table.add_column("Type")
    table.add_column("Logical date")
    table.add_column("Start", style="dim")
    table.add_column("End", style="dim")
    for run in store.list_dag_runs(dag_id, run_state):
        table.add_row(
            run.run_id, _styled(run.state.value), run.run_type.value,
            run.logical_date.isoformat(), _fmt_time(run.start_date), _fmt_time(run.end_date),
        )
    console.print(table)


@dags_app.command("delete")
def dags_delete(
    ctx: typer.Context,
    dag_id: str = typer.Argument(...),
    run_id: str = typer.Argument(..., help="Run to delete."),
    force: bool = typer.Option(False, "--force", "-f", help="Cancel the run first if it is still active."),
):
    """Delete one run with its task instances and XComs. / 删除一次运行及其任务实例与 XCom。"""
    _, store = _open(ctx)
    try:
        run = store.get_dag_run(run_id)
    except MiniDagException as exc:
        _fail(exc)
    if run.dag_id != dag_id:
        _fail(ValueError(f"Run '{run_id}' belongs to DAG '{run.dag_id}', not '{dag_id}'"))
    if run.is_active:
        if not force:
            _fail(ValueError(f"Run '{run_id}' is still {run.state.value}; pass --force to cancel and delete it"))
        store.set_dag_run_state(run_id, run.state, DagRunState.CANCELLED, end_date=utcnow())
    try:
        store.delete_dag_run(run_id)
    except MiniDagException as exc:
        _fail(exc)
    console.print(f"[red]Deleted[/red] {run_id}")


@dags_app.command("pause")
def dags_pause(ctx: typer.Context, dag_id: str = typer.Argument(...)):
    """Stop scheduling new runs of a DAG. / 暂停 DAG 的调度。"""
    registry, _ = _open(ctx)
    try:
        registry.pause(dag_id)
    except MiniDagException as exc:
        _fail(exc)
    console.print(f"[yellow]Paused[/yellow] {dag_id}")


@dags_app.command("unpause")
def dags_unpause(ctx: typer.Context, dag_id: str = typer.Argument(...)):
    """Resume scheduling a DAG. / 恢复 DAG 的调度。"""
    registry, _ = _open(ctx)
    try:
        registry.unpause(dag_id)
    except MiniDagException as exc:
        _fail(exc)
    console.print(f"[green]Unpaused[/green] {dag_id}")


# ======================================================================
# tasks
# ======================================================================

@tasks_app.command("list")
def tasks_list(ctx: typer.Context, dag_id: str = typer.Argument(...)):
    """Show the tasks of a DAG as a tree. / 以树形展示 DAG 的任务。"""
    registry, _ = _open(ctx)
    try:
        dag = registry.get(dag_id)
    except MiniDagException as exc:
        _fail(exc)
    console.print(_build_task_tree(dag))


@tasks_app.command("states")
def tasks_states(ctx: typer.Context, dag_id: str = typer.Argument(...), run_id: str = typer.Argument(...)):
    """Task instance states of one run. / 某次运行中各任务实例的状态。"""
    _, store = _open(ctx)
    try:
        run = store.get_dag_run(run_id)
    except MiniDagException as exc:
        _fail(exc)
    if run.dag_id != dag_id:
        _fail(ValueError(f"Run '{run_id}' belongs to DAG '{run.dag_id}', not '{dag_id}'"))
    console.print(_instances_table(f"{dag_id} / {run_id} ({run.state.value})", store.list_task_instances(run_id)))


@tasks_app.command("logs")
def tasks_logs(
    ctx: typer.Context,
    dag_id: str = typer.Argument(...),
    task_id: str = typer.Argument(...),
    run_ref: str = typer.Argument(..., help="Run id, ISO logical date, or a date (YYYY-MM-DD)."),
    attempt: Optional[int] = typer.Option(None, "--attempt", "-a", help="Attempt number; defaults to the latest."),
):
    """Print the log of one task attempt. / 打印某个任务尝试的日志。"""
    _, store = _open(ctx)
    run = _find_run(store, dag_id, run_ref)
    try:
        ti = store.get_task_instance(run.run_id, task_id)
    except MiniDagException as exc:
        _fail(exc)
    number = attempt or ti.try_number
    if number < 1:
        _fail(ValueError(f"Task '{task_id}' has not run yet in {run.run_id}"))
    if attempt is None and ti.log_path:
        path = ti.log_path
    else:
        path = attempt_log_path(config.LOG_FOLDER, dag_id, run.run_id, task_id, number)
    if not os.path.exists(path):
        _fail(FileNotFoundError(f"No log for attempt {number}: {path}"))
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    console.print(Panel(content.rstrip() or "(empty)", title=f"{task_id} attempt {number}", border_style="dim"))


# ======================================================================
# scheduler
# ======================================================================

@app.command("scheduler")
def scheduler_cmd(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single scheduling tick and exit."),
    executor: Optional[str] = typer.Option(None, "--executor", "-e", help="sequential | local | queued"),
):
    """Run the scheduler and the run driver until interrupted. / 运行调度器与运行驱动，直到被中断。"""
    registry, store = _open(ctx)
    if once:
        created = SchedulerLoop(registry, store, on_event=on_event).run_once()
        console.print(f"[dim]{len(created)} run(s) created[/dim]")
        return

    engine = Engine(registry=registry, store=store, executor=executor, on_event=on_event)

    async def _serve() -> None:
        try:
            await engine.run_forever()
        finally:
            await engine.shutdown()

    console.print(Panel(
        f"DAGs folder: {_settings(ctx)['dags_folder']}\nState file: {store.path}\n"
        f"Executor: {engine.executor.name}  Tick: {engine.scheduler.tick_seconds}s",
        title="[bold blue]minidag scheduler[/bold blue]",
        border_style="blue",
    ))
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\n[dim]Scheduler stopped.[/dim]")


if __name__ == "__main__":
    app()
