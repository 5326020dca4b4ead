"""Typer-powered command line for ``nexusctl``.

Each subcommand maps onto one fleet operation (build, start, add-one, list,
logs, restart, remove, stop-all). Running ``nexusctl`` without a subcommand
opens the interactive menu, which drives the same helpers. All commands run
inside a structured operation scope so every action lands in the operations
log with its steps and outcome.
"""
from __future__ import annotations

import logging
import os
import textwrap
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn, cast

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .image import BuildResult, ImageBuildError, ImageBuilder
from .instances import (
    Conflict,
    ConflictDetected,
    ConflictPolicy,
    CreateResult,
    CreationFailed,
    Instance,
    InstanceManager,
    InstanceNotFound,
    RestartResult,
    format_uptime,
)
from .logging import OperationScope, StructuredLogger
from .logsink import LogSink
from .node_ids import InvalidFormat, ask_numeric, prompt_node_id, validate_node_id
from .prompts import ConsoleInput, InputProvider
from .providers import ContainerRuntime, ContainerRuntimeError, DockerProvider, RuntimeUnavailable
from .templates import TemplateEngine

console = Console()

MEMINFO_PATH = Path("/proc/meminfo")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nexusctl's YAML config file.",
)

ON_CONFLICT_OPTION = typer.Option(
    "ask",
    "--on-conflict",
    help="When a node id or slot is already in use: ask, replace or skip.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit structured JSON instead of a table.",
)

TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    min=1,
    help="Seconds to wait for a graceful restart before forcing stop+start.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation.",
)

MENU_OPTIONS: tuple[tuple[str, str], ...] = (
    ("1", "Build image"),
    ("2", "Start instances"),
    ("3", "Stop all"),
    ("4", "Live logs"),
    ("5", "Restart nodes"),
    ("6", "Add instance"),
    ("7", "Update image"),
    ("0", "Exit"),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Build the Nexus worker image and manage a fleet of worker containers.

        Run without a subcommand to open the interactive menu.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runtime: ContainerRuntime
    sink: LogSink
    manager: InstanceManager
    builder: ImageBuilder
    input: InputProvider


def build_runtime_context(
    config: AppConfig,
    *,
    runtime: ContainerRuntime | None = None,
    input_provider: InputProvider | None = None,
) -> RuntimeContext:
    """Wire providers and the instance manager from *config*."""
    docker = DockerProvider(
        docker_bin=config.docker.docker_bin,
        command_timeout=config.docker.command_timeout,
    )
    container_runtime: ContainerRuntime = runtime if runtime is not None else docker
    sink = LogSink(config.logs_dir)
    manager = InstanceManager(
        runtime=container_runtime,
        sink=sink,
        worker=config.worker,
        restart_config=config.restart,
    )
    builder = ImageBuilder(
        docker=docker,
        templates=TemplateEngine.with_overrides(config.templates_dir),
        build_dir=config.build_dir,
        worker=config.worker,
    )
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.ops_logs_dir),
        runtime=container_runtime,
        sink=sink,
        manager=manager,
        builder=builder,
        input=input_provider or ConsoleInput(),
    )


def _init_directories(config: AppConfig) -> None:
    for directory in (config.base_dir, config.build_dir, config.logs_dir):
        directory.mkdir(parents=True, exist_ok=True)
    # Containers write into the log directory through a bind mount.
    os.chmod(config.logs_dir, 0o755)


def _configure_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("nexusctl")
    if not package_logger.handlers:
        package_logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
        _init_directories(config)
    except (ConfigError, OSError) as exc:
        console.print(f"[red]Setup failed: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    runtime = build_runtime_context(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nexusctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print diagnostic log messages.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"nexusctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    runtime = _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        _run_menu(runtime)
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _runtime_errors(op: OperationScope) -> Iterator[None]:
    """Translate container runtime failures into CLI exits."""
    try:
        yield
    except RuntimeUnavailable as exc:
        _command_error(op, f"Container runtime unavailable: {exc}", rc=ExitCode.ENVIRONMENT)
    except ContainerRuntimeError as exc:
        _command_error(op, f"Container runtime error: {exc}", rc=ExitCode.PROVIDER)


def _require_available(runtime: RuntimeContext, op: OperationScope) -> None:
    runtime.runtime.ensure_available()
    op.add_step("runtime.check", status="success")


def _conflict_policy(
    choice: str,
    input_provider: InputProvider,
) -> ConflictPolicy | Callable[[Conflict], ConflictPolicy]:
    normalized = choice.strip().lower()
    if normalized == ConflictPolicy.REPLACE.value:
        return ConflictPolicy.REPLACE
    if normalized == ConflictPolicy.SKIP.value:
        return ConflictPolicy.SKIP
    if normalized != "ask":
        raise typer.BadParameter(
            f"Unsupported conflict policy '{choice}'. Use ask, replace or skip.",
            param_hint="--on-conflict",
        )

    def _ask(conflict: Conflict) -> ConflictPolicy:
        if conflict.reason == "slot":
            prompt = f"Container {conflict.handle} already exists. Replace it?"
        else:
            prompt = (
                f"Node id {conflict.node_id} already runs as {conflict.handle}. Replace it?"
            )
        if input_provider.confirm(prompt, default=False):
            return ConflictPolicy.REPLACE
        return ConflictPolicy.SKIP

    return _ask


def _instance_payload(runtime: RuntimeContext, instance: Instance) -> dict[str, object]:
    uptime = instance.uptime()
    return {
        "slot": instance.slot,
        "name": instance.handle,
        "node_id": instance.node_id,
        "status": instance.status.value,
        "started_at": instance.started_at.isoformat() if instance.started_at else None,
        "uptime_seconds": int(uptime.total_seconds()) if uptime is not None else None,
        "restart_count": instance.restart_count,
        "tasks_completed": runtime.manager.count_completed_tasks(instance),
        "log_path": str(instance.log_path) if instance.log_path else None,
        "detail": instance.detail,
    }


def _available_memory() -> str:
    """Return the host's available memory as reported by the kernel, or ``?``."""
    try:
        meminfo = MEMINFO_PATH.read_text(encoding="utf-8")
    except OSError:
        return "?"
    for line in meminfo.splitlines():
        key, _, value = line.partition(":")
        fields = value.split()
        if key == "MemAvailable" and fields and fields[0].isdigit():
            return f"{int(fields[0]) / (1024 * 1024):.1f} GiB"
    return "?"


def _render_instances(runtime: RuntimeContext, instances: Sequence[Instance]) -> None:
    console.print(
        f"[bold]Host CPUs:[/bold] {os.cpu_count() or '?'}  "
        f"[bold]Free memory:[/bold] {_available_memory()}"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Slot", justify="right")
    table.add_column("Container", style="bold")
    table.add_column("Node ID")
    table.add_column("Status")
    table.add_column("Uptime")
    table.add_column("Tasks", justify="right")

    if not instances:
        table.add_row("", "(none)", "", "", "", "")
    for instance in instances:
        status = instance.status.value
        if instance.detail:
            status = f"{status} ({instance.detail})"
        table.add_row(
            str(instance.slot),
            instance.handle,
            str(instance.node_id) if instance.node_id is not None else "-",
            status,
            format_uptime(instance.uptime()),
            str(runtime.manager.count_completed_tasks(instance)),
        )
    console.print(table)


def _choose_target(
    runtime: RuntimeContext,
    instances: Sequence[Instance],
    *,
    allow_all: bool,
) -> int | str | None:
    """Let the operator pick an instance by position; ``None`` means go back."""
    for position, instance in enumerate(instances, start=1):
        node = instance.node_id if instance.node_id is not None else "unset"
        console.print(
            f"[{position}] {instance.handle} (status: {instance.status.value} | node-id: {node})",
            markup=False,
        )
    if allow_all:
        console.print("[a] All instances", markup=False)
    console.print("[0] Back", markup=False)

    answer = runtime.input.ask("Select").strip().lower()
    if answer in {"", "0"}:
        return None
    if allow_all and answer in {"a", "all"}:
        return "all"
    if answer.isascii() and answer.isdigit() and 1 <= int(answer) <= len(instances):
        return instances[int(answer) - 1].slot
    runtime.input.notify("Invalid selection.")
    return None


# ----------------------------------------------------------------------
# Image
# ----------------------------------------------------------------------
def _report_build(op: OperationScope, result: BuildResult) -> None:
    op.add_step("docker.build", status="success", detail=result.image)
    if result.version:
        op.add_step("worker.version", status="success", detail=result.version)
        console.print(f"[green]Image {result.image} ready.[/green] Worker version: {result.version}")
        op.success("Image built.", changed=1, context={"version": result.version})
        return
    op.add_step("worker.version", status="warning", detail=result.version_error)
    console.print(f"[green]Image {result.image} ready.[/green]")
    console.print(f"[yellow]Version check failed: {result.version_error}[/yellow]")
    op.warning(
        "Image built; version check failed.",
        warnings=[result.version_error or "version check failed"],
        changed=1,
    )


def _do_build(runtime: RuntimeContext, *, yes: bool) -> None:
    image = runtime.config.worker.image
    with runtime.logger.operation(
        "build",
        args={"yes": yes},
        target={"kind": "image", "name": image},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            if runtime.builder.image_exists() and not yes:
                if not runtime.input.confirm(f"Image {image} already exists. Rebuild?"):
                    console.print("Keeping the existing image.")
                    op.success("Existing image kept.", changed=0)
                    return
            console.print(f"Building {image} without cache...")
            try:
                result = runtime.builder.build(no_cache=True)
            except ImageBuildError as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)
            _report_build(op, result)


def _do_update(runtime: RuntimeContext) -> None:
    image = runtime.config.worker.image
    with runtime.logger.operation(
        "update",
        target={"kind": "image", "name": image},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            console.print(f"Updating {image} to the latest upstream sources...")
            try:
                result = runtime.builder.update()
            except ImageBuildError as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)
            _report_build(op, result)


@app.command()
def build(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Render the build context and build the worker image from scratch."""
    _do_build(_get_runtime(ctx), yes=yes)


@app.command()
def update(ctx: typer.Context) -> None:
    """Rebuild the worker image using the layer cache."""
    _do_update(_get_runtime(ctx))


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------
def _render_create_results(results: Sequence[CreateResult]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Node ID", justify="right")
    table.add_column("Outcome")
    table.add_column("Container")
    table.add_column("Detail")
    styles = {"created": "green", "replaced": "green", "skipped": "yellow", "failed": "red"}
    for result in results:
        style = styles.get(result.outcome, "white")
        table.add_row(
            str(result.node_id),
            f"[{style}]{result.outcome}[/{style}]",
            result.instance.handle if result.instance else "",
            result.error or (result.instance.status.value if result.instance else ""),
        )
    console.print(table)


def _do_start(
    runtime: RuntimeContext,
    count: int,
    node_ids: Sequence[str],
    on_conflict: str,
) -> None:
    policy = _conflict_policy(on_conflict, runtime.input)
    with runtime.logger.operation(
        "start",
        args={"count": count, "node_ids": list(node_ids), "on_conflict": on_conflict},
        target={"kind": "instance", "scope": "batch"},
    ) as op:
        if len(node_ids) > count:
            _command_error(op, f"Received {len(node_ids)} node ids for {count} instances.")
        parsed: list[int] = []
        try:
            for raw in node_ids:
                parsed.append(validate_node_id(raw))
            for position in range(len(parsed) + 1, count + 1):
                parsed.append(prompt_node_id(runtime.input, f"node-id for instance {position}"))
        except InvalidFormat as exc:
            _command_error(op, str(exc))

        with _runtime_errors(op):
            _require_available(runtime, op)
            results = runtime.manager.start_instances(parsed, policy=policy)

        for result in results:
            status = "success" if result.ok else ("skipped" if result.outcome == "skipped" else "error")
            op.add_step(f"instance.create.{result.node_id}", status=status, detail=result.error)
        _render_create_results(results)

        created = sum(1 for result in results if result.ok)
        failed = [result.error for result in results if result.outcome == "failed"]
        skipped = [result.error for result in results if result.outcome == "skipped"]
        if failed:
            op.warning(
                f"Created {created} of {count} instances.",
                warnings=skipped,
                errors=failed,
                changed=created,
            )
            raise typer.Exit(code=ExitCode.PROVIDER)
        if skipped:
            op.warning(f"Created {created} of {count} instances.", warnings=skipped, changed=created)
            return
        op.success(f"Created {created} instances.", changed=created)


def _do_add_one(
    runtime: RuntimeContext,
    node_id: str | None,
    slot: int | None,
    on_conflict: str,
) -> None:
    policy = _conflict_policy(on_conflict, runtime.input)
    with runtime.logger.operation(
        "add-one",
        args={"node_id": node_id, "slot": slot, "on_conflict": on_conflict},
        target={"kind": "instance", "slot": slot},
    ) as op:
        try:
            parsed = (
                validate_node_id(node_id)
                if node_id is not None
                else prompt_node_id(runtime.input, "node-id (digits only)")
            )
        except InvalidFormat as exc:
            _command_error(op, str(exc))

        with _runtime_errors(op):
            _require_available(runtime, op)
            try:
                instance = runtime.manager.create_instance(parsed, policy=policy, slot=slot)
            except ConflictDetected as exc:
                _command_error(op, f"Skipped: {exc}")
            except CreationFailed as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        op.add_step("instance.create", status="success", detail=instance.handle)
        console.print(
            f"[green]Instance {instance.handle} started[/green] "
            f"(node-id {parsed}, threads {runtime.config.worker.max_threads}, "
            f"status {instance.status.value})."
        )
        op.success(
            "Instance created.",
            changed=1,
            context={"slot": instance.slot, "name": instance.handle, "node_id": parsed},
        )


@app.command()
def start(
    ctx: typer.Context,
    count: int = typer.Argument(..., min=1, help="Number of instances to create."),
    node_ids: list[str] | None = typer.Option(
        None,
        "--node-id",
        "-n",
        help="Node id for the next instance (repeatable); missing ids are prompted for.",
    ),
    on_conflict: str = ON_CONFLICT_OPTION,
) -> None:
    """Create COUNT instances one at a time."""
    _do_start(_get_runtime(ctx), count, node_ids or [], on_conflict)


@app.command("add-one")
def add_one(
    ctx: typer.Context,
    node_id: str | None = typer.Option(
        None,
        "--node-id",
        "-n",
        help="Node id for the new instance (prompted when omitted).",
    ),
    slot: int | None = typer.Option(
        None,
        "--slot",
        min=1,
        help="Use this slot instead of the next one after the highest in use.",
    ),
    on_conflict: str = ON_CONFLICT_OPTION,
) -> None:
    """Add a single instance in the next free slot."""
    _do_add_one(_get_runtime(ctx), node_id, slot, on_conflict)


# ----------------------------------------------------------------------
# Listing & logs
# ----------------------------------------------------------------------
def _do_list(runtime: RuntimeContext, *, json_output: bool) -> None:
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "fleet"},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            instances = runtime.manager.list_instances()

        if json_output:
            payload = [_instance_payload(runtime, instance) for instance in instances]
            console.print_json(data={"instances": payload})
            op.success("Reported instances as JSON.", changed=0)
            return

        _render_instances(runtime, instances)
        op.success("Reported instances.", changed=0)


def _show_logs(
    runtime: RuntimeContext,
    op: OperationScope,
    instance: Instance,
    *,
    lines: int,
    follow: bool,
    from_file: bool,
) -> str:
    """Print one instance's logs and return the summary for the operation log."""
    if from_file:
        if instance.log_path is None:
            _command_error(op, f"{instance.handle} has no readable node id.")
        console.rule(f"Log file: {instance.log_path}")
        for line in runtime.sink.tail(instance.log_path, lines):
            console.print(line, markup=False, highlight=False)
        op.add_step("logsink.tail", status="success", detail=str(instance.log_path))
        return "Read node log file."

    console.rule(f"Logs: {instance.handle}" + (" (Ctrl+C to stop)" if follow else ""))
    try:
        result = runtime.runtime.logs(instance.handle, tail=lines, follow=follow)
    except KeyboardInterrupt:
        console.print()
        op.add_step("docker.logs", status="success", detail=instance.handle)
        return "Stopped following logs."

    if not follow:
        stdout = (getattr(result, "stdout", "") or "").rstrip()
        stderr = (getattr(result, "stderr", "") or "").rstrip()
        if stdout:
            console.print(stdout, markup=False, highlight=False)
        if stderr:
            console.print(stderr, style="red", markup=False, highlight=False)
    op.add_step("docker.logs", status="success", detail=instance.handle)
    return "Fetched instance logs."


def _do_logs(
    runtime: RuntimeContext,
    slot: int | None,
    *,
    tail: int | None,
    follow: bool,
    from_file: bool = False,
) -> None:
    """Show logs for *slot*, or loop over a picker until the operator goes back."""
    lines = tail or runtime.config.log_tail
    with runtime.logger.operation(
        "logs",
        args={"slot": slot, "tail": lines, "follow": follow, "file": from_file},
        target={"kind": "instance", "slot": slot},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            if slot is not None:
                try:
                    instance = runtime.manager.get_instance(slot)
                except InstanceNotFound as exc:
                    _command_error(op, str(exc))
                summary = _show_logs(
                    runtime, op, instance, lines=lines, follow=follow, from_file=from_file
                )
                op.success(summary, changed=0)
                return

            viewed = 0
            while True:
                instances = runtime.manager.list_instances()
                if not instances:
                    console.print("[yellow]No instances found.[/yellow]")
                    break
                choice = _choose_target(runtime, instances, allow_all=False)
                if not isinstance(choice, int):
                    break
                try:
                    instance = runtime.manager.get_instance(choice)
                except InstanceNotFound as exc:
                    runtime.input.notify(str(exc))
                    continue
                _show_logs(runtime, op, instance, lines=lines, follow=follow, from_file=from_file)
                viewed += 1

        if viewed:
            op.success(f"Viewed logs of {viewed} instance(s).", changed=0)
        else:
            op.success("Log viewing cancelled.", changed=0)


@app.command("list")
def list_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show every instance with node id, status, uptime and completed tasks."""
    _do_list(_get_runtime(ctx), json_output=json_output)


@app.command()
def logs(
    ctx: typer.Context,
    slot: int | None = typer.Argument(None, min=1, help="Slot to show (prompted when omitted)."),
    tail: int | None = typer.Option(
        None,
        "--tail",
        min=1,
        help="Number of trailing lines to show (default from config).",
    ),
    follow: bool = typer.Option(
        True,
        "--follow/--no-follow",
        help="Keep streaming new output until interrupted.",
    ),
    from_file: bool = typer.Option(
        False,
        "--file",
        help="Show the node log file instead of container output.",
    ),
) -> None:
    """Show container output for one instance."""
    _do_logs(_get_runtime(ctx), slot, tail=tail, follow=follow, from_file=from_file)


# ----------------------------------------------------------------------
# Restart & teardown
# ----------------------------------------------------------------------
def _render_restart_results(results: Sequence[RestartResult]) -> None:
    for result in results:
        how = " via stop+start" if result.escalated else ""
        if result.ok:
            console.print(f"[green]{result.handle} restarted{how}.[/green]")
        else:
            console.print(f"[red]{result.handle} not restarted: {result.error}[/red]")


def _parse_restart_target(raw: str) -> int | str:
    normalized = raw.strip().lower()
    if normalized in {"a", "all"}:
        return "all"
    if normalized.isascii() and normalized.isdigit() and int(normalized) >= 1:
        return int(normalized)
    raise ValueError(f"Restart target must be a slot number or 'all', got {raw!r}.")


def _do_restart(runtime: RuntimeContext, target: str | None, timeout: float | None) -> None:
    with runtime.logger.operation(
        "restart",
        args={"target": target, "timeout": timeout},
        target={"kind": "instance", "slot": target},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            if target is None:
                instances = runtime.manager.list_instances()
                if not instances:
                    console.print("[yellow]No instances to restart.[/yellow]")
                    op.success("No instances to restart.", changed=0)
                    return
                choice = _choose_target(runtime, instances, allow_all=True)
                if choice is None:
                    op.success("Restart cancelled.", changed=0)
                    return
            else:
                try:
                    choice = _parse_restart_target(target)
                except ValueError as exc:
                    _command_error(op, str(exc))

            if choice == "all":
                results = runtime.manager.restart_all(timeout)
                if not results:
                    console.print("[yellow]No instances to restart.[/yellow]")
                    op.success("No instances to restart.", changed=0)
                    return
            else:
                slot = cast(int, choice)
                console.print(f"Restarting {runtime.manager.handle_for(slot)} ...")
                try:
                    results = [runtime.manager.restart(slot, timeout)]
                except InstanceNotFound as exc:
                    _command_error(op, str(exc))

        for result in results:
            op.add_step(
                f"instance.restart.{result.slot}",
                status="success" if result.ok else "error",
                detail=str(result.error) if result.error else result.status.value,
            )
        _render_restart_results(results)

        restarted = sum(1 for result in results if result.ok)
        failures = [str(result.error) for result in results if not result.ok]
        if failures:
            op.warning(
                f"Restarted {restarted} of {len(results)} instances.",
                errors=failures,
                changed=restarted,
            )
            raise typer.Exit(code=ExitCode.PROVIDER)
        op.success(f"Restarted {restarted} instances.", changed=restarted)


def _do_stop_all(runtime: RuntimeContext, *, graceful: bool) -> None:
    with runtime.logger.operation(
        "stop-all",
        args={"graceful": graceful},
        target={"kind": "instance", "scope": "fleet"},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            removed = runtime.manager.stop_all(graceful=graceful)
        op.add_step("docker.rm", status="success", detail=f"removed={removed}")
        console.print(f"Removed {removed} instance(s).")
        op.success(f"Removed {removed} instances.", changed=removed)


@app.command()
def restart(
    ctx: typer.Context,
    target: str | None = typer.Argument(
        None,
        help="Slot number or 'all' (prompted when omitted).",
    ),
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Restart one instance or all of them."""
    _do_restart(_get_runtime(ctx), target, timeout)


@app.command()
def remove(
    ctx: typer.Context,
    slot: int = typer.Argument(..., min=1, help="Slot of the instance to remove."),
    yes: bool = YES_OPTION,
) -> None:
    """Force-remove one instance, freeing its slot."""
    runtime = _get_runtime(ctx)
    name = runtime.manager.handle_for(slot)
    with runtime.logger.operation(
        "remove",
        args={"slot": slot, "yes": yes},
        target={"kind": "instance", "slot": slot, "name": name},
    ) as op:
        with _runtime_errors(op):
            _require_available(runtime, op)
            if not yes and not runtime.input.confirm(f"Remove {name}?"):
                console.print("Nothing removed.")
                op.success("Removal cancelled.", changed=0)
                return
            try:
                runtime.manager.remove(slot)
            except InstanceNotFound as exc:
                _command_error(op, str(exc))
        op.add_step("docker.rm", status="success", detail=name)
        console.print(f"[green]Removed {name}.[/green]")
        op.success("Instance removed.", changed=1)


@app.command("stop-all")
def stop_all(
    ctx: typer.Context,
    graceful: bool = typer.Option(
        False,
        "--graceful",
        help="Stop each container with the grace period before removing it.",
    ),
) -> None:
    """Remove every instance."""
    _do_stop_all(_get_runtime(ctx), graceful=graceful)


# ----------------------------------------------------------------------
# Interactive menu
# ----------------------------------------------------------------------
def _menu_start(runtime: RuntimeContext) -> None:
    try:
        count = ask_numeric(runtime.input, "How many instances to create")
    except InvalidFormat as exc:
        console.print(f"[red]{exc}[/red]")
        return
    if count < 1:
        console.print("Nothing to create.")
        return
    _do_start(runtime, count, [], "ask")


def _render_menu(runtime: RuntimeContext) -> None:
    console.rule(f"nexusctl {__version__} ({datetime.now(UTC):%Y-%m-%d %H:%M} UTC)")
    try:
        _render_instances(runtime, runtime.manager.list_instances())
    except RuntimeUnavailable as exc:
        console.print(f"[red]Container runtime unavailable: {exc}[/red]")
    except ContainerRuntimeError as exc:
        console.print(f"[red]Cannot list instances: {exc}[/red]")
    console.print(
        "  ".join(f"{key}. {label}" for key, label in MENU_OPTIONS),
        markup=False,
    )


def _run_menu(runtime: RuntimeContext) -> None:
    """Loop over the interactive menu until the operator exits."""
    try:
        runtime.runtime.ensure_available()
    except RuntimeUnavailable as exc:
        console.print(f"[red]Container runtime unavailable: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    actions: dict[str, Callable[[], None]] = {
        "1": lambda: _do_build(runtime, yes=False),
        "2": lambda: _menu_start(runtime),
        "3": lambda: _do_stop_all(runtime, graceful=False),
        "4": lambda: _do_logs(runtime, None, tail=None, follow=True),
        "5": lambda: _do_restart(runtime, None, None),
        "6": lambda: _do_add_one(runtime, None, None, "ask"),
        "7": lambda: _do_update(runtime),
    }
    while True:
        _render_menu(runtime)
        try:
            choice = runtime.input.ask("Choose an option").strip()
        except (typer.Abort, EOFError):
            console.print()
            return
        if choice == "0":
            console.print("Bye.")
            return
        action = actions.get(choice)
        if action is None:
            runtime.input.notify("Invalid option.")
            continue
        try:
            action()
        except typer.Exit:
            # Errors were already reported; stay in the menu.
            continue
        except typer.Abort:
            console.print()
            return
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted.[/yellow]")


@app.command()
def menu(ctx: typer.Context) -> None:
    """Open the interactive menu."""
    _run_menu(_get_runtime(ctx))


def main() -> None:  # pragma: no cover - exercised via console script
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime_context", "main"]
