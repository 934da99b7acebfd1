"""procwatch command line: child entry point, launcher and watchdog."""

import importlib
import json
from typing import Any

import typer

from procwatch.errors import ProcwatchError, SchedulingError, SerializationError
from procwatch.launcher import LauncherConfig, ProcessLauncher
from procwatch.logging import configure_logging, get_logger
from procwatch.models import Job
from procwatch.platform import PosixPlatform
from procwatch.proctable import ProcessTableReader, make_reader
from procwatch.queue import SqliteDelayQueue
from procwatch.runner import execute, parse_assignments
from procwatch.settings import ProcwatchSettings, load_settings
from procwatch.watchdog import ProcessWatchdog

app = typer.Typer(
    name="procwatch",
    help="Launch detached jobs and kill them when their time budget runs out.",
    no_args_is_help=True,
)


def build_reader(settings: ProcwatchSettings, platform: PosixPlatform) -> ProcessTableReader:
    return make_reader(settings.snapshot_source, platform, settings.process_filter or None)


def build_queue(settings: ProcwatchSettings) -> SqliteDelayQueue:
    return SqliteDelayQueue(
        settings.queue_path,
        name=settings.queue_name,
        time_in_flight=settings.time_in_flight,
    )


def resolve_callable(target: str) -> Any:
    """Import ``module:attribute`` (dots allowed in the attribute path)."""
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise typer.BadParameter(f"Expected MODULE:FUNCTION, got {target!r}")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in attribute.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"Cannot import {target!r}: {exc}") from exc
    return obj


@app.callback()
def main_callback(ctx: typer.Context) -> None:
    """Load settings and configure logging for every command."""
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    ctx.obj = settings


@app.command("run")
def run_command(
    payload: str = typer.Argument(..., help="Serialized job."),
    token: str = typer.Argument(..., help="Correlation token for logs."),
    assignments: list[str] | None = typer.Argument(None, help="NAME=VALUE pairs."),
) -> None:
    """Run a serialized job in this process (used by launched children)."""
    assignments = assignments or []
    try:
        parse_assignments(assignments)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        execute(payload, token, assignments)
    except SerializationError as exc:
        typer.echo(f"procwatch: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    except Exception as exc:
        # already logged as job_failed
        raise typer.Exit(code=1) from exc


@app.command("launch")
def launch_command(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Job callable as MODULE:FUNCTION."),
    value: str | None = typer.Option(None, "--value", help="JSON argument for the job."),
    budget: int | None = typer.Option(
        None, "--budget", min=1, help="Kill the job after this many seconds."
    ),
) -> None:
    """Launch a job in a detached process."""
    settings: ProcwatchSettings = ctx.obj
    callback = resolve_callable(target)
    try:
        argument = json.loads(value) if value is not None else None
    except ValueError as exc:
        raise typer.BadParameter(f"--value is not JSON: {exc}") from exc

    platform = PosixPlatform()
    try:
        launcher = ProcessLauncher(
            config=LauncherConfig.from_settings(settings),
            queue=build_queue(settings) if budget is not None else None,
            reader=build_reader(settings, platform),
            platform=platform,
        )
        result = launcher.launch(Job(callback, argument), time_budget=budget)
    except SchedulingError as exc:
        typer.echo(f"pid={exc.result.pid} kill=unscheduled ({exc})", err=True)
        raise typer.Exit(code=1) from exc
    except ProcwatchError as exc:
        typer.echo(f"procwatch: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    kill = result.kill_request.fingerprint.id if result.kill_scheduled else "none"
    typer.echo(f"pid={result.pid} token={result.token} kill={kill}")


@app.command("watchdog")
def watchdog_command(
    ctx: typer.Context,
    max_messages: int | None = typer.Option(
        None, "--max-messages", min=1, help="Override the per-pass request cap."
    ),
) -> None:
    """Run one watchdog pass over due kill requests."""
    settings: ProcwatchSettings = ctx.obj
    logger = get_logger(__name__)
    platform = PosixPlatform()
    try:
        watchdog = ProcessWatchdog(
            queue=build_queue(settings),
            reader=build_reader(settings, platform),
            platform=platform,
            max_messages=max_messages or settings.max_messages_per_run,
        )
        report = watchdog.run()
    except ProcwatchError as exc:
        logger.error("watchdog_pass_aborted", error=str(exc))
        raise typer.Exit(code=1) from exc

    typer.echo(
        f"received={report.received} killed={report.killed} "
        f"already_gone={report.already_gone} failed={report.failed} dropped={report.dropped}"
    )
    if report.failed:
        raise typer.Exit(code=3)


@app.command("ps")
def ps_command(ctx: typer.Context) -> None:
    """Print the filtered process table with fingerprints."""
    settings: ProcwatchSettings = ctx.obj
    try:
        snapshot = build_reader(settings, PosixPlatform()).snapshot()
    except ProcwatchError as exc:
        typer.echo(f"procwatch: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    for entry in snapshot:
        typer.echo(f"{entry.fingerprint.id}\t{entry.command_line}")


def main() -> None:
    """Entry point for the procwatch command."""
    app()


if __name__ == "__main__":
    main()
