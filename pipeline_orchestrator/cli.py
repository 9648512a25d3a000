"""
Command-line entry point.

    pipeline-orchestrator run pipeline.yml -j 4 --retry-limit 2
    pipeline-orchestrator validate pipeline.yml
    pipeline-orchestrator plan pipeline.yml
"""
from __future__ import annotations

import os
import signal
import threading
from pathlib import Path
from typing import List, Optional

import anyio
import typer

from .config import ErrorPolicy, load_config
from .errors import ConfigError, DefinitionError
from .graph import build_graph
from .loader import load_pipeline
from .logs import configure_logging
from .models import JobDescriptor, RunResult, RunStatus
from .orchestrator import PipelineOrchestrator
from .store import JobDescriptorStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130

app = typer.Typer(help="Run CI/CD pipelines as dependency graphs of jobs", no_args_is_help=True)

_STATUS_COLORS = {
    "succeeded": typer.colors.GREEN,
    "failed": typer.colors.RED,
    "cancelled": typer.colors.YELLOW,
    "skipped": typer.colors.BRIGHT_BLACK,
}


def _load(file: Path) -> List[JobDescriptor]:
    try:
        descriptors = load_pipeline(file)
        build_graph(JobDescriptorStore(descriptors))
    except DefinitionError as e:
        typer.secho(f"Invalid pipeline: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_INVALID)
    return descriptors


async def _watch_signals(orch: PipelineOrchestrator, run_id: str) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            orch.cancel(run_id, f"received {signal.Signals(signum).name}")


async def _execute(orch: PipelineOrchestrator, descriptors: List[JobDescriptor]) -> RunResult:
    ctx = orch.prepare(descriptors)
    # Signal handlers can only be installed from the main thread
    watch = os.name == "posix" and threading.current_thread() is threading.main_thread()
    async with anyio.create_task_group() as tg:
        if watch:
            tg.start_soon(_watch_signals, orch, ctx.run_id)
        result = await orch.execute(ctx)
        tg.cancel_scope.cancel()
    return result


def _print_summary(result: RunResult) -> None:
    color = _STATUS_COLORS.get(result.status.value)
    typer.secho(f"Run {result.run_id[:8]} {result.status.value}", fg=color, bold=True)
    if result.cancel_reason:
        typer.echo(f"  reason: {result.cancel_reason}")
    width = max((len(jid) for jid in result.states), default=0)
    for jid, state in sorted(result.states.items()):
        line = f"  {jid.ljust(width)}  {state.status.value:<9}  attempts={state.attempts}"
        detail = state.last_error if state.status.value == "failed" else state.reason
        if detail:
            line += f"  ({detail})"
        typer.secho(line, fg=_STATUS_COLORS.get(state.status.value))


@app.command()
def run(
    file: Path = typer.Argument(..., help="Pipeline definition (YAML or JSON)"),
    max_concurrency: Optional[int] = typer.Option(None, "--max-concurrency", "-j", min=1, help="Total job weight allowed to run at once"),
    retry_limit: Optional[int] = typer.Option(None, "--retry-limit", min=0, help="Cap on every job's max_retries"),
    fail_fast: Optional[bool] = typer.Option(None, "--fail-fast/--no-fail-fast", help="Cancel the run when a job fails"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Orchestrator configuration file"),
    log_level: str = typer.Option("info", "--log-level", help="debug, info, warning or error"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    """Run a pipeline and exit with its status."""
    try:
        configure_logging(log_level, json_logs)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level")

    try:
        cfg = load_config(config)
        if fail_fast is not None:
            cfg = cfg.with_overrides(error_policy=ErrorPolicy.FAIL_FAST if fail_fast else ErrorPolicy.CONTINUE)
        cfg = cfg.with_overrides(max_concurrency=max_concurrency, retry_retry_limit=retry_limit)
    except ConfigError as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_INVALID)

    descriptors = _load(file)
    orch = PipelineOrchestrator(cfg)
    result = anyio.run(_execute, orch, descriptors)
    _print_summary(result)

    if result.status is RunStatus.FAILED:
        raise typer.Exit(EXIT_FAILED)
    if result.status is RunStatus.CANCELLED:
        raise typer.Exit(EXIT_CANCELLED)


@app.command()
def validate(file: Path = typer.Argument(..., help="Pipeline definition (YAML or JSON)")) -> None:
    """Check a pipeline definition without running it."""
    descriptors = _load(file)
    typer.secho(f"{file}: OK ({len(descriptors)} jobs)", fg=typer.colors.GREEN)


@app.command()
def plan(file: Path = typer.Argument(..., help="Pipeline definition (YAML or JSON)")) -> None:
    """Print the stages in which jobs become runnable."""
    descriptors = _load(file)
    graph = build_graph(JobDescriptorStore(descriptors))
    for i, level in enumerate(graph.levels(), start=1):
        typer.echo(f"stage {i}: {', '.join(level)}")


if __name__ == "__main__":
    app()
