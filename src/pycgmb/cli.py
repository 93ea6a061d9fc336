"""CLI entrypoint: ``cgmb``."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import click

from pycgmb import __version__
from pycgmb.config import ConfigError, Settings, load_settings
from pycgmb.core.errors import GraphError
from pycgmb.executor import WorkflowEngine, plan_graph
from pycgmb.layers import LayerRegistry
from pycgmb.models import ExecutionMode, LayerType, TaskGraph, WorkflowResult
from pycgmb.quota import QuotaMonitor
from pycgmb.storage import StorageError, open_run_log
from pycgmb.workflows import WorkflowKind, build_workflow

MODE_CHOICE = click.Choice([mode.value for mode in ExecutionMode])


def _configure_logging(settings: Settings, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _load_graph(path: Path) -> TaskGraph:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{path}: invalid JSON ({e})") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path}: workflow definition must be a JSON object")
    try:
        return TaskGraph.from_dict(data)
    except (AttributeError, TypeError, ValueError) as e:
        raise click.ClickException(f"{path}: malformed workflow definition ({e})") from e


async def _execute(
    settings: Settings, graph: TaskGraph, mode: str | None, record: bool
) -> WorkflowResult:
    run_log = await open_run_log(settings.run_log_url if record else "memory://")
    quota = QuotaMonitor(paid_tier=settings.paid_tier)
    engine = WorkflowEngine(
        LayerRegistry.from_settings(settings, quota),
        run_log=run_log,
        quota=quota,
        retry_policy=settings.retry_policy,
        default_retries=settings.retries,
        default_mode=settings.default_mode,
    )
    try:
        return await engine.execute_workflow(graph, mode)
    finally:
        await engine.aclose()


def _emit_result(result: WorkflowResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
    else:
        meta = result.metadata
        click.echo(f"Run {result.run_id} ({meta.mode}, {meta.total_duration:.2f}s)")
        for step_id, step in result.results.items():
            mark = "ok" if step.success else str(step.status).lower()
            line = f"  [{mark}] {step_id} ({step.metadata.layer}"
            if step.metadata.fallback_used:
                line += f", via {step.metadata.fallback_step_id}"
            line += ")"
            if step.error:
                line += f": {step.error}"
            click.echo(line)
        if meta.total_cost is not None:
            click.echo(f"Cost: ${meta.total_cost:.4f}")
        click.echo(result.summary)
    if not result.success:
        raise click.exceptions.Exit(1)


def _run_and_report(
    ctx: click.Context, graph: TaskGraph, mode: str | None, as_json: bool, record: bool
) -> None:
    try:
        result = asyncio.run(_execute(_settings(ctx), graph, mode, record))
    except (GraphError, StorageError) as e:
        raise click.ClickException(str(e)) from e
    _emit_result(result, as_json)


@click.group()
@click.version_option(version=__version__, prog_name="cgmb")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
@click.pass_context
def cgmb(ctx: click.Context, verbose: bool) -> None:
    """Run multi-layer AI workflows across the claude, gemini and AI Studio layers."""
    try:
        settings = load_settings()
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _configure_logging(settings, verbose)
    ctx.obj = {"settings": settings}


@cgmb.command("run")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mode", type=MODE_CHOICE, default=None, help="Execution mode.")
@click.option(
    "--continue-on-error",
    is_flag=True,
    help="Keep independent branches running after a failure.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON.")
@click.option("--no-record", is_flag=True, help="Do not write the run to the run log.")
@click.pass_context
def run_command(
    ctx: click.Context,
    graph_file: Path,
    mode: str | None,
    continue_on_error: bool,
    as_json: bool,
    no_record: bool,
) -> None:
    """Execute the workflow defined in GRAPH_FILE (JSON)."""
    graph = _load_graph(graph_file)
    if continue_on_error:
        graph = TaskGraph(
            steps=graph.steps,
            timeout=graph.timeout,
            continue_on_error=True,
            fallback_strategies=graph.fallback_strategies,
        )
    _run_and_report(ctx, graph, mode, as_json, record=not no_record)


@cgmb.command("plan")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan_command(graph_file: Path) -> None:
    """Validate GRAPH_FILE and show its execution phases."""
    graph = _load_graph(graph_file)
    try:
        plan = plan_graph(graph)
    except GraphError as e:
        raise click.ClickException(str(e)) from e
    summary = plan.summary()
    click.echo(plan.level_graph().rstrip())
    click.echo("")
    click.echo(
        f"{summary.total_steps} steps, {len(plan.phases)} phases, "
        f"max width {summary.max_width}, roots: {', '.join(summary.roots) or '-'}"
    )


@cgmb.command("layers")
@click.pass_context
def layers_command(ctx: click.Context) -> None:
    """Probe every layer and show which ones are available."""

    async def probe() -> list[tuple[LayerType, bool, str]]:
        registry = LayerRegistry.from_settings(_settings(ctx))
        try:
            context = await registry.probe()
        finally:
            await registry.aclose()
        return [
            (layer, context.is_available(layer), context.notes.get(layer, ""))
            for layer in LayerType
        ]

    for layer, available, note in asyncio.run(probe()):
        status = "available" if available else "unavailable"
        click.echo(f"{layer.value:<10} {status}" + (f"  ({note})" if note else ""))


@cgmb.command("workflow")
@click.argument("kind", type=click.Choice([kind.value for kind in WorkflowKind]))
@click.option("--prompt", "-p", required=True, help="What the workflow should do.")
@click.option(
    "--file",
    "-f",
    "files",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Input file. Can be repeated.",
)
@click.option("--mode", type=MODE_CHOICE, default=None, help="Execution mode.")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON.")
@click.option("--dry-run", is_flag=True, help="Print the generated graph instead of running it.")
@click.pass_context
def workflow_command(
    ctx: click.Context,
    kind: str,
    prompt: str,
    files: tuple[str, ...],
    mode: str | None,
    as_json: bool,
    dry_run: bool,
) -> None:
    """Build a KIND workflow from a prompt and files, then run it."""
    graph = build_workflow(kind, prompt, files)
    if dry_run:
        click.echo(json.dumps(graph.to_dict(), indent=2, ensure_ascii=False))
        return
    _run_and_report(ctx, graph, mode, as_json, record=True)


@cgmb.command("usage")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.pass_context
def usage_command(ctx: click.Context, hours: int) -> None:
    """Show recorded requests, tokens and cost per layer."""

    async def collect() -> list[tuple[str, Any]]:
        run_log = await open_run_log(_settings(ctx).run_log_url)
        since = datetime.now(UTC) - timedelta(hours=hours)
        try:
            rows = [(layer.value, await run_log.usage_since(since, layer)) for layer in LayerType]
            rows.append(("total", await run_log.usage_since(since)))
        finally:
            await run_log.close()
        return rows

    try:
        rows = asyncio.run(collect())
    except StorageError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Usage over the last {hours}h:")
    for name, totals in rows:
        click.echo(
            f"  {name:<10} requests={totals.requests} tokens={totals.tokens} "
            f"cost=${totals.cost:.4f}"
        )


if __name__ == "__main__":  # pragma: no cover
    cgmb()
