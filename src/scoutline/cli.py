"""Command-line interface for Scoutline."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
import structlog
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from scoutline import __version__
from scoutline.config import Config, find_config_file
from scoutline.container import DependencyContainer
from scoutline.exceptions import InvalidSubmission, QueueUnavailable
from scoutline.pipeline import QUEUE_NAMES
from scoutline.protocols import AnalysisConfig, AnalysisDepth, AnalysisJob, AnalysisStatus, AnalysisType

console = Console()
logger = structlog.get_logger(__name__)


def load_config(ctx: click.Context) -> Config:
    """Load the configuration named by ``--config`` (or found in the cwd) and apply CLI overrides."""
    config_path: Optional[Path] = ctx.obj.get("config_path") or find_config_file()
    try:
        config = Config.from_yaml(config_path) if config_path else Config()
    except (ValidationError, yaml.YAMLError) as e:
        console.print(f"[red]❌ Invalid configuration in {config_path}:[/red]\n{e}")
        sys.exit(1)
    if ctx.obj.get("log_level"):
        config.monitoring.log_level = ctx.obj["log_level"]
    ctx.obj["config_path"] = config_path
    return config


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """Scoutline - competitor SEO analysis pipeline."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--host", default=None, help="Host to bind to (defaults to monitoring.web_ui.host)")
@click.option("--port", default=None, type=int, help="Port to bind to (defaults to monitoring.web_ui.port)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API together with the stage workers."""
    from scoutline.web import run_web_server

    config = load_config(ctx)
    host = host or config.monitoring.web_ui.host
    port = port or config.monitoring.web_ui.port
    console.print(f"[green]🚀 Starting Scoutline API at http://{host}:{port}[/green]")
    run_web_server(DependencyContainer(ctx.obj["config_path"], config=config), host=host, port=port)


@cli.command()
@click.argument("domains", nargs=-1, required=True)
@click.option("--requester", default="cli", show_default=True, help="Requester id stored on the analysis")
@click.option(
    "--type",
    "analysis_type",
    default=AnalysisType.BASIC.value,
    type=click.Choice([t.value for t in AnalysisType]),
    show_default=True,
)
@click.option(
    "--depth",
    default=AnalysisDepth.MEDIUM.value,
    type=click.Choice([d.value for d in AnalysisDepth]),
    show_default=True,
)
@click.option("--timeout", default=None, type=float, help="Seconds to wait for completion")
@click.option("--output", "-o", type=click.Path(), help="Write the full analysis record as JSON")
@click.option(
    "--format",
    "output_format",
    default="table",
    type=click.Choice(["json", "table"]),
    show_default=True,
)
@click.pass_context
def analyze(
    ctx: click.Context,
    domains: Tuple[str, ...],
    requester: str,
    analysis_type: str,
    depth: str,
    timeout: Optional[float],
    output: Optional[str],
    output_format: str,
) -> None:
    """Run one competitor analysis in-process and print the result."""
    config = load_config(ctx)
    analysis_config = AnalysisConfig(analysis_type=AnalysisType(analysis_type), depth=AnalysisDepth(depth))
    wait_seconds = timeout or (config.pipeline.max_wait_seconds + config.pipeline.ai_timeout_seconds * 2)

    async def run_analysis() -> AnalysisJob:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            orchestrator = await container.get_orchestrator()
            analysis_id = await orchestrator.submit(requester, list(domains), analysis_config)
            console.print(f"[blue]🔍 Analysis {analysis_id} started for {len(domains)} domains[/blue]")

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Queued", total=None)
                loop = asyncio.get_running_loop()
                deadline = loop.time() + wait_seconds
                while True:
                    record = await orchestrator.get_status(analysis_id)
                    progress.update(task, description=record.progress_message or record.status.value)
                    if record.status.is_terminal or loop.time() >= deadline:
                        return record
                    await asyncio.sleep(0.5)

    try:
        record = asyncio.run(run_analysis())
    except InvalidSubmission as e:
        raise click.BadParameter(e.message, param_hint="DOMAINS") from e
    except QueueUnavailable as e:
        console.print(f"[red]❌ Could not queue analysis: {e.message}[/red]")
        sys.exit(1)

    if output:
        Path(output).write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        console.print(f"[green]Analysis saved to {output}[/green]")

    if output_format == "json":
        console.print_json(json.dumps(record.to_dict()))
    else:
        _print_record(record)

    if record.status is not AnalysisStatus.COMPLETED:
        sys.exit(1)


def _print_record(record: AnalysisJob) -> None:
    table = Table(title=f"Analysis {record.analysis_id}")
    table.add_column("Domain", style="cyan")
    table.add_column("Result", style="magenta")
    table.add_column("Detail")
    for domain in record.targets:
        if domain in record.scraped_results:
            technical = record.scraped_results[domain].data.get("technical", {})
            table.add_row(domain, "✅ scraped", f"SEO score {technical.get('seo_score', 'n/a')}")
        elif domain in record.failed_targets:
            table.add_row(domain, "❌ failed", record.failed_targets[domain].error)
        else:
            table.add_row(domain, "⏳ pending", "")
    console.print(table)

    if record.status is AnalysisStatus.COMPLETED and record.insights:
        insights: Dict[str, Any] = record.insights
        console.print(
            f"[bold]Risk level:[/bold] {insights.get('risk_level', 'n/a')}   "
            f"[bold]Overall score:[/bold] {insights.get('overall_score', 'n/a')}   "
            f"[dim]source: {insights.get('source', 'model')}[/dim]"
        )
        for key in ("strengths", "weaknesses", "opportunities", "threats", "recommendations"):
            items = insights.get(key) or []
            if items:
                console.print(f"\n[bold]{key.capitalize()}[/bold]")
                for item in items:
                    console.print(f"  • {item}")
    elif record.status is AnalysisStatus.ERROR:
        console.print(f"[red]❌ {record.error_detail}[/red]")
    else:
        console.print(f"[yellow]⏳ Still {record.status.value}: {record.progress_message}[/yellow]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show queue depths and analyses by status."""
    config = load_config(ctx)

    async def collect() -> Dict[str, Any]:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            job_store = await container.get_job_store()
            status_store = await container.get_status_store()
            queues = {name: (await job_store.counts(name)).to_dict() for name in QUEUE_NAMES}
            return {"queues": queues, "analyses": await status_store.count_by_status()}

    report = asyncio.run(collect())
    if as_json:
        console.print_json(json.dumps(report))
        return

    table = Table(title="Queues")
    table.add_column("Queue", style="cyan")
    for column in ("waiting", "active", "completed", "failed"):
        table.add_column(column.capitalize(), justify="right")
    for name, counts in report["queues"].items():
        table.add_row(name, *(str(value) for value in counts.values()))
    console.print(table)

    analyses = Table(title="Analyses")
    analyses.add_column("Status", style="cyan")
    analyses.add_column("Count", justify="right")
    for status in AnalysisStatus:
        analyses.add_row(status.value, str(report["analyses"].get(status.value, 0)))
    console.print(analyses)


@cli.command("config-check")
@click.pass_context
def config_check(ctx: click.Context) -> None:
    """Validate the configuration and print the effective settings."""
    console.print("[blue]🔍 Validating configuration...[/blue]")
    config = load_config(ctx)

    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("config file", str(ctx.obj["config_path"] or "defaults"))
    table.add_row("storage.backend", config.storage.backend)
    if config.storage.backend == "sqlite":
        table.add_row("storage.db_path", str(config.storage.db_path))
    for name in QUEUE_NAMES:
        queue = config.queues.for_queue(name)
        table.add_row(
            f"queues.{name}",
            f"concurrency={queue.concurrency} attempts={queue.max_attempts} backoff={queue.backoff_base_seconds}s",
        )
    table.add_row("pipeline.poll_interval_seconds", str(config.pipeline.poll_interval_seconds))
    table.add_row("pipeline.max_wait_seconds", str(config.pipeline.max_wait_seconds))
    table.add_row("pipeline.max_targets", str(config.pipeline.max_targets))
    table.add_row("ai.model", config.ai.model)
    table.add_row("ai.api_key", "set" if config.ai.api_key else "not set (heuristic insights)")
    table.add_row("monitoring.log_level", config.monitoring.log_level)
    console.print(table)
    console.print("[green]✅ Configuration is valid![/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
