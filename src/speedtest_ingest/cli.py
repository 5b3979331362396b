"""Typer CLI for the speedtest ingestion job."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from speedtest_ingest.config.loader import load_job_config
from speedtest_ingest.config.models import JobConfig
from speedtest_ingest.errors import ConfigurationError, JobAborted
from speedtest_ingest.observability.health import Status, check_job_health
from speedtest_ingest.observability.logging import configure_logging
from speedtest_ingest.streaming.assigner import assign as assign_shard

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="speedtest-ingest", help="Kinesis speedtest -> Timestream job")

# Legacy ``--Name value`` job parameters are passed through as extra args.
_PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}


def _load(
    config_path: str | None,
    properties: str | None = None,
    args: list[str] | None = None,
) -> JobConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return load_job_config(config_path, args=args, properties_path=properties)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(2) from exc


@app.command(context_settings=_PASSTHROUGH)
def run(
    ctx: typer.Context,
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="Job YAML (defaults apply when omitted)"
    ),
    properties: str | None = typer.Option(
        None, "--properties", help="Application properties JSON"
    ),
    consumer_index: list[int] | None = typer.Option(
        None,
        "--consumer-index",
        help="Consumer index to run in this process (repeatable, default: all)",
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Run the ingestion job until stopped or aborted."""
    configure_logging(log_level, json_output=json_logs)
    config = _load(config_path, properties, list(ctx.args))

    from speedtest_ingest.pipeline.runner import SpeedtestJob

    console.print(f"[yellow]Starting job:[/yellow] {config.job_name}")
    console.print(
        f"  {config.source.stream_name} -> "
        f"{config.timestream.database_name}.{config.timestream.table_name}"
    )
    try:
        job = SpeedtestJob(config, consumer_indices=consumer_index)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc

    try:
        job.run()
    except KeyboardInterrupt:
        # asyncio.run has already cancelled the job and closed its loop.
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130) from None
    except JobAborted as exc:
        cause = exc.__cause__
        console.print(f"[red]{exc}[/red]")
        if cause is not None:
            console.print(f"  cause: {type(cause).__name__}: {cause}")
        raise typer.Exit(1) from exc


@app.command(context_settings=_PASSTHROUGH)
def validate(
    ctx: typer.Context,
    config_path: str | None = typer.Option(None, "--config", "-c", help="Job YAML"),
    properties: str | None = typer.Option(
        None, "--properties", help="Application properties JSON"
    ),
) -> None:
    """Load the configuration and print the effective values."""
    config = _load(config_path, properties, list(ctx.args))
    console.print(f"[green]Valid[/green] ({config.job_name})")
    console.print(f"  stream:      {config.source.stream_name} ({config.aws.region})")
    console.print(
        f"  table:       {config.timestream.database_name}."
        f"{config.timestream.table_name}"
    )
    console.print(
        f"  retention:   {config.timestream.memory_retention_hours}h memory, "
        f"{config.timestream.magnetic_retention_days}d magnetic"
    )
    if config.source.adaptive_reads:
        mode = "adaptive"
    else:
        mode = f"fixed, every {config.source.poll_interval_ms}ms"
    console.print(f"  reads:       {mode}")
    console.print(f"  parallelism: {config.parallelism}")
    console.print_json(config.model_dump_json())


@app.command(context_settings=_PASSTHROUGH)
def provision(
    ctx: typer.Context,
    config_path: str | None = typer.Option(None, "--config", "-c", help="Job YAML"),
    properties: str | None = typer.Option(
        None, "--properties", help="Application properties JSON"
    ),
) -> None:
    """Create the Timestream database and table if missing."""
    config = _load(config_path, properties, list(ctx.args))

    from speedtest_ingest.sinks.provisioner import TimestreamProvisioner

    provisioner = TimestreamProvisioner(config.timestream, aws=config.aws)
    try:
        result = asyncio.run(provisioner.provision())
    except Exception as exc:
        console.print(f"[red]Provisioning failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    for kind in ("database", "table"):
        created = result[f"{kind}_created"]
        verb = "[green]created[/green]" if created else "exists"
        console.print(f"  {kind} {result[kind]}: {verb}")


@app.command()
def assign(
    shards: int | None = typer.Option(
        None, "--shards", help="Shard count (default: list the live stream)"
    ),
    consumers: int = typer.Option(1, "--consumers", min=1, help="Consumer count"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Job YAML"),
) -> None:
    """Show which consumer index owns each shard."""
    if shards is not None:
        shard_ids = [f"shardId-{i:012d}" for i in range(shards)]
        title = f"Assignment ({shards} shards, {consumers} consumers)"
    else:
        config = _load(config_path)

        from speedtest_ingest.sources.kinesis.source import KinesisSpeedtestSource

        source = KinesisSpeedtestSource(config.source, 0, 1, aws=config.aws)
        try:
            shard_ids = asyncio.run(source.list_shards())
        except Exception as exc:
            console.print(f"[red]Could not list shards:[/red] {exc}")
            raise typer.Exit(1) from exc
        title = f"Assignment ({config.source.stream_name}, {consumers} consumers)"

    table = Table(title=title)
    table.add_column("Shard", style="cyan")
    table.add_column("Consumer")
    counts = [0] * consumers
    for shard_id in shard_ids:
        owner = assign_shard(shard_id, consumers)
        counts[owner] += 1
        table.add_row(shard_id, str(owner))
    console.print(table)
    console.print("  per consumer: " + ", ".join(str(c) for c in counts))


@app.command()
def health(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Job YAML"),
) -> None:
    """Check the input stream and the target table."""
    config = _load(config_path)
    result = check_job_health(config)

    table = Table(title="Job Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)
