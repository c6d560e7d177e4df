"""Main CLI entry point using Typer."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import typer
from botocore.exceptions import BotoCoreError
from rich.console import Console

from k8s_aws_secrets_sync import __version__
from k8s_aws_secrets_sync.cli.output import discovery_table, mapping_table, summary_table
from k8s_aws_secrets_sync.integrations.kubernetes import KubernetesError
from k8s_aws_secrets_sync.integrations.secretsmanager import (
    SecretsManagerConfig,
    SecretsManagerError,
)
from k8s_aws_secrets_sync.logging.config import configure_logging
from k8s_aws_secrets_sync.services.sync import (
    DiscoveryConfig,
    ReconcilerConfig,
    SyncError,
    load_discovery_config,
)
from k8s_aws_secrets_sync.services.sync.factory import SyncRuntime, build_runtime

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.services.sync import SecretsReconciler

app = typer.Typer(
    name="k8s-aws-secrets-sync",
    help="Keep Kubernetes Secrets in sync with AWS Secrets Manager.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)
logger = structlog.get_logger()

# ValueError covers pydantic validation and malformed numeric environment values
STARTUP_ERRORS = (SyncError, KubernetesError, SecretsManagerError, BotoCoreError, ValueError)

discovery_option = typer.Option(
    ...,
    "--discovery",
    "-d",
    envvar="SYNC_DISCOVERY_FILE",
    help="Path to the discovery YAML file.",
)
region_option = typer.Option(
    None,
    "--region",
    help="AWS region of the secret store (defaults to AWS_REGION).",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"k8s-aws-secrets-sync version {__version__}")
        raise typer.Exit()


def _fail(message: str, error: BaseException) -> typer.Exit:
    err_console.print(f"[bold red]{message}:[/bold red] {error}")
    return typer.Exit(code=1)


def _load_discovery(path: Path) -> DiscoveryConfig:
    try:
        return load_discovery_config(path)
    except SyncError as e:
        raise _fail("Invalid discovery configuration", e) from e


def _reconciler_config(overrides: dict[str, Any] | None = None) -> ReconcilerConfig:
    try:
        env_config = ReconcilerConfig.from_env().model_dump()
        return ReconcilerConfig.model_validate({**env_config, **(overrides or {})})
    except ValueError as e:
        raise _fail("Invalid reconciler settings", e) from e


def _build(discovery: DiscoveryConfig, config: ReconcilerConfig, region: str | None) -> SyncRuntime:
    try:
        aws_config = SecretsManagerConfig.from_env({"region": region} if region else None)
        return build_runtime(discovery, config, aws_config=aws_config)
    except STARTUP_ERRORS as e:
        raise _fail("Startup failed", e) from e


def _install_signal_handlers(reconciler: SecretsReconciler) -> None:
    """Turn SIGTERM and SIGINT into a graceful stop."""

    def handle(signum: int, _frame: Any) -> None:
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        reconciler.stop()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        envvar="SYNC_JSON_LOGS",
        help="Emit logs as JSON lines.",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        envvar="SYNC_LOG_FILE",
        help="Also write JSON logs to this rotating file.",
    ),
) -> None:
    """Sync AWS Secrets Manager secrets into Kubernetes Secrets."""
    configure_logging(verbose=verbose, debug=debug, json_output=json_logs, log_file=log_file)


@app.command()
def validate(discovery: Path = discovery_option) -> None:
    """Validate a discovery file without contacting AWS or the cluster."""
    config = _load_discovery(discovery)
    console.print(discovery_table(config))
    console.print(f"\n[green]Discovery configuration is valid:[/green] {discovery}")


@app.command()
def resolve(
    discovery: Path = discovery_option,
    region: str | None = region_option,
) -> None:
    """Resolve the discovery file once and print the resulting mapping."""
    config = _load_discovery(discovery)
    runtime = _build(config, _reconciler_config(), region)
    try:
        entries = runtime.resolver.resolve()
    except STARTUP_ERRORS as e:
        raise _fail("Mapping resolution failed", e) from e
    finally:
        runtime.close()
    console.print(mapping_table(entries))


@app.command()
def run(
    discovery: Path = discovery_option,
    interval: float | None = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between ticks (default 60, env SYNC_INTERVAL).",
    ),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Parallel workers per tick (default 8, env SYNC_CONCURRENCY).",
    ),
    tick_timeout: float | None = typer.Option(
        None,
        "--tick-timeout",
        help="Hard limit for one tick in seconds (default 300, env SYNC_TICK_TIMEOUT).",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single tick and exit non-zero if any target failed.",
    ),
    region: str | None = region_option,
) -> None:
    """Run the reconciliation loop until SIGTERM or SIGINT."""
    config = _load_discovery(discovery)

    overrides: dict[str, Any] = {}
    if interval is not None:
        overrides["interval"] = interval
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if tick_timeout is not None:
        overrides["tick_timeout"] = tick_timeout
    reconciler_config = _reconciler_config(overrides)
    runtime = _build(config, reconciler_config, region)
    _install_signal_handlers(runtime.reconciler)

    try:
        if once:
            summary = runtime.reconciler.run_tick()
            if summary is None:
                err_console.print(
                    f"[bold red]Tick aborted:[/bold red] {runtime.reporter.last_error}"
                )
                raise typer.Exit(code=1)
            console.print(summary_table(summary))
            if not summary.succeeded:
                raise typer.Exit(code=1)
        else:
            runtime.reconciler.run()
    finally:
        runtime.close()


if __name__ == "__main__":
    app()
