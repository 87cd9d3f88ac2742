"""CLI entrypoint for collecting debug bundles on the local node."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from .arguments import build_rpk_arguments, printable_arguments
from .config import LiveConfig, Settings, load_settings
from .errors import ErrorInfo, Result
from .logging_config import configure_logging
from .metadata import load_metadata
from .persistence import KVStore
from .schemas import DebugBundleParameters, DebugBundleStatus, DebugBundleStatusData, ScramCredentials
from .service import DebugBundleService, form_debug_bundle_file_path
from .workers import ServiceGroup

console = Console()


@dataclass
class CollectOutcome:
    status: Optional[DebugBundleStatusData] = None
    path: Optional[Path] = None
    error: Optional[ErrorInfo] = None
    timed_out: bool = False


def _parameter_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--username", type=str, default=None, help="SASL username passed to rpk."),
        click.option("--password", type=str, default=None, help="SASL password passed to rpk."),
        click.option("--sasl-mechanism", type=str, default="SCRAM-SHA-256", show_default=True),
        click.option("--controller-logs-size-limit", type=click.IntRange(min=0), default=None, help="Bytes."),
        click.option("--cpu-profiler-wait", type=click.IntRange(min=0), default=None, help="Seconds."),
        click.option("--logs-since", type=str, default=None),
        click.option("--logs-size-limit", type=click.IntRange(min=0), default=None, help="Bytes."),
        click.option("--logs-until", type=str, default=None),
        click.option("--metrics-interval", type=click.IntRange(min=0), default=None, help="Seconds."),
        click.option("--partition", "partitions", type=str, multiple=True, help="Repeatable partition selector."),
        click.option("--tls-enabled/--no-tls-enabled", default=None),
        click.option("--tls-insecure-skip-verify/--no-tls-insecure-skip-verify", default=None),
        click.option("--namespace", type=str, default=None, help="Kubernetes namespace."),
        click.option("--rpk-path", type=click.Path(path_type=Path), default=None),
        click.option("--storage-dir", type=click.Path(path_type=Path), default=None),
        click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="debug-bundle-service", message="debug-bundle %(version)s")
def main() -> None:
    """Collect rpk debug bundles on this node."""


@main.command()
@click.argument("job_id")
@_parameter_options
def args(job_id: str, rpk_path: Optional[Path], storage_dir: Optional[Path], config_path: Optional[Path], **options: Any) -> None:
    """Print the rpk command line for JOB_ID without running it (credentials redacted)."""

    settings = load_settings(config_path, rpk_path=rpk_path, debug_bundle_storage_dir=storage_dir)
    params = _build_parameters(**options)
    output_path = form_debug_bundle_file_path(LiveConfig.from_settings(settings).storage_directory(), job_id)
    result = build_rpk_arguments(settings.rpk_path, output_path, params)
    if not result.ok:
        _fail(result.error)
    click.echo(printable_arguments(result.unwrap()))


@main.command()
@click.argument("job_id")
@_parameter_options
@click.option("--timeout", type=float, default=None, help="Cancel the job after this many seconds.")
@click.option("--poll-interval", type=float, default=0.5, show_default=True)
@click.option("--worker", type=click.IntRange(min=0), default=0, show_default=True, help="Worker to submit through.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
def collect(
    job_id: str,
    rpk_path: Optional[Path],
    storage_dir: Optional[Path],
    config_path: Optional[Path],
    timeout: Optional[float],
    poll_interval: float,
    worker: int,
    verbose: bool,
    **options: Any,
) -> None:
    """Run rpk debug bundle for JOB_ID and wait for it to finish."""

    logger = configure_logging(verbose=verbose, logger_name="debug_bundle.cli")
    settings = load_settings(config_path, rpk_path=rpk_path, debug_bundle_storage_dir=storage_dir)
    if worker >= settings.workers:
        raise click.BadParameter(f"worker must be below {settings.workers}", param_hint="--worker")
    params = _build_parameters(**options)
    logger.info("Job ID: %s", job_id)

    outcome = asyncio.run(_collect(settings, job_id, params, worker, timeout, poll_interval))
    if outcome.error is not None:
        _fail(outcome.error)
    _print_status(outcome.status)
    if outcome.timed_out:
        console.print(f"[yellow]Job {job_id} cancelled after {timeout}s[/yellow]")
    if outcome.path is not None:
        console.print(f"Bundle: {outcome.path}", soft_wrap=True)
    if outcome.status is None or outcome.status.status is not DebugBundleStatus.SUCCESS:
        sys.exit(1)


@main.command()
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
def metadata(config_path: Optional[Path]) -> None:
    """Print the metadata recorded for the most recent job."""

    settings = load_settings(config_path)
    record = load_metadata(KVStore.from_path(settings.resolve_kvstore_path()))
    if record is None:
        click.echo("No debug bundle metadata recorded.")
        sys.exit(1)
    click.echo(record.model_dump_json(indent=2))


async def _collect(
    settings: Settings,
    job_id: str,
    params: DebugBundleParameters,
    worker: int,
    timeout: Optional[float],
    poll_interval: float,
) -> CollectOutcome:
    kvstore = KVStore.from_path(settings.resolve_kvstore_path())
    group = ServiceGroup.create(settings.workers, kvstore, LiveConfig.from_settings(settings))
    service = group.local(worker)
    outcome = CollectOutcome()
    await group.start()
    try:
        started = await service.initiate(job_id, params)
        if not started.ok:
            outcome.error = started.error
            return outcome
        finished, outcome.timed_out = await _poll_until_finished(service, job_id, timeout, poll_interval)
        if not finished.ok:
            outcome.error = finished.error
            return outcome
        outcome.status = finished.value
        if outcome.status.status is DebugBundleStatus.SUCCESS:
            found = await service.path(job_id)
            outcome.path = found.value if found.ok else None
        return outcome
    finally:
        await group.stop()


async def _poll_until_finished(
    service: DebugBundleService,
    job_id: str,
    timeout: Optional[float],
    poll_interval: float,
) -> Tuple[Result[DebugBundleStatusData], bool]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    timed_out = False
    while True:
        current = await service.status()
        if not current.ok or current.value.status is not DebugBundleStatus.RUNNING:
            return current, timed_out
        if deadline is not None and not timed_out and loop.time() >= deadline:
            timed_out = True
            await service.cancel(job_id)
        await asyncio.sleep(poll_interval)


def _build_parameters(
    username: Optional[str] = None,
    password: Optional[str] = None,
    sasl_mechanism: str = "SCRAM-SHA-256",
    controller_logs_size_limit: Optional[int] = None,
    cpu_profiler_wait: Optional[int] = None,
    logs_since: Optional[str] = None,
    logs_size_limit: Optional[int] = None,
    logs_until: Optional[str] = None,
    metrics_interval: Optional[int] = None,
    partitions: Tuple[str, ...] = (),
    tls_enabled: Optional[bool] = None,
    tls_insecure_skip_verify: Optional[bool] = None,
    namespace: Optional[str] = None,
) -> DebugBundleParameters:
    creds: Optional[ScramCredentials] = None
    if username is not None or password is not None:
        if username is None or password is None:
            raise click.UsageError("--username and --password must be given together")
        creds = ScramCredentials(username=username, password=password, mechanism=sasl_mechanism)
    return DebugBundleParameters(
        authn_options=creds,
        controller_logs_size_limit_bytes=controller_logs_size_limit,
        cpu_profiler_wait_seconds=cpu_profiler_wait,
        logs_since=logs_since,
        logs_size_limit_bytes=logs_size_limit,
        logs_until=logs_until,
        metrics_interval_seconds=metrics_interval,
        partition=list(partitions) if partitions else None,
        tls_enabled=tls_enabled,
        tls_insecure_skip_verify=tls_insecure_skip_verify,
        k8s_namespace=namespace,
    )


def _print_status(status: Optional[DebugBundleStatusData]) -> None:
    if status is None:
        return
    table = Table(title="Debug Bundle Status", show_lines=True)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Job ID", status.job_id)
    table.add_row("Status", status.status.value)
    table.add_row("Created", status.created_timestamp.isoformat())
    table.add_row("File", status.file_name)
    table.add_row("Size", str(status.file_size) if status.file_size is not None else "-")
    table.add_row("stdout", "\n".join(status.cout[-10:]))
    table.add_row("stderr", "\n".join(status.cerr[-10:]))
    console.print(table)


def _fail(error: Optional[ErrorInfo]) -> None:
    click.echo(click.style(f"Error: {error}", fg="red"), err=True)
    sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    main()
