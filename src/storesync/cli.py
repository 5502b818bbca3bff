from __future__ import annotations

import asyncio
import importlib
import json
import sys
from typing import Iterator, Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .config import get_settings
from .sync import BatchSynchronizer, SyncOptions, Worker

app = typer.Typer(help="storesync operational CLI")


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def iter_keys(path: str) -> Iterator[str]:
    """Yield keys from a file (``-`` for stdin); blank lines and ``#`` comments skipped."""
    fh = sys.stdin if path == "-" else open(path, "r", encoding="utf-8")
    try:
        for line in fh:
            key = line.split("#", 1)[0].strip()
            if key:
                yield key
    finally:
        if fh is not sys.stdin:
            fh.close()


def load_worker(target: str) -> Worker:
    """Import ``package.module:factory`` and call the factory to build a worker."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter("expected 'module:factory'", param_hint="--worker")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"cannot load {target}: {exc}", param_hint="--worker") from exc
    return factory()


@app.command("settings")
def show_settings():
    """Print the effective settings (env + .env + defaults)."""
    typer.echo(json.dumps(get_settings().model_dump(), indent=2))


@app.command("sync")
def sync(
    keys_file: str = typer.Argument(..., help="File with one key per line, '-' for stdin"),
    worker: str = typer.Option(..., "--worker", help="Worker factory as module:callable"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Initial chunk size"),
    floor: Optional[int] = typer.Option(None, "--floor", help="Minimum chunk size"),
    ceiling: Optional[int] = typer.Option(None, "--ceiling", help="Maximum chunk size"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retry passes"),
    retry_delay_ms: Optional[int] = typer.Option(None, "--retry-delay-ms"),
    no_retry: bool = typer.Option(False, "--no-retry", help="Disable retry passes"),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", envvar="STORESYNC_METRICS_PORT"),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
):
    """Reconcile every key in KEYS_FILE and print the summary as JSON."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)

    base = SyncOptions.from_settings(settings)
    initial = concurrency if concurrency is not None else base.initial_concurrency
    options = SyncOptions(
        initial_concurrency=initial,
        floor=floor if floor is not None else min(base.floor, initial),
        ceiling=ceiling if ceiling is not None else max(base.ceiling, initial),
        max_retries=0 if no_retry else (max_retries if max_retries is not None else base.max_retries),
        retry_delay_ms=retry_delay_ms if retry_delay_ms is not None else base.retry_delay_ms,
        rate_limit_wait_ms=base.rate_limit_wait_ms,
        max_rate_limit_wait_ms=base.max_rate_limit_wait_ms,
        rate_limit_window_ms=base.rate_limit_window_ms,
        rate_limit_pass_delay_ms=base.rate_limit_pass_delay_ms,
    )

    keys = list(iter_keys(keys_file))
    if not keys:
        logger.warning("No keys to sync")
        raise typer.Exit(0)

    port = metrics_port if metrics_port is not None else settings.metrics_port
    if port:
        start_http_server(port)
        logger.info(f"Metrics exposed on :{port}")

    synchronizer = BatchSynchronizer(load_worker(worker), options)
    summary = asyncio.run(synchronizer.sync_many(keys))
    typer.echo(summary.model_dump_json(indent=2))
    if summary.errors:
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
