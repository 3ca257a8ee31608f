# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for kumo-monitor.

Usage:
    kumo-monitor serve --port 5055     # API + background loops under uvicorn
    kumo-monitor run                   # background loops only, no HTTP
    kumo-monitor classify /var/log/kumomta/sample.jsonl
    kumo-monitor state /opt/kumo-ui-api/state.json
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .classifier import classify_line, explain_text
from .clock import format_clock
from .config import load_settings
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_json(data: Any) -> None:
    """Print data as syntax-highlighted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(package_name="kumo-monitor")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """Telemetry for a KumoMTA node: metrics windows, deferrals, last errors."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the sampling and tailing loops."""
    import uvicorn

    from .server import build_app

    settings = ctx.obj["settings"]
    configure_logging(settings.log_level)
    host = host or settings.http_host
    port = port or settings.http_port
    console.print(f"[bold]kumo-monitor[/bold] listening on {host}:{port}, polling {settings.kumo_url}")
    uvicorn.run(build_app(settings), host=host, port=port, log_level=settings.log_level.lower())


@main.command("run")
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the loops without HTTP; state is flushed on SIGINT/SIGTERM."""
    from .core import MonitorService

    settings = ctx.obj["settings"]
    configure_logging(settings.log_level)
    run_async(MonitorService.from_settings(settings).run_forever())


@main.command("classify")
@click.argument("source", type=click.File("r", encoding="utf-8", errors="replace"), default="-")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Lines to classify (0 = all).")
def classify_command(source, as_json: bool, limit: int) -> None:
    """Classify captured log lines (file or '-' for stdin) and show deferrals."""
    rows = []
    for line in source:
        result = classify_line(line)
        if result is None:
            continue
        row = explain_text(result.display)
        row["isDeferral"] = result.is_deferral
        row["domain"] = result.domain or row["domain"]
        row["source"] = result.source
        if result.failure is not None:
            row["code"] = result.failure.code
            row["enhanced"] = result.failure.enhanced
        rows.append(row)
        if limit and len(rows) >= limit:
            break

    if as_json:
        print_json(rows)
        return

    table = Table(title="Classified log lines")
    table.add_column("Deferral")
    table.add_column("Domain", style="cyan")
    table.add_column("Code")
    table.add_column("Text", overflow="fold")
    for row in rows:
        table.add_row(
            "[yellow]yes[/yellow]" if row["isDeferral"] else "no",
            row["domain"] or "-",
            str(row.get("code") or ""),
            row["text"],
        )
    console.print(table)


@main.command("state")
@click.argument("path", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print the pruned state as JSON.")
@click.pass_context
def state_command(ctx: click.Context, path: str | None, as_json: bool) -> None:
    """Show what a state file would restore, retention applied."""
    from .persistence import read_state

    settings = ctx.obj["settings"]
    path = path or settings.state_path
    try:
        state = read_state(
            path,
            sample_retention_ms=settings.sample_retention * 1000,
            deferral_retention_ms=settings.deferral_retention * 1000,
        )
    except (OSError, ValueError) as exc:
        print_error(f"cannot read {path}: {exc}")
        sys.exit(1)

    if as_json:
        print_json(state)
        return

    samples = state["samples"]
    table = Table(title=f"State {path}")
    table.add_column("Item")
    table.add_column("Value", justify="right")
    table.add_row("Samples", str(len(samples)))
    table.add_row("Queue snapshots", str(len(state["qSamples"])))
    table.add_row("Deferral events", str(len(state["deferralEvents"])))
    if samples:
        table.add_row("Oldest sample", format_clock(samples[0]["t"]))
        table.add_row("Newest sample", format_clock(samples[-1]["t"]))
    for window in ("minute", "hour"):
        for key, value in state["peaks"][window].items():
            table.add_row(f"Peak {window} {key}", str(value))
    console.print(table)


if __name__ == "__main__":
    main()
