#!/usr/bin/env python3
"""
Resumable Upload CLI

Command-line interface for the resumable upload server and client.

Usage:
    resumable-upload serve                    # Start the upload server
    resumable-upload upload FILE              # Upload a file
    resumable-upload resume SESSION_ID FILE   # Continue an interrupted upload
    resumable-upload status SESSION_ID        # Show what the server has
    resumable-upload finalize SESSION_ID      # Assemble a complete session
    resumable-upload abandon SESSION_ID       # Give up on a session
    resumable-upload sessions                 # List recent sessions

Client commands talk to --server over HTTP, or with --local run against the
data directory in-process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import EXAMPLE_CONFIG, Config, load_config
from .errors import UploadAttemptFailed, UploadError
from .file import FileChunker
from .models import FinalizeResult, SessionStatus, SessionStatusReport
from .server import UploadServer, run_server
from .transfer import HTTPTransport, LocalTransport, TransferScheduler

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@asynccontextmanager
async def open_transport(config: Config, server_url: Optional[str], local: bool):
    """Yield a transport to the configured server (or an in-process one)."""
    if local:
        async with UploadServer(config) as server:
            yield LocalTransport(server.engine)
    else:
        url = server_url or config.server_url
        async with HTTPTransport(url, timeout=config.request_timeout) as transport:
            yield transport


def server_options(f):
    f = click.option('--local', is_flag=True,
                     help='Run against the data directory in-process')(f)
    f = click.option('--server', 'server_url', default=None,
                     help='Server URL (default from config)')(f)
    return f


def run_client(coro_factory):
    """Run a client coroutine, turning upload errors into a clean exit."""
    try:
        return asyncio.run(coro_factory())
    except UploadAttemptFailed as e:
        console.print(f"\n[red]✗ {e.message}[/red]")
        if e.session_id:
            console.print(
                f"[yellow]Resume with: resumable-upload resume {e.session_id} <file>[/yellow]"
            )
        raise SystemExit(1)
    except UploadError as e:
        console.print(f"[red]✗ {e.code}: {e.message}[/red]")
        raise SystemExit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise SystemExit(130)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              default=None, help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir):
    """Resumable Upload - chunked uploads that survive interruptions."""
    config = load_config(Path(config_path) if config_path else None)
    if data_dir:
        config.data_dir = Path(data_dir)

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='REST API port')
@click.pass_context
def serve(ctx, host, port):
    """Start the upload server."""
    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.api_port = port

    console.print(Panel.fit(
        f"[bold green]Upload Server[/bold green]\n\n"
        f"API: [cyan]http://{config.host}:{config.api_port}[/cyan]\n"
        f"Docs: [cyan]http://{config.host}:{config.api_port}/docs[/cyan]\n"
        f"Data Dir: [blue]{config.data_dir}[/blue]\n"
        f"Chunk size: [yellow]{format_size(config.chunk_size)}[/yellow]",
        title="Server Info"
    ))

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    console.print("[green]Server stopped[/green]")


def _transfer(config: Config, server_url: Optional[str], local: bool,
              concurrency: Optional[int], chunk_size: Optional[int],
              file_path: Path, session_id: Optional[str] = None) -> FinalizeResult:
    """Shared body of upload and resume."""

    async def run():
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Connecting...", total=100)

            def update_progress(p):
                description = (
                    "Finalizing..." if p.done_chunks == p.total_chunks
                    else f"Uploading... ({p.done_chunks}/{p.total_chunks} chunks)"
                )
                progress.update(task, completed=p.progress_percent, description=description)

            async with open_transport(config, server_url, local) as transport:
                scheduler = TransferScheduler(
                    transport,
                    chunk_size=chunk_size or config.chunk_size,
                    concurrency_limit=concurrency or config.max_concurrent_uploads,
                    progress_callback=update_progress,
                )
                if session_id:
                    result = await scheduler.resume(session_id, file_path)
                else:
                    upload = asyncio.create_task(scheduler.upload(file_path))
                    # Show the id as soon as the session exists, so Ctrl+C can resume
                    while scheduler.session_id is None and not upload.done():
                        await asyncio.sleep(0.05)
                    if scheduler.session_id:
                        progress.console.print(
                            f"Session: [cyan]{scheduler.session_id}[/cyan]"
                        )
                    result = await upload

            progress.update(task, completed=100, description="Done!")

        local_hash = await FileChunker().compute_file_hash(file_path)
        return result, local_hash

    result, local_hash = run_client(run)
    print_finalize_result(result)

    if result.sha256 and result.sha256 != local_hash:
        console.print(f"[red]✗ Checksum mismatch: local file is {local_hash}[/red]")
        raise SystemExit(1)
    return result


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--chunk-size', type=int, default=None, help='Bytes per chunk')
@click.option('--concurrency', '-c', type=int, default=None,
              help='Maximum chunks in flight')
@server_options
@click.pass_context
def upload(ctx, file_path, chunk_size, concurrency, server_url, local):
    """Upload a file."""
    _transfer(ctx.obj['config'], server_url, local, concurrency, chunk_size,
              Path(file_path))


@cli.command()
@click.argument('session_id')
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--concurrency', '-c', type=int, default=None,
              help='Maximum chunks in flight')
@server_options
@click.pass_context
def resume(ctx, session_id, file_path, concurrency, server_url, local):
    """Continue an interrupted upload."""
    _transfer(ctx.obj['config'], server_url, local, concurrency, None,
              Path(file_path), session_id=session_id)


@cli.command()
@click.argument('session_id')
@server_options
@click.pass_context
def status(ctx, session_id, server_url, local):
    """Show a session's status."""
    config = ctx.obj['config']

    async def run():
        async with open_transport(config, server_url, local) as transport:
            return await transport.status(session_id)

    print_status_report(run_client(run))


@cli.command()
@click.argument('session_id')
@server_options
@click.pass_context
def finalize(ctx, session_id, server_url, local):
    """Assemble a complete session."""
    config = ctx.obj['config']

    async def run():
        async with open_transport(config, server_url, local) as transport:
            return await transport.finalize(session_id)

    print_finalize_result(run_client(run))


@cli.command()
@click.argument('session_id')
@server_options
@click.pass_context
def abandon(ctx, session_id, server_url, local):
    """Give up on a session and drop its chunks."""
    config = ctx.obj['config']

    async def run():
        async with open_transport(config, server_url, local) as transport:
            return await transport.abandon(session_id)

    report = run_client(run)
    console.print(f"[yellow]Session {report.session_id} abandoned[/yellow]")


@cli.command()
@click.option('--status', 'status_name', default=None,
              type=click.Choice([s.value for s in SessionStatus]),
              help='Only sessions in this status')
@click.option('--limit', default=20, help='Maximum sessions to show')
@click.pass_context
def sessions(ctx, status_name, limit):
    """List recent sessions in the local data directory."""
    config = ctx.obj['config']

    async def run():
        async with UploadServer(config) as server:
            status_filter = SessionStatus(status_name) if status_name else None
            return await server.engine.list_sessions(status=status_filter, limit=limit)

    reports = run_client(run)

    if not reports:
        console.print("[yellow]No sessions[/yellow]")
        return

    table = Table(title="Upload Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("File")
    table.add_column("Chunks", justify="right", style="yellow")
    table.add_column("Status", style="green")

    for r in reports:
        table.add_row(
            r.session_id,
            r.filename,
            f"{len(r.received_chunks)}/{r.total_chunks}",
            r.status.value,
        )

    console.print(table)


@cli.command('example-config')
def example_config():
    """Print an example JSON config file."""
    console.print(EXAMPLE_CONFIG.strip())


def print_status_report(report: SessionStatusReport):
    missing = report.total_chunks - len(report.received_chunks)
    if report.status == SessionStatus.FINALIZED:
        missing = 0

    console.print(Panel.fit(
        f"[bold]Session Status[/bold]\n\n"
        f"Session: [cyan]{report.session_id}[/cyan]\n"
        f"File: [blue]{report.filename}[/blue]\n"
        f"Status: [green]{report.status.value}[/green]\n"
        f"Chunk size: [yellow]{format_size(report.chunk_size)}[/yellow]\n"
        f"Received: [yellow]{len(report.received_chunks)}/{report.total_chunks}[/yellow]\n"
        f"Missing: [yellow]{missing}[/yellow]",
        title="Upload Session"
    ))


def print_finalize_result(result: FinalizeResult):
    if result.pending:
        console.print(f"[yellow]Session {result.session_id} is still finalizing[/yellow]")
        return

    console.print(Panel.fit(
        f"[bold green]Upload Finalized[/bold green]\n\n"
        f"Session: [cyan]{result.session_id}[/cyan]\n"
        f"Output: [blue]{result.output_path}[/blue]\n"
        f"Size: [yellow]{format_size(result.size or 0)}[/yellow]\n"
        f"SHA-256: [green]{result.sha256}[/green]",
        title="Finalized"
    ))


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
