from __future__ import annotations

import click

from convo_sync.cli import cli
from convo_sync.config import SyncSettings
from convo_sync.log import configure_logging


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Host to bind to.")
@click.option("--port", "-p", default=8080, show_default=True, help="Port to bind to.")
@click.pass_context
def serve_command(ctx: click.Context, host: str, port: int) -> None:
    """Start the convo-sync web API server."""
    try:
        from convo_sync.web.server import run_server
    except ImportError:
        raise click.ClickException(
            "Web API dependencies not installed. Install with: pip install 'convo-sync[web]'"
        ) from None

    click.echo(f"Starting convo-sync web API at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop.")
    run_server(host=host, port=port, db_path=(ctx.obj or {}).get("db_path"))


def main() -> None:
    try:
        settings = SyncSettings.from_env()
    except ValueError as e:
        raise SystemExit(f"convo-sync: {e}") from e
    configure_logging(level=settings.log_level, fmt=settings.log_format)
    cli(prog_name="convo-sync")
