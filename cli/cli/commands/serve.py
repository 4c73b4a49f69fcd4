"""``fund-engine serve`` -- run the settlement control plane.

Starts the FastAPI app (``api.main:app``) under uvicorn.  The app owns the
step scheduler, so this is the process a deployment keeps running.  Without
``FUND_DATABASE_URL`` the state database falls back to a local SQLite file.
"""

from __future__ import annotations

import logging
import os

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    no_scheduler: bool = typer.Option(
        False,
        "--no-scheduler",
        help="Serve the HTTP triggers only; do not run steps on a schedule.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Start the settlement API and step scheduler."""
    console = Console(stderr=True)

    if no_scheduler:
        os.environ["API_SCHEDULER_ENABLED"] = "false"

    console.print(
        Panel(
            _build_services_table(host, port, no_scheduler),
            title="Fund Settlement Service",
            border_style="blue",
        )
    )

    try:
        import uvicorn

        uvicorn_config = uvicorn.Config(
            "api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(uvicorn_config)

        console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
        console.print(f"[green]✓[/green] Health check at http://{host}:{port}/snapshots/health")

        server.run()

    except ImportError as exc:
        console.print(f"[red]Missing dependency: {exc}[/red]")
        raise typer.Exit(code=3) from exc
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")


def _build_services_table(host: str, port: int, no_scheduler: bool) -> Table:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Service", style="bold")
    table.add_column("URL / Info")
    table.add_column("Status")

    database_url = os.environ.get("FUND_DATABASE_URL", "")
    backend = database_url.split("://", 1)[0] if database_url else "sqlite (default)"

    table.add_row("API", f"http://{host}:{port}", "[green]starting[/green]")
    table.add_row("Database", backend, "[green]configured[/green]")
    if no_scheduler:
        table.add_row("Scheduler", "steps 1-3", "[dim]disabled[/dim]")
    else:
        table.add_row("Scheduler", "steps 1-3", "[green]enabled[/green]")
    if os.environ.get("FUND_SIGNER_FACTORY"):
        table.add_row("Signer", os.environ["FUND_SIGNER_FACTORY"], "[green]configured[/green]")
    else:
        table.add_row("Signer", "FUND_SIGNER_FACTORY unset", "[yellow]read-only[/yellow]")
    return table
