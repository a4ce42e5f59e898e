from typing import Optional

import typer
import uvicorn

from kubeinstall.config import get_config


def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP API server."""
    settings = get_config().api
    host = host or settings.host
    port = port or settings.port
    typer.echo(f"🚀 Serving kubeinstall API on http://{host}:{port}")
    uvicorn.run("kubeinstall.api.main:app", host=host, port=port, reload=reload, log_config=None)
