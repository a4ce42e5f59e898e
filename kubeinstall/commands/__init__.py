"""CLI command groups."""
import logging
from contextlib import contextmanager

import typer
from rich.console import Console

from kubeinstall.modules.errors import KubeInstallError

logger = logging.getLogger("kubeinstall.cli")

# Initialize console for rich output
console = Console()


@contextmanager
def cli_errors():
    """Turn domain errors into a one-line message and exit code 1."""
    try:
        yield
    except (KubeInstallError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
