import logging
import sys
from typing import Optional

import typer

from kubeinstall.commands import batch, cluster, logs, node, scripts, serve, sources
from kubeinstall.config import get_config
from kubeinstall.logging import setup_logging

app = typer.Typer(help="kubeinstall - provision kubeadm clusters over SSH.")

debug_mode = False

# Add all command groups
app.add_typer(node.app, name="node")
app.add_typer(batch.app, name="batch")
app.add_typer(cluster.app, name="cluster")
app.add_typer(scripts.app, name="scripts")
app.add_typer(logs.app, name="logs")
app.add_typer(sources.app, name="sources")
app.command("serve")(serve.serve)


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a config file"),
):
    """kubeinstall - kubeadm cluster provisioning over SSH."""
    global debug_mode
    debug_mode = debug
    settings = get_config(config)
    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.file,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
        debug=debug,
    )
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
