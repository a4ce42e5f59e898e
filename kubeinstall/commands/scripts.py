from pathlib import Path
from typing import List, Optional

import typer

from kubeinstall.commands import cli_errors
from kubeinstall.modules.errors import TemplateNotFoundError
from kubeinstall.services import get_services

app = typer.Typer(help="Inspect and customize per-distro install scripts.")


@app.command("list")
def list_scripts():
    """List template keys ({distro}_{step})."""
    for key in get_services().scripts.keys():
        typer.echo(key)


@app.command("show")
def show_script(
    key: str = typer.Argument(..., help="Template key, e.g. ubuntu_system_prep"),
    default: bool = typer.Option(False, "--default", help="Show the built-in text"),
):
    """Print a template."""
    store = get_services().scripts
    with cli_errors():
        text = store.defaults().get(key) if default else store.get(key)
        if text is None:
            distro, _, step = key.partition("_")
            raise TemplateNotFoundError(distro, step)
    typer.echo(text)


@app.command("set")
def set_script(
    key: str = typer.Argument(..., help="Template key"),
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File holding the template text"),
):
    """Replace a template with the contents of FILE."""
    with cli_errors():
        get_services().scripts.update({key: file.read_text()})
    typer.echo(f"✅ Updated {key}")


@app.command("render")
def render_script(
    distro: str = typer.Argument(..., help="Distro id, e.g. ubuntu or rocky"),
    step: str = typer.Argument(..., help="Step id, e.g. k8s_components"),
    version: Optional[str] = typer.Option(None, "--version", "-v", help="Kubernetes version"),
    repo_url: Optional[str] = typer.Option(None, "--repo-url", help="Package source URL"),
):
    """Print the script that would run for DISTRO and STEP."""
    services = get_services()
    with cli_errors():
        script = services.scripts.render(distro, step, version=version,
                                         repo_url=services.operations.repo_url(repo_url))
    typer.echo(script)


@app.command("reset")
def reset_scripts(keys: Optional[List[str]] = typer.Argument(None, help="Keys to reset (all when omitted)")):
    """Restore built-in templates."""
    with cli_errors():
        get_services().scripts.reset(keys or None)
    typer.echo(f"✅ Reset {', '.join(keys) if keys else 'all templates'}")

