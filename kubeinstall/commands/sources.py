import typer
from rich.table import Table

from kubeinstall.commands import cli_errors, console
from kubeinstall.services import get_services

app = typer.Typer(help="Manage Kubernetes package sources.")


@app.command("list")
def list_sources():
    """List package sources; the default one is marked."""
    table = Table(title="Package sources")
    for column in ("#", "Name", "URL", "Default"):
        table.add_column(column)
    for index, source in enumerate(get_services().sources.list()):
        table.add_row(str(index), source.name, source.url, "✅" if source.default else "")
    console.print(table)


@app.command("add")
def add_source(
    name: str = typer.Argument(...),
    url: str = typer.Argument(...),
    default: bool = typer.Option(False, "--default", help="Make this the default source"),
):
    """Add a package source."""
    with cli_errors():
        source = get_services().sources.add(name, url, default)
    typer.echo(f"✅ Added {source.name} ({source.url})")


@app.command("set-default")
def set_default(index: int = typer.Argument(..., help="Source index from 'sources list'")):
    """Make one source the default."""
    with cli_errors():
        source = get_services().sources.set_default(index)
    typer.echo(f"✅ {source.name} is now the default source")


@app.command("delete")
def delete_source(index: int = typer.Argument(..., help="Source index from 'sources list'")):
    """Delete a package source."""
    with cli_errors():
        source = get_services().sources.delete(index)
    typer.echo(f"✅ Deleted {source.name}")


@app.command("versions")
def list_versions(sync: bool = typer.Option(False, "--sync", help="Fetch the latest releases first")):
    """List installable Kubernetes versions."""
    versions = get_services().versions
    for version in versions.sync() if sync else versions.get_available_versions():
        typer.echo(version)
