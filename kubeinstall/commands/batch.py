from typing import Dict, List, Optional

import typer

from kubeinstall.commands import cli_errors
from kubeinstall.services import get_services

app = typer.Typer(help="Run an operation on many nodes at once.")


def parse_params(items: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``key=value`` options into a dict."""
    params = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {item!r}")
        params[key.strip()] = value.strip()
    return params


@app.command("list")
def list_operations():
    """List the available batch operations."""
    for name in get_services().batch.operations:
        typer.echo(name)


@app.command("run")
def run_batch(
    operation: str = typer.Argument(..., help="Operation name, see 'batch list'"),
    node_ids: Optional[List[str]] = typer.Argument(None, help="Node ids"),
    all_nodes: bool = typer.Option(False, "--all", "-a", help="Target every registered node"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="Operation parameter as key=value"),
):
    """Run OPERATION on the given nodes concurrently."""
    services = get_services()
    if all_nodes:
        node_ids = [n.id for n in services.registry.list()]
    params = parse_params(param)
    typer.echo(f"🚀 Running {operation} on {len(node_ids or [])} nodes")
    with cli_errors():
        results = services.batch.run_batch(node_ids or [], operation, **params)

    failed = 0
    for node_id, result in results.items():
        status = "✅" if result.ok else "❌"
        failed += 0 if result.ok else 1
        typer.echo(f"  {status} {node_id}: {result.message}")
    typer.echo(f"\n{len(results) - failed}/{len(results)} nodes succeeded")
    if failed:
        raise typer.Exit(code=1)
