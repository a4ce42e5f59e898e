from pathlib import Path
from typing import List, Optional

import typer
from rich.table import Table

from kubeinstall.commands import cli_errors, console
from kubeinstall.modules.models import NodeRole
from kubeinstall.services import get_services

app = typer.Typer(help="Manage registered nodes.")


def _read_key(path: Optional[Path]) -> Optional[str]:
    if path is None:
        return None
    return path.expanduser().read_text()


@app.command("add")
def add_node(
    ip: str = typer.Argument(..., help="Node address"),
    name: str = typer.Option("", "--name", "-n", help="Display name (defaults to the address)"),
    role: NodeRole = typer.Option(NodeRole.WORKER, "--role", "-r", help="master or worker"),
    username: Optional[str] = typer.Option(None, "--user", "-u", help="SSH user"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="SSH port"),
    password: Optional[str] = typer.Option(None, "--password", help="SSH password"),
    key_file: Optional[Path] = typer.Option(None, "--key-file", "-k", help="SSH private key file"),
):
    """Register a node. Exactly one of --password or --key-file is used."""
    services = get_services()
    with cli_errors():
        node = services.registry.create(
            name=name,
            ip=ip,
            username=username or services.config.ssh.default_user,
            password=password,
            private_key=_read_key(key_file),
            port=port or services.config.ssh.default_port,
            role=role,
        )
    typer.echo(f"✅ Registered {node.name} ({node.address}) as {node.role.value}: {node.id}")


@app.command("list")
def list_nodes(role: Optional[NodeRole] = typer.Option(None, "--role", "-r", help="Filter by role")):
    """List registered nodes."""
    table = Table(title="Nodes")
    for column in ("ID", "Name", "Address", "Role", "Status", "Runtime", "OS"):
        table.add_column(column)
    for node in get_services().registry.list(role):
        table.add_row(node.id, node.name, node.address, node.role.value, node.status.value,
                      node.container_runtime or "-", node.os or "-")
    console.print(table)


@app.command("update")
def update_node(
    node_id: str = typer.Argument(..., help="Node id"),
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    ip: Optional[str] = typer.Option(None, "--ip"),
    role: Optional[NodeRole] = typer.Option(None, "--role", "-r"),
    username: Optional[str] = typer.Option(None, "--user", "-u"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    password: Optional[str] = typer.Option(None, "--password"),
    key_file: Optional[Path] = typer.Option(None, "--key-file", "-k"),
):
    """Update a node. The stored credential is kept unless a new one is given."""
    with cli_errors():
        node = get_services().registry.update(
            node_id, password=password, private_key=_read_key(key_file),
            name=name, ip=ip, role=role, username=username, port=port,
        )
    typer.echo(f"✅ Updated {node.name}")


@app.command("test")
def test_node(node_id: str = typer.Argument(..., help="Node id")):
    """Test the SSH connection to a node."""
    registry = get_services().registry
    with cli_errors():
        reachable = registry.test_connection(node_id)
        node = registry.get(node_id)
    if reachable:
        typer.echo(f"✅ {node.name} is reachable ({node.os or 'unknown OS'})")
    else:
        typer.echo(f"❌ {node.name} is unreachable", err=True)
        raise typer.Exit(code=1)


@app.command("delete")
def delete_node(
    node_id: str = typer.Argument(..., help="Node id"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """Remove a node from the registry."""
    if not force:
        typer.confirm(f"Delete node {node_id}?", abort=True)
    with cli_errors():
        get_services().registry.delete(node_id)
    typer.echo(f"✅ Deleted {node_id}")


@app.command("ssh-trust")
def ssh_trust(
    node_ids: Optional[List[str]] = typer.Argument(None, help="Node ids (default: all nodes)"),
):
    """Set up passwordless SSH between nodes."""
    services = get_services()
    with cli_errors():
        ids = node_ids or [n.id for n in services.registry.list()]
        results = services.batch.setup_ssh_trust(ids)
    failed = 0
    for node_id, result in results.items():
        if result.ok:
            typer.echo(f"✅ {node_id}: {result.message}")
        else:
            failed += 1
            typer.echo(f"❌ {node_id}: {result.message}", err=True)
    if failed:
        raise typer.Exit(code=1)
