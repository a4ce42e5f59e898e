from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from kubeinstall.commands import cli_errors, console
from kubeinstall.modules.kubeadm import Taint
from kubeinstall.modules.models import WorkflowState
from kubeinstall.services import Services, get_services

app = typer.Typer(help="Bootstrap, inspect and reset clusters.")

SPEC_FIELDS = {
    "version": "version",
    "networkPlugin": "network_plugin",
    "runtime": "runtime",
    "podSubnet": "pod_subnet",
    "serviceSubnet": "service_subnet",
    "dnsDomain": "dns_domain",
    "controlPlaneEndpoint": "control_plane_endpoint",
    "imageRepository": "image_repository",
    "repoUrl": "repo_url",
}


def load_cluster_file(path: Path) -> Dict[str, Any]:
    """Load and sanity-check a cluster definition."""
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid cluster file format: expected a mapping, got {type(data).__name__}")
    if not data.get("master") and not data.get("workers"):
        raise ValueError("Cluster file must name a master, workers, or both")
    if not data.get("master") and not data.get("joinCommand") and not get_services().workflow.has_valid_token():
        raise ValueError("A worker-only cluster file needs a joinCommand or a stored join token")
    return data


def build_spec(services: Services, data: Dict[str, Any]):
    settings = data.get("cluster") or {}
    values = {attr: settings.get(key) for key, attr in SPEC_FIELDS.items()}
    values["taints"] = [Taint(**t) for t in settings.get("taints", [])]
    return services.cluster_spec(**values)


def print_snapshot(snapshot: Dict[str, Any]) -> None:
    console.print(f"State: [bold]{snapshot['state']}[/bold]  token: {snapshot['tokenStatus']}")
    for step, nodes in snapshot["steps"].items():
        for node_id, status in nodes.items():
            icon = {"success": "✅", "failed": "❌", "skipped": "⏭️ "}.get(status, "⏳")
            console.print(f"  {icon} {step:<16} {node_id} {status}")
    if snapshot.get("error"):
        error = snapshot["error"]
        console.print(f"❌ {error['step']} failed: {error['message']}")
        if error.get("command"):
            console.print(f"   command: {error['command']}")
        if error.get("output"):
            console.print(error["output"])


@app.command("up")
def cluster_up(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Cluster definition (YAML)"),
    skip: Optional[List[str]] = typer.Option(None, "--skip", help="Preparation step to skip"),
):
    """Prepare the nodes, run kubeadm init on the master and join the workers."""
    services = get_services()
    with cli_errors():
        data = load_cluster_file(file)
        workflow = services.new_workflow()
        if data.get("joinCommand"):
            workflow.set_join_command(data["joinCommand"])
        master_id = services.registry.find(data["master"]).id if data.get("master") else None
        worker_ids = [services.registry.find(ref).id for ref in data.get("workers") or []]

        workflow.select_nodes(master_id, worker_ids)
        workflow.configure(build_spec(services, data), list(skip or data.get("skipSteps") or []))
        typer.echo(f"🚀 Bootstrapping cluster with {len(worker_ids)} workers")
        snapshot = workflow.init_master()
        if snapshot["state"] == WorkflowState.JOIN_WORKERS.value:
            snapshot = workflow.join_workers()

    print_snapshot(snapshot)
    if snapshot["state"] != WorkflowState.COMPLETE.value:
        raise typer.Exit(code=1)
    typer.echo("✅ Cluster is ready")


@app.command("token")
def show_token(
    command: Optional[str] = typer.Option(None, "--set", help="Store a full 'kubeadm join ...' command"),
):
    """Show the stored join token, or store one."""
    workflow = get_services().workflow
    with cli_errors():
        if command:
            workflow.set_join_command(command)
    token = workflow.join_token
    if token is None:
        typer.echo("No join token stored")
        raise typer.Exit(code=1)
    state = "expired" if token.is_expired() else f"valid until {token.expires_at.isoformat()}"
    typer.echo(f"{token.command()}\n({state})")


@app.command("reset")
def reset_cluster(
    nodes: List[str] = typer.Argument(..., help="Node ids or names"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """Run kubeadm reset and clean up on the given nodes."""
    services = get_services()
    with cli_errors():
        node_ids = [services.registry.find(ref).id for ref in nodes]
    if not force:
        typer.confirm(f"Reset {len(node_ids)} nodes? This removes them from their cluster", abort=True)
    with cli_errors():
        results = services.workflow.reset(node_ids)
    failed = [node_id for node_id, result in results.items() if not result.ok]
    for node_id, result in results.items():
        typer.echo(f"  {'✅' if result.ok else '❌'} {node_id}: {result.message}")
    if failed:
        raise typer.Exit(code=1)
