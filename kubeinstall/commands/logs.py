import json
from typing import Optional

import requests
import typer
from rich.table import Table

from kubeinstall.commands import console
from kubeinstall.config import get_config
from kubeinstall.services import get_services

app = typer.Typer(help="Inspect the audit log.")

STATUS_ICONS = {"running": "⏳", "success": "✅", "failed": "❌"}


@app.command("list")
def list_logs(
    node: Optional[str] = typer.Option(None, "--node", "-n", help="Only entries for this node id"),
    limit: int = typer.Option(50, "--limit", "-l", help="Number of entries to show"),
    output: bool = typer.Option(False, "--output", "-o", help="Print captured command output"),
):
    """Show the most recent log entries."""
    audit = get_services().audit
    entries = audit.list_by_node(node) if node else audit.list()
    table = Table(title="Audit log")
    for column in ("Time", "Node", "Operation", "Status"):
        table.add_column(column)
    for entry in entries[:limit]:
        table.add_row(entry.created_at.strftime("%Y-%m-%d %H:%M:%S"), entry.node_name or "-",
                      entry.operation, f"{STATUS_ICONS.get(entry.status.value, '')} {entry.status.value}")
    console.print(table)
    if output:
        for entry in entries[:limit]:
            console.rule(f"{entry.operation} {entry.node_name}")
            console.print(entry.output, markup=False)


@app.command("clear")
def clear_logs(force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt")):
    """Delete every log entry."""
    if not force:
        typer.confirm("Delete all log entries?", abort=True)
    get_services().audit.clear()
    typer.echo("✅ Logs cleared")


@app.command("follow")
def follow_logs(
    url: Optional[str] = typer.Option(None, "--url", help="API base URL (defaults to the configured server)"),
    api_key: Optional[str] = typer.Option(None, "--api-key", envvar="KUBEINSTALL_API_KEY", help="API key"),
):
    """Stream live log entries from a running API server."""
    settings = get_config().api
    host = "127.0.0.1" if settings.host in ("0.0.0.0", "") else settings.host
    base_url = (url or f"http://{host}:{settings.port}").rstrip("/")
    headers = {"X-API-Key": api_key or settings.api_key, "Accept": "text/event-stream"}
    typer.echo(f"📡 Following {base_url}/logs/stream (Ctrl-C to stop)")
    try:
        with requests.get(f"{base_url}/logs/stream", headers=headers, stream=True, timeout=(10, None)) as resp:
            resp.raise_for_status()
            event = None
            for line in resp.iter_lines(decode_unicode=True):
                if line.startswith("event:"):
                    event = line.split(":", 1)[1].strip()
                elif line.startswith("data:") and event == "log":
                    entry = json.loads(line.split(":", 1)[1])
                    icon = STATUS_ICONS.get(entry["status"], "")
                    typer.echo(f"{icon} [{entry['nodeName'] or '-'}] {entry['operation']} {entry['status']}")
    except KeyboardInterrupt:
        typer.echo("\nStopped")
    except requests.RequestException as e:
        typer.echo(f"❌ Could not follow logs: {e}", err=True)
        raise typer.Exit(code=1)
