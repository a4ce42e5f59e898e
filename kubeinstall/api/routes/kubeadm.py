from fastapi import APIRouter
from pydantic import BaseModel

from kubeinstall.modules.preflight import run_preflight
from kubeinstall.services import get_services

router = APIRouter(prefix="/kubeadm", tags=["kubeadm"])


class SourceRequest(BaseModel):
    name: str
    url: str
    default: bool = False


@router.get("/sources")
def list_sources():
    return [s.to_dict() for s in get_services().sources.list()]


@router.post("/sources", status_code=201)
def add_source(req: SourceRequest):
    return get_services().sources.add(req.name, req.url, req.default).to_dict()


@router.put("/sources/{index}")
def update_source(index: int, req: SourceRequest):
    return get_services().sources.update(index, req.name, req.url, req.default).to_dict()


@router.delete("/sources/{index}")
def delete_source(index: int):
    return get_services().sources.delete(index).to_dict()


@router.post("/sources/{index}/default")
def set_default_source(index: int):
    return get_services().sources.set_default(index).to_dict()


@router.get("/versions")
def list_versions():
    return get_services().versions.get_available_versions()


@router.post("/versions/sync")
def sync_versions():
    return get_services().versions.sync()


@router.get("/preflight/{node_id}")
def preflight(node_id: str):
    """Run the kubeadm host checks on one node without failing on bad results."""
    services = get_services()
    node = services.registry.get(node_id)
    checks = run_preflight(services.executor, node)
    return {
        "nodeId": node.id,
        "passed": all(c.passed for c in checks),
        "checks": [c.to_dict() for c in checks],
    }
