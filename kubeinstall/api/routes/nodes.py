from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from kubeinstall.modules.models import NodeRole
from kubeinstall.services import get_services

router = APIRouter(prefix="/nodes", tags=["nodes"])


class NodeRequest(BaseModel):
    name: str = ""
    ip: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    privateKey: Optional[str] = None
    nodeType: NodeRole = NodeRole.WORKER


class NodeUpdateRequest(BaseModel):
    name: Optional[str] = None
    ip: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    privateKey: Optional[str] = None
    nodeType: Optional[NodeRole] = None


class BatchTestRequest(BaseModel):
    nodeIds: List[str] = Field(default_factory=list)


@router.get("")
def list_nodes(role: Optional[NodeRole] = None):
    return [n.to_public() for n in get_services().registry.list(role)]


@router.post("", status_code=201)
def create_node(req: NodeRequest):
    node = get_services().registry.create(
        name=req.name,
        ip=req.ip,
        username=req.username,
        password=req.password,
        private_key=req.privateKey,
        port=req.port,
        role=req.nodeType,
    )
    return node.to_public()


@router.get("/{node_id}")
def get_node(node_id: str):
    return get_services().registry.get(node_id).to_public()


@router.put("/{node_id}")
def update_node(node_id: str, req: NodeUpdateRequest):
    node = get_services().registry.update(
        node_id,
        password=req.password,
        private_key=req.privateKey,
        name=req.name,
        ip=req.ip,
        port=req.port,
        username=req.username,
        role=req.nodeType,
    )
    return node.to_public()


@router.delete("/{node_id}")
def delete_node(node_id: str):
    get_services().registry.delete(node_id)
    return {"status": "success"}


@router.post("/{node_id}/test-connection")
def test_connection(node_id: str):
    registry = get_services().registry
    reachable = registry.test_connection(node_id)
    return {"reachable": reachable, "node": registry.get(node_id).to_public()}


@router.post("/test-connections")
def test_connections(req: BatchTestRequest):
    services = get_services()
    node_ids = req.nodeIds or [n.id for n in services.registry.list()]
    results = services.batch.run_batch(node_ids, "test_connection")
    return {node_id: result.to_dict() for node_id, result in results.items()}


@router.post("/{node_id}/ssh/configure")
def configure_ssh(node_id: str):
    services = get_services()
    services.registry.get(node_id)
    result = services.batch.run_batch([node_id], "ssh_configure")[node_id]
    return result.to_dict()


@router.post("/ssh/passwordless")
def passwordless_ssh(req: BatchTestRequest):
    services = get_services()
    node_ids = req.nodeIds or [n.id for n in services.registry.list()]
    results = services.batch.setup_ssh_trust(node_ids)
    return {node_id: result.to_dict() for node_id, result in results.items()}
