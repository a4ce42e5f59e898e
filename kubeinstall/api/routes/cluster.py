from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from kubeinstall.modules.kubeadm import HarborConfig, Taint
from kubeinstall.modules.workflow import PREPARE_STEPS
from kubeinstall.services import get_services

router = APIRouter(prefix="/cluster", tags=["cluster"])


class SelectRequest(BaseModel):
    masterId: Optional[str] = None
    workerIds: List[str] = Field(default_factory=list)


class TaintModel(BaseModel):
    key: str
    effect: str = "NoSchedule"
    value: str = ""


class HarborModel(BaseModel):
    url: str
    username: str
    password: str
    project: str = "library"
    enabled: bool = True
    skipTls: bool = False


class ConfigureRequest(BaseModel):
    version: Optional[str] = None
    networkPlugin: Optional[str] = None
    runtime: Optional[str] = None
    podSubnet: Optional[str] = None
    serviceSubnet: Optional[str] = None
    dnsDomain: Optional[str] = None
    controlPlaneEndpoint: str = ""
    imageRepository: str = ""
    repoUrl: str = ""
    taints: List[TaintModel] = Field(default_factory=list)
    harbor: Optional[HarborModel] = None
    skipSteps: List[str] = Field(default_factory=list)


class JoinRequest(BaseModel):
    nodeIds: Optional[List[str]] = None


class TokenRequest(BaseModel):
    command: Optional[str] = None
    endpoint: Optional[str] = None
    token: Optional[str] = None
    caCertHash: Optional[str] = None
    expiresAt: Optional[datetime] = None


class ResetRequest(BaseModel):
    nodeIds: List[str]


@router.get("")
def get_cluster():
    return get_services().workflow.snapshot()


@router.post("")
def new_cluster():
    """Discard the current workflow and start over at node selection."""
    return get_services().new_workflow().snapshot()


@router.get("/steps")
def list_steps():
    return list(PREPARE_STEPS)


@router.post("/select")
def select_nodes(req: SelectRequest):
    return get_services().workflow.select_nodes(req.masterId, req.workerIds)


@router.post("/configure")
def configure(req: ConfigureRequest):
    services = get_services()
    harbor = None
    if req.harbor:
        harbor = HarborConfig(
            url=req.harbor.url,
            username=req.harbor.username,
            password=req.harbor.password,
            project=req.harbor.project,
            enabled=req.harbor.enabled,
            skip_tls=req.harbor.skipTls,
        )
    spec = services.cluster_spec(
        version=req.version,
        network_plugin=req.networkPlugin,
        runtime=req.runtime,
        pod_subnet=req.podSubnet,
        service_subnet=req.serviceSubnet,
        dns_domain=req.dnsDomain,
        control_plane_endpoint=req.controlPlaneEndpoint,
        image_repository=req.imageRepository,
        repo_url=req.repoUrl,
        taints=[Taint(t.key, t.effect, t.value) for t in req.taints],
        harbor=harbor,
    )
    return services.workflow.configure(spec, req.skipSteps)


@router.post("/init")
def init_master():
    return get_services().workflow.init_master()


@router.post("/join")
def join_workers(req: JoinRequest):
    return get_services().workflow.join_workers(req.nodeIds)


@router.post("/join/{node_id}/retry")
def retry_worker(node_id: str):
    return get_services().workflow.retry_worker(node_id)


@router.post("/stop")
def stop():
    workflow = get_services().workflow
    workflow.stop()
    return workflow.snapshot()


@router.post("/token")
def set_token(req: TokenRequest):
    workflow = get_services().workflow
    if req.command:
        token = workflow.set_join_command(req.command)
    elif req.endpoint and req.token and req.caCertHash:
        token = workflow.set_join_token(req.endpoint, req.token, req.caCertHash, req.expiresAt)
    else:
        raise ValueError("provide either a join command or endpoint, token and caCertHash")
    return token.to_dict()


@router.post("/token/refresh")
def refresh_token():
    result = get_services().workflow.refresh_join_token()
    return {"found": result.found, "command": result.command}


@router.post("/reset")
def reset(req: ResetRequest):
    results = get_services().workflow.reset(req.nodeIds)
    return {node_id: result.to_dict() for node_id, result in results.items()}
