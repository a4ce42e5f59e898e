from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from kubeinstall.modules.errors import TemplateNotFoundError
from kubeinstall.services import get_services

router = APIRouter(prefix="/scripts", tags=["scripts"])


class ResetRequest(BaseModel):
    keys: Optional[List[str]] = None


class RenderRequest(BaseModel):
    distro: str
    step: str
    version: Optional[str] = None
    repoUrl: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


@router.get("")
def get_scripts():
    return get_services().scripts.all()


@router.put("")
def update_scripts(scripts: Dict[str, str]):
    store = get_services().scripts
    store.update(scripts)
    return store.all()


@router.post("/reset")
def reset_scripts(req: ResetRequest):
    store = get_services().scripts
    store.reset(req.keys)
    return store.all()


@router.get("/{key}/default")
def get_default_script(key: str):
    defaults = get_services().scripts.defaults()
    if key not in defaults:
        distro, _, step = key.partition("_")
        raise TemplateNotFoundError(distro, step)
    return {"key": key, "content": defaults[key]}


@router.post("/render")
def render_script(req: RenderRequest):
    services = get_services()
    script = services.scripts.render(
        req.distro,
        req.step,
        version=req.version,
        repo_url=services.operations.repo_url(req.repoUrl),
        **req.params,
    )
    return {"distro": req.distro, "step": req.step, "script": script}
