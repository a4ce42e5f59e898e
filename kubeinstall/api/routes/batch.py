from typing import Any, Dict, List

from fastapi import APIRouter
from pydantic import BaseModel, Field

from kubeinstall.services import get_services

router = APIRouter(prefix="/batch", tags=["batch"])


class BatchRequest(BaseModel):
    nodeIds: List[str]
    params: Dict[str, Any] = Field(default_factory=dict)


@router.get("/operations")
def list_operations():
    return get_services().batch.operations


@router.post("/{operation}")
def run_batch(operation: str, req: BatchRequest):
    results = get_services().batch.run_batch(req.nodeIds, operation, **req.params)
    return {
        "operation": operation,
        "results": {node_id: result.to_dict() for node_id, result in results.items()},
    }
