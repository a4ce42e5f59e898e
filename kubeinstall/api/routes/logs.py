import asyncio
import logging

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from kubeinstall.api.sse import PING_EVENT, format_sse_event
from kubeinstall.services import get_services

logger = logging.getLogger("kubeinstall.api.logs")

router = APIRouter(prefix="/logs", tags=["logs"])

POLL_SECONDS = 1.0
PING_AFTER_IDLE_TICKS = 20


@router.get("")
def list_logs():
    return [e.to_dict() for e in get_services().audit.list()]


@router.get("/node/{node_id}")
def list_node_logs(node_id: str):
    return [e.to_dict() for e in get_services().audit.list_by_node(node_id)]


@router.delete("")
def clear_logs():
    get_services().audit.clear()
    return {"status": "success"}


@router.get("/stream")
async def stream_logs():
    """Live log entries as server-sent events, starting from now."""
    sub = get_services().audit.subscribe()

    async def event_generator():
        idle_ticks = 0
        try:
            while not sub.closed:
                entry = await run_in_threadpool(sub.get, POLL_SECONDS)
                if entry is not None:
                    idle_ticks = 0
                    yield format_sse_event("log", entry)
                    continue
                idle_ticks += 1
                if idle_ticks >= PING_AFTER_IDLE_TICKS:
                    idle_ticks = 0
                    yield PING_EVENT
        except asyncio.CancelledError:
            logger.debug(f"Log stream {sub.id} cancelled")
            raise
        finally:
            sub.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
