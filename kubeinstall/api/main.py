import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kubeinstall.api.middleware import AuthMiddleware
from kubeinstall.api.routes import batch, cluster, kubeadm, logs, nodes, scripts
from kubeinstall.modules.errors import (
    BatchInputError, ConnectError, CredentialError, KubeInstallError, LogTransitionError,
    NodeNotFoundError, PackageSourceError, RemoteCommandError, TemplateNotFoundError,
    TemplateRenderError, WorkflowError,
)
from kubeinstall.services import get_services

load_dotenv()
logger = logging.getLogger("kubeinstall.api")

ERROR_STATUS = (
    (NodeNotFoundError, 404),
    (TemplateNotFoundError, 404),
    (CredentialError, 400),
    (BatchInputError, 400),
    (PackageSourceError, 400),
    (TemplateRenderError, 400),
    (WorkflowError, 409),
    (LogTransitionError, 409),
    (ConnectError, 502),
    (RemoteCommandError, 502),
)


def status_for(exc: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    versions = get_services().versions
    versions.start()
    yield
    versions.stop()


app = FastAPI(title="kubeinstall", lifespan=lifespan)
app.add_middleware(AuthMiddleware)


@app.exception_handler(KubeInstallError)
async def kubeinstall_error_handler(request: Request, exc: KubeInstallError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "error": "ValueError"})


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(nodes.router)
app.include_router(batch.router)
app.include_router(cluster.router)
app.include_router(logs.router)
app.include_router(scripts.router)
app.include_router(kubeadm.router)
