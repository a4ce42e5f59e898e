from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import os

from kubeinstall.config import get_config

OPEN_PATHS = ("/docs", "/openapi.json", "/health")


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, token: str = None):
        super().__init__(app)
        self.token = token or os.getenv("KUBEINSTALL_API_KEY") or get_config().api.api_key

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(OPEN_PATHS):
            return await call_next(request)

        auth_header = request.headers.get("X-API-Key")
        if auth_header != self.token:
            return JSONResponse(status_code=403, content={"detail": "Unauthorized"})
        return await call_next(request)
