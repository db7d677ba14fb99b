"""
Shared-secret authentication middleware for the generation worker.

Mutating calls under /sessions, /quota and /flags require an X-Worker-Secret
header matching WORKER_SHARED_SECRET. The web backend attaches this header
when forwarding user actions to the worker. Reads (GET) and /health,
/metrics stay open.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import ENVIRONMENT, WORKER_SECRET

PROTECTED_PREFIXES = ("/sessions", "/quota", "/flags")
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, secret: str = WORKER_SECRET, environment: str = ENVIRONMENT):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if request.method in SAFE_METHODS or not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
