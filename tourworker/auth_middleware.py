"""
Shared-secret authentication for the worker.

Every non-public endpoint requires an X-Worker-Secret header matching the
WORKER_SHARED_SECRET environment variable. The web app attaches it when
forwarding requests, together with X-User-Id for the signed-in user.
"""

import os
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests without the worker secret."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None):
        super().__init__(app)
        self.secret = WORKER_SECRET if secret is None else secret

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the user the request is made on behalf of."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
