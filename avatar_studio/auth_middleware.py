"""
Shared-secret authentication middleware for internal endpoints.

POST /events (internal event ingestion) requires an X-Worker-Secret header
matching the WORKER_SHARED_SECRET environment variable. The API gateway
attaches this header when forwarding events to the worker.
"""

import os
import secrets
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/events",)


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to internal endpoints."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        secret = os.environ.get("WORKER_SHARED_SECRET", "")
        if not secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
