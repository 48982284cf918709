"""
Shared-secret authentication for the pipeline webhook.

The prediction service cannot send custom headers, so the secret travels in
the callback URL the dispatcher builds: /pipeline-webhook?stage=...&token=...
Requests to that path without a matching token never reach the handler.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .pipeline.dispatcher import WEBHOOK_PATH


class WebhookAuthMiddleware(BaseHTTPMiddleware):
    """Reject callbacks whose ?token= does not match WEBHOOK_SECRET."""

    def __init__(self, app, secret: str | None = None):
        super().__init__(app)
        self.secret = secret if secret is not None else os.environ.get("WEBHOOK_SECRET", "")

    async def dispatch(self, request: Request, call_next):
        if request.url.path != WEBHOOK_PATH:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WEBHOOK_SECRET not configured"})

        provided = request.query_params.get("token", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing webhook token"})

        return await call_next(request)
