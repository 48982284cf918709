import os
import time
import logging

import uvicorn
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

from . import metrics
from .auth_middleware import WebhookAuthMiddleware
from .pipeline.routes import generation_router, callback_router, credit_router
from .pipeline.wiring import get_pipeline

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Generation service starting up...")
    metrics.set_gauge("start_time", time.time())
    get_pipeline()
    yield
    logger.info("Generation service shutting down...")


app = FastAPI(title="clipchain", lifespan=lifespan)
app.add_middleware(WebhookAuthMiddleware)

app.include_router(generation_router)
app.include_router(callback_router)
app.include_router(credit_router)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    metrics.record_error("http", type(exc).__name__, str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def record_latency(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    metrics.record_latency(f"{request.method} {endpoint}", (time.perf_counter() - started) * 1000)
    return response


@app.get("/health")
def health_check():
    """Verify the service is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "replicate_token_set": bool(os.environ.get("REPLICATE_API_TOKEN")),
        "webhook_secret_set": bool(os.environ.get("WEBHOOK_SECRET")),
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY")),
        "stripe_key_set": bool(os.environ.get("STRIPE_SECRET_KEY")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all service metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("clipchain.main:app", host="0.0.0.0", port=port, reload=True)
