"""
FastAPI routes for the generation pipeline.

Generation Endpoints:
  POST /generations                        — Plan, charge, dispatch (202)
  POST /generations/plan                   — Price a duration without charging
  POST /generations/continue               — Dispatch the next segment of a chain (202)
  GET  /generations/{id}                   — Status for the client poller
  POST /generations/{id}/suggest-prompt    — LLM suggestion for the next segment

Callback / Utility Endpoints:
  POST /pipeline-webhook?stage=&token=     — Prediction completion callbacks
  POST /frames/extract-last                — Last frame of an arbitrary video

Credit Endpoints:
  GET  /credits/{user_id}                  — Balance + transaction history
  POST /credits/verify-payment             — Confirm a Stripe checkout session
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from .. import metrics
from ..rate_limiter import RequestThrottle
from .errors import PipelineError
from .models import (
    ContinuationAccepted,
    ContinueRequest,
    CreditSummary,
    ExtractFrameRequest,
    GenerateRequest,
    GenerationAccepted,
    GenerationStatusResponse,
    PaymentConfirmation,
    PlanRequest,
    PlanResponse,
    PredictionCallback,
    SuggestPromptRequest,
    VerifyPaymentRequest,
)
from .wiring import Pipeline, get_pipeline

logger = logging.getLogger(__name__)


def _http_error(e: PipelineError) -> HTTPException:
    """Translate a pipeline error into the response the client sees."""
    if e.status_code >= 500:
        logger.error(f"{type(e).__name__}: {e}")
    else:
        logger.info(f"{type(e).__name__}: {e}")
    return HTTPException(status_code=e.status_code, detail=e.public_message)


_throttle: Optional[RequestThrottle] = None


def get_throttle() -> RequestThrottle:
    global _throttle
    if _throttle is None:
        _throttle = RequestThrottle.from_env()
    return _throttle


# ═════════════════════════════════════════════════════════════════════════════
# Generation Router
# ═════════════════════════════════════════════════════════════════════════════

generation_router = APIRouter(prefix="/generations", tags=["generations"])


# ── A. Start ─────────────────────────────────────────────────────────────────

@generation_router.post("", response_model=GenerationAccepted, status_code=202)
def start_generation(
    request: GenerateRequest,
    pipeline: Pipeline = Depends(get_pipeline),
    throttle: RequestThrottle = Depends(get_throttle),
):
    """
    Charge the whole plan and dispatch the first prediction.

    Errors:
      - 400: Invalid duration / segment unit, or input rejected by the model
      - 402: Insufficient credits
      - 429: Too many requests
      - 502: Video service unavailable (credits refunded)
    """
    allowed, _remaining, retry_after = throttle.check(request.user_id)
    if not allowed:
        metrics.inc_counter("generations.throttled")
        raise HTTPException(
            status_code=429,
            detail="Too many generation requests. Please wait and try again.",
            headers={"Retry-After": str(retry_after)},
        )

    try:
        return pipeline.service.start_generation(request)
    except PipelineError as e:
        raise _http_error(e)


@generation_router.post("/plan", response_model=PlanResponse)
def quote_plan(request: PlanRequest, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        return pipeline.service.quote_plan(request.duration, request.segment_duration)
    except PipelineError as e:
        raise _http_error(e)


# ── B. Continue ──────────────────────────────────────────────────────────────

@generation_router.post("/continue", response_model=ContinuationAccepted, status_code=202)
def continue_segment(request: ContinueRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Errors:
      - 400: No last frame available for the previous segment
      - 404: Generation not found
      - 409: Wrong segment index, or chain not waiting for input
      - 502: Video service unavailable (chain stays waiting, retry allowed)
    """
    try:
        return pipeline.service.continue_segment(request)
    except PipelineError as e:
        raise _http_error(e)


# ── C. Status ────────────────────────────────────────────────────────────────

@generation_router.get("/{generation_id}", response_model=GenerationStatusResponse)
def get_generation_status(
    generation_id: str,
    user_id: Optional[str] = Query(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return pipeline.service.get_status(generation_id, user_id)
    except PipelineError as e:
        raise _http_error(e)


@generation_router.post("/{generation_id}/suggest-prompt")
def suggest_prompt(
    generation_id: str,
    request: SuggestPromptRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        suggestion = pipeline.service.suggest_prompt(generation_id, request.user_id)
    except PipelineError as e:
        raise _http_error(e)
    return {"generation_id": generation_id, "prompt": suggestion}


# ═════════════════════════════════════════════════════════════════════════════
# Callback Router
# ═════════════════════════════════════════════════════════════════════════════

callback_router = APIRouter(tags=["callbacks"])


@callback_router.post("/pipeline-webhook")
def pipeline_webhook(
    callback: PredictionCallback,
    background_tasks: BackgroundTasks,
    stage: str = Query("video"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Completion callback from the prediction service. The token query
    parameter is checked by WebhookAuthMiddleware before this runs.
    """
    metrics.inc_counter(f"webhook.received.{stage}")
    try:
        outcome = pipeline.webhook.handle(stage, callback)
    except PipelineError as e:
        raise _http_error(e)

    if outcome.needs_stitch:
        background_tasks.add_task(pipeline.webhook.finalize_chain, outcome.parent_id)

    return {"ok": True, "outcome": outcome.action, "generation_id": outcome.generation_id}


@callback_router.post("/frames/extract-last")
def extract_last_frame(request: ExtractFrameRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Errors:
      - 422: Frame could not be extracted
      - 504: Extraction timed out
    """
    try:
        frame_url = pipeline.extractor.extract_last_frame(request.video_url, request.user_id)
    except PipelineError as e:
        raise _http_error(e)
    return {"frame_url": frame_url}


# ═════════════════════════════════════════════════════════════════════════════
# Credit Router
# ═════════════════════════════════════════════════════════════════════════════

credit_router = APIRouter(prefix="/credits", tags=["credits"])


@credit_router.get("/{user_id}", response_model=CreditSummary)
def get_credits(user_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.ledger.summary(user_id)


@credit_router.post("/verify-payment", response_model=PaymentConfirmation)
def verify_payment(request: VerifyPaymentRequest, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        return pipeline.payments.verify(request.session_id)
    except PipelineError as e:
        raise _http_error(e)
