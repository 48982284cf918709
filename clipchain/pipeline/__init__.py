"""
Multi-segment image-to-video generation pipeline

  Acceptance   — Planner → Credit Ledger → Store → Prediction Dispatcher
  Callbacks    — Webhook state machine → Frame Extractor / Stitcher
  Continuation — User prompt + last frame → next segment

Routers live in ``clipchain.pipeline.routes``; assembly in ``clipchain.pipeline.wiring``.
"""

from .models import GenerationStatus, CallbackStage
from .errors import PipelineError

__all__ = [
    "GenerationStatus",
    "CallbackStage",
    "PipelineError",
]
