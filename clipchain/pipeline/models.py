"""
Pydantic models and enums for the multi-segment generation pipeline.

Persisted rows (GenerationRecord, SegmentPlanRow, CreditTransaction,
VideoRow) mirror the columns of the Supabase tables one-to-one so the
store can round-trip them with ``model_dump()`` / ``model_validate()``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Generation Status ────────────────────────────────────────────────────────

class GenerationStatus(str, Enum):
    PROCESSING = "processing"
    WAITING_FOR_INPUT = "waiting_for_input"
    ADDING_AUDIO = "adding_audio"
    STITCHING = "stitching"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})

# Statuses a top-level chain can be in while it is still refundable.
ACTIVE_STATUSES = frozenset({
    GenerationStatus.PROCESSING,
    GenerationStatus.WAITING_FOR_INPUT,
    GenerationStatus.ADDING_AUDIO,
    GenerationStatus.STITCHING,
})


class CallbackStage(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    USED = "used"
    REFUND = "refund"


# ── Persisted Rows ───────────────────────────────────────────────────────────

class GenerationRecord(BaseModel):
    """
    One row per dispatched segment plus one parent row per overall request.

    A one-shot request is a single row with ``parent_id=None`` and
    ``total_segments=1``. A multi-segment request has a parent row
    (``parent_id=None``, ``total_segments=N``, no prediction of its own)
    and one child row per dispatched segment.
    """
    id: str
    user_id: str
    parent_id: Optional[str] = None
    segment_index: Optional[int] = None
    total_segments: int = 1
    segments_completed: int = 0
    segment_duration: Optional[int] = None
    prediction_ref: Optional[str] = None
    audio_prediction_ref: Optional[str] = None
    status: GenerationStatus = GenerationStatus.PROCESSING
    image_ref: str
    prompt: str = ""
    requested_duration: int = 0
    credit_cost: int = 0
    resolution: str = "1080p"
    generate_audio: bool = True
    video_ref: Optional[str] = None
    persisted_video_ref: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    completed_at: Optional[str] = None

    @property
    def is_segment(self) -> bool:
        return self.parent_id is not None

    @property
    def is_multi_segment_parent(self) -> bool:
        return self.parent_id is None and self.total_segments > 1

    @property
    def best_video_ref(self) -> Optional[str]:
        return self.persisted_video_ref or self.video_ref


class SegmentPlanRow(BaseModel):
    parent_id: str
    segment_index: int
    prompt: str = ""
    duration_seconds: int
    last_frame_ref: Optional[str] = None
    video_ref: Optional[str] = None
    persisted_video_ref: Optional[str] = None
    completed_at: Optional[str] = None


class CreditTransaction(BaseModel):
    id: str
    user_id: str
    amount: int  # signed: negative for used, positive for purchase/refund
    kind: TransactionKind
    description: str = ""
    generation_id: Optional[str] = None
    source_ref: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)


class VideoRow(BaseModel):
    """Entry in the user's video library; one per completed top-level generation."""
    user_id: str
    generation_id: str
    video_ref: str
    persisted_video_ref: Optional[str] = None
    thumbnail_ref: Optional[str] = None
    prompt: str = ""
    duration: int = 0
    created_at: str = Field(default_factory=now_iso)


# ── Planner Output ───────────────────────────────────────────────────────────

class SegmentPlan(BaseModel):
    requested_duration: int
    segment_duration: int
    segments: list[int]
    credit_cost: int

    @property
    def total_segments(self) -> int:
        return len(self.segments)

    @property
    def total_duration(self) -> int:
        return sum(self.segments)

    @property
    def is_multi_segment(self) -> bool:
        return len(self.segments) > 1


# ── External Service Callback ────────────────────────────────────────────────

class PredictionCallback(BaseModel):
    """Body the prediction service POSTs to the pipeline webhook."""
    id: Optional[str] = None
    status: Optional[str] = None
    output: Any = None
    error: Any = None


# ── API Request Models ───────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    user_id: str
    image_url: str
    prompt: str = "Transform this image into a cinematic video"
    duration: int = Field(6, description="Total requested duration in seconds")
    segment_duration: int = Field(6, description="Segment unit: 6 or 10 seconds")
    resolution: Optional[str] = None
    generate_audio: bool = True


class PlanRequest(BaseModel):
    duration: int
    segment_duration: int = 6


class ContinueRequest(BaseModel):
    user_id: str
    parent_generation_id: str
    segment_index: int
    prompt: str = Field(..., min_length=1)
    last_frame_url: Optional[str] = None


class SuggestPromptRequest(BaseModel):
    user_id: str


class ExtractFrameRequest(BaseModel):
    video_url: str
    user_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    session_id: str


# ── API Response Models ──────────────────────────────────────────────────────

class PlanResponse(BaseModel):
    requested_duration: int
    snapped_duration: int
    segment_duration: int
    segments: list[int]
    total_segments: int
    total_duration: int
    credit_cost: int
    is_multi_segment: bool


class GenerationAccepted(BaseModel):
    generation_id: str
    status: GenerationStatus
    prediction_id: Optional[str] = None
    is_multi_segment: bool = False
    total_segments: int = 1
    credit_cost: int
    credits_remaining: int


class ContinuationAccepted(BaseModel):
    parent_generation_id: str
    segment_generation_id: str
    segment_index: int
    prediction_id: str
    status: GenerationStatus = GenerationStatus.PROCESSING
    message: str = ""


class GenerationStatusResponse(BaseModel):
    generation_id: str
    status: GenerationStatus
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    is_multi_segment: bool = False
    segments_completed: int = 0
    total_segments: int = 1
    is_waiting_for_input: bool = False
    is_stitching: bool = False
    last_frame_url: Optional[str] = None
    next_segment_index: Optional[int] = None


class CreditSummary(BaseModel):
    user_id: str
    balance: int
    transactions: list[CreditTransaction] = Field(default_factory=list)


class PaymentConfirmation(BaseModel):
    paid: bool
    credits: int = 0
    user_id: Optional[str] = None
    session_ref: str
