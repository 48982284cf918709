"""
GenerationService — the synchronous entry points of the pipeline.

  start_generation   plan → debit → persist → dispatch segment 0 (or the one-shot)
  quote_plan         price a duration without charging
  continue_segment   human-supplied prompt + seed frame → dispatch segment N
  get_status         pure read for the client poller
  suggest_prompt     advisory next-segment prompt

Anything that fails before a request is accepted is rolled back (refund
the debit, delete the rows) before the error reaches the client. All later
progress happens in PipelineWebhookHandler.
"""

import logging
from typing import Callable, Optional
from uuid import uuid4

from .. import metrics
from ..gemini import suggest_continuation_prompt
from .dispatcher import DEFAULT_RESOLUTION, PredictionDispatcher
from .errors import (
    ChainNotAwaitingInput,
    DispatchFailed,
    MissingContinuationInput,
    OutOfOrderSegment,
    RecordNotFound,
)
from .ledger import CreditLedger
from .models import (
    ContinuationAccepted,
    ContinueRequest,
    GenerateRequest,
    GenerationAccepted,
    GenerationRecord,
    GenerationStatus,
    GenerationStatusResponse,
    PlanResponse,
    SegmentPlan,
    SegmentPlanRow,
)
from .planner import plan_segments, snap_duration
from .store import GenerationStore

logger = logging.getLogger(__name__)


class GenerationService:

    def __init__(
        self,
        store: GenerationStore,
        ledger: CreditLedger,
        dispatcher: PredictionDispatcher,
        prompt_suggester: Callable[..., str] = suggest_continuation_prompt,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.prompt_suggester = prompt_suggester

    # ═════════════════════════════════════════════════════════════════════
    # A. Accept a generation request
    # ═════════════════════════════════════════════════════════════════════

    def start_generation(self, request: GenerateRequest) -> GenerationAccepted:
        """
        Plan, charge the whole plan upfront, persist, and dispatch the first
        prediction. Answers as soon as the external job is submitted.

        Errors (all rolled back before raising):
          - InvalidPlan:         duration / unit out of range
          - InsufficientCredits: balance below plan cost
          - DispatchFailed:      external submission refused
        """
        plan = plan_segments(request.duration, request.segment_duration)
        generation_id = str(uuid4())

        credits_remaining = self.ledger.debit(
            request.user_id,
            plan.credit_cost,
            description=f"Video generation: {plan.total_segments} x {plan.segment_duration}s",
            generation_id=generation_id,
        )

        try:
            first = self._persist_request(generation_id, request, plan)
        except Exception as e:
            logger.error(f"Persisting generation {generation_id} failed: {e}", exc_info=True)
            self._roll_back(generation_id, request.user_id, plan.credit_cost, "Generation could not be saved")
            raise

        try:
            prediction_id = self.dispatcher.submit_video(
                image_url=first.image_ref,
                prompt=first.prompt,
                duration=plan.segment_duration,
                resolution=request.resolution,
                generate_audio=request.generate_audio,
            )
            self.store.update_generation(first.id, {"prediction_ref": prediction_id})
        except DispatchFailed as e:
            metrics.record_error("start_generation", f"dispatch_{e.reason}", str(e), generation_id)
            self._roll_back(generation_id, request.user_id, plan.credit_cost, f"Dispatch failed ({e.reason})")
            raise
        except Exception as e:
            logger.error(f"Recording prediction for {generation_id} failed: {e}", exc_info=True)
            self._roll_back(generation_id, request.user_id, plan.credit_cost, "Generation could not be started")
            raise

        metrics.inc_counter("generations.started")
        logger.info(
            f"Generation {generation_id} accepted: {plan.total_segments} x {plan.segment_duration}s, "
            f"cost={plan.credit_cost}, prediction={prediction_id}"
        )

        return GenerationAccepted(
            generation_id=generation_id,
            status=GenerationStatus.PROCESSING,
            prediction_id=prediction_id,
            is_multi_segment=plan.is_multi_segment,
            total_segments=plan.total_segments,
            credit_cost=plan.credit_cost,
            credits_remaining=credits_remaining,
        )

    def _persist_request(
        self, generation_id: str, request: GenerateRequest, plan: SegmentPlan
    ) -> GenerationRecord:
        """Write the rows for a new request; returns the record to dispatch."""
        top = GenerationRecord(
            id=generation_id,
            user_id=request.user_id,
            total_segments=plan.total_segments,
            segment_duration=plan.segment_duration,
            image_ref=request.image_url,
            prompt=request.prompt,
            requested_duration=request.duration,
            credit_cost=plan.credit_cost,
            resolution=request.resolution or DEFAULT_RESOLUTION,
            generate_audio=request.generate_audio,
        )
        self.store.insert_generation(top)

        if not plan.is_multi_segment:
            return top

        self.store.insert_segment_plans([
            SegmentPlanRow(
                parent_id=generation_id,
                segment_index=i,
                prompt=request.prompt if i == 0 else "",
                duration_seconds=seconds,
            )
            for i, seconds in enumerate(plan.segments)
        ])

        first_segment = GenerationRecord(
            id=str(uuid4()),
            user_id=request.user_id,
            parent_id=generation_id,
            segment_index=0,
            total_segments=plan.total_segments,
            segment_duration=plan.segment_duration,
            image_ref=request.image_url,
            prompt=request.prompt,
            requested_duration=plan.segment_duration,
            resolution=top.resolution,
            generate_audio=request.generate_audio,
        )
        self.store.insert_generation(first_segment)
        return first_segment

    def _roll_back(self, generation_id: str, user_id: str, amount: int, reason: str):
        """Undo an acceptance: refund the debit, then delete whatever rows exist."""
        self.ledger.refund(user_id, amount, reason, generation_id)
        for segment in self.store.list_segment_records(generation_id):
            self.store.delete_generation(segment.id)
        self.store.delete_segment_plans(generation_id)
        self.store.delete_generation(generation_id)
        logger.warning(f"Rolled back generation {generation_id}: {reason}")

    def _release_claim(self, parent_id: str, segment_id: str, reason: str):
        """Hand a claimed chain back to the user; credits stay held for the retry."""
        self.store.delete_generation(segment_id)
        self.store.transition(parent_id, {GenerationStatus.PROCESSING}, GenerationStatus.WAITING_FOR_INPUT)
        logger.warning(f"Released chain {parent_id} back to waiting_for_input: {reason}")

    def quote_plan(self, duration: int, segment_duration: int) -> PlanResponse:
        """Price a duration without charging; the duration is snapped to the unit first."""
        snapped = snap_duration(duration, segment_duration)
        plan = plan_segments(snapped, segment_duration)
        return PlanResponse(
            requested_duration=duration,
            snapped_duration=snapped,
            segment_duration=plan.segment_duration,
            segments=plan.segments,
            total_segments=plan.total_segments,
            total_duration=plan.total_duration,
            credit_cost=plan.credit_cost,
            is_multi_segment=plan.is_multi_segment,
        )

    # ═════════════════════════════════════════════════════════════════════
    # B. Continue a paused chain
    # ═════════════════════════════════════════════════════════════════════

    def continue_segment(self, request: ContinueRequest) -> ContinuationAccepted:
        """
        Dispatch the next segment of a chain that is waiting for input.

        Errors:
          - RecordNotFound:           unknown parent or not the caller's
          - OutOfOrderSegment:        segment_index != segments_completed
          - ChainNotAwaitingInput:    chain is processing / stitching / terminal
          - MissingContinuationInput: no seed frame supplied or extracted
          - DispatchFailed:           chain stays waiting_for_input, retryable
        """
        parent = self._get_owned(request.parent_generation_id, request.user_id)
        if not parent.is_multi_segment_parent:
            raise RecordNotFound(f"Generation {parent.id} is not a multi-segment generation")

        expected_index = parent.segments_completed
        if request.segment_index != expected_index:
            raise OutOfOrderSegment(expected_index, request.segment_index)
        if parent.status != GenerationStatus.WAITING_FOR_INPUT:
            raise ChainNotAwaitingInput(parent.id, parent.status.value)

        plan_row = self.store.get_segment_plan(parent.id, request.segment_index)
        if plan_row is None:
            raise OutOfOrderSegment(expected_index, request.segment_index)

        seed_frame = request.last_frame_url
        if not seed_frame:
            previous = self.store.get_segment_plan(parent.id, request.segment_index - 1)
            seed_frame = previous.last_frame_ref if previous else None
        if not seed_frame:
            raise MissingContinuationInput(
                f"No last frame for segment {request.segment_index - 1} of {parent.id}"
            )

        # Claim the chain; a concurrent continuation loses here
        claimed = self.store.transition(
            parent.id, {GenerationStatus.WAITING_FOR_INPUT}, GenerationStatus.PROCESSING
        )
        if claimed is None:
            current = self.store.get_generation(parent.id)
            raise ChainNotAwaitingInput(parent.id, current.status.value if current else "unknown")

        segment = GenerationRecord(
            id=str(uuid4()),
            user_id=parent.user_id,
            parent_id=parent.id,
            segment_index=request.segment_index,
            total_segments=parent.total_segments,
            segment_duration=plan_row.duration_seconds,
            image_ref=seed_frame,
            prompt=request.prompt,
            requested_duration=plan_row.duration_seconds,
            resolution=parent.resolution,
            generate_audio=parent.generate_audio,
        )

        try:
            self.store.update_segment_plan(parent.id, request.segment_index, {"prompt": request.prompt})
            if request.last_frame_url:
                # Frame the caller chose overrides the extracted one for the previous segment
                self.store.update_segment_plan(
                    parent.id, request.segment_index - 1, {"last_frame_ref": request.last_frame_url}
                )
            self.store.insert_generation(segment)
            prediction_id = self.dispatcher.submit_video(
                image_url=seed_frame,
                prompt=request.prompt,
                duration=plan_row.duration_seconds,
                resolution=parent.resolution,
                generate_audio=parent.generate_audio,
            )
            self.store.update_generation(segment.id, {"prediction_ref": prediction_id})
        except DispatchFailed as e:
            metrics.record_error("continue_segment", f"dispatch_{e.reason}", str(e), parent.id)
            self._release_claim(parent.id, segment.id, f"Dispatch failed ({e.reason})")
            raise
        except Exception as e:
            logger.error(f"Continuing {parent.id} at segment {request.segment_index} failed: {e}", exc_info=True)
            self._release_claim(parent.id, segment.id, "Segment could not be started")
            raise

        metrics.inc_counter("generations.continued")
        logger.info(
            f"Segment {request.segment_index + 1}/{parent.total_segments} of {parent.id} "
            f"dispatched: prediction={prediction_id}"
        )

        return ContinuationAccepted(
            parent_generation_id=parent.id,
            segment_generation_id=segment.id,
            segment_index=request.segment_index,
            prediction_id=prediction_id,
            message=f"Segment {request.segment_index + 1} generation started",
        )

    # ═════════════════════════════════════════════════════════════════════
    # C. Status (read-only)
    # ═════════════════════════════════════════════════════════════════════

    def get_status(self, generation_id: str, user_id: Optional[str] = None) -> GenerationStatusResponse:
        """
        Current state of a generation as the client poller sees it. Never
        writes; the webhook and continuation endpoints own all transitions.
        """
        record = self._get_owned(generation_id, user_id)

        response = GenerationStatusResponse(
            generation_id=record.id,
            status=record.status,
            video_url=record.best_video_ref,
            error_message=record.error_detail,
            created_at=record.created_at,
            completed_at=record.completed_at,
            total_segments=record.total_segments,
            is_stitching=record.status == GenerationStatus.STITCHING,
        )

        if not record.is_multi_segment_parent:
            response.segments_completed = 1 if record.status == GenerationStatus.COMPLETED else 0
            return response

        response.is_multi_segment = True
        response.segments_completed = record.segments_completed
        response.is_waiting_for_input = record.status == GenerationStatus.WAITING_FOR_INPUT

        if record.segments_completed > 0:
            latest = self.store.get_segment_plan(record.id, record.segments_completed - 1)
            if latest is not None:
                response.last_frame_url = latest.last_frame_ref
                if response.video_url is None:
                    response.video_url = latest.persisted_video_ref or latest.video_ref

        if response.is_waiting_for_input:
            response.next_segment_index = record.segments_completed

        return response

    # ═════════════════════════════════════════════════════════════════════
    # D. Prompt suggestion
    # ═════════════════════════════════════════════════════════════════════

    def suggest_prompt(self, generation_id: str, user_id: str) -> str:
        """Ask the LLM for a prompt for the next segment of a chain."""
        parent = self._get_owned(generation_id, user_id)
        plans = self.store.list_segment_plans(parent.id)
        previous_prompts = [p.prompt for p in plans[: parent.segments_completed] if p.prompt]

        return self.prompt_suggester(
            original_prompt=parent.prompt,
            segment_index=parent.segments_completed,
            previous_prompts=previous_prompts,
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    def _get_owned(self, generation_id: str, user_id: Optional[str]) -> GenerationRecord:
        record = self.store.get_generation(generation_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise RecordNotFound(f"Generation {generation_id} not found for user {user_id}")
        return record
