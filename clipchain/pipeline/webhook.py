"""
Pipeline Webhook Handler — the state machine driven by prediction callbacks.

Video stage, one-shot record:
  processing ──success──→ completed            (or → adding_audio when the foley pass runs)
  processing ──failure──→ failed + refund

Video stage, segment of a chain:
  segment processing → completed, parent.segments_completed += 1
    parent processing → waiting_for_input       (more segments to go, last frame extracted)
    parent processing → stitching               (all segments done; finalize_chain runs next)
  segment failure → segment failed, parent failed + refund of the whole chain

Audio stage:
  adding_audio → completed (with audio, or the silent video if the pass failed)

Every transition is conditional on the expected prior status and the
segment counter is compare-and-set, so a redelivered callback never applies
the same step twice. A redelivery for a record that already moved on
finishes any step a partial earlier run left undone. Refunds are keyed on
the top-level generation id and happen at most once.
"""

import logging
import os
from typing import Any, Optional

from pydantic import BaseModel

from .. import metrics
from .dispatcher import PredictionDispatcher
from .errors import (
    DispatchFailed,
    GenerationFailed,
    InvalidCallback,
    RecordNotFound,
    StitchFailed,
)
from .frames import FrameExtractor
from .ledger import CreditLedger
from .models import (
    ACTIVE_STATUSES,
    CallbackStage,
    GenerationRecord,
    GenerationStatus,
    PredictionCallback,
    VideoRow,
    now_iso,
)
from .stitcher import Stitcher
from .storage import MediaStorage
from .store import GenerationStore, completed_fields

logger = logging.getLogger(__name__)

AUDIO_PASS_ENABLED = os.getenv("AUDIO_PASS_ENABLED", "false").lower() in ("1", "true", "yes")

SUCCESS = "succeeded"
FAILURE_STATUSES = ("failed", "canceled")


class WebhookOutcome(BaseModel):
    action: str  # completed | failed | waiting_for_input | stitching | adding_audio | duplicate | ignored
    generation_id: str
    parent_id: Optional[str] = None

    @property
    def needs_stitch(self) -> bool:
        return self.action == "stitching"


def extract_output_url(output: Any) -> Optional[str]:
    """Pull a video URL out of the shapes prediction outputs come in."""
    if isinstance(output, list):
        output = output[0] if output else None
    if isinstance(output, dict):
        output = output.get("url") or output.get("video")
    if isinstance(output, str) and output.startswith(("http://", "https://")):
        return output
    return None


def describe_error(error: Any) -> str:
    if not error:
        return "Video generation failed"
    if isinstance(error, dict):
        error = error.get("detail") or error.get("message") or str(error)
    return str(error)[:500]


def rendered_seconds(record: GenerationRecord) -> int:
    if record.segment_duration and record.total_segments > 1:
        return record.segment_duration * record.total_segments
    return record.segment_duration or record.requested_duration


class PipelineWebhookHandler:

    def __init__(
        self,
        store: GenerationStore,
        ledger: CreditLedger,
        dispatcher: PredictionDispatcher,
        storage: MediaStorage,
        extractor: FrameExtractor,
        stitcher: Stitcher,
        audio_pass_enabled: bool = AUDIO_PASS_ENABLED,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.storage = storage
        self.extractor = extractor
        self.stitcher = stitcher
        self.audio_pass_enabled = audio_pass_enabled

    # ═════════════════════════════════════════════════════════════════════
    # Entry point
    # ═════════════════════════════════════════════════════════════════════

    def handle(self, stage: str, callback: PredictionCallback) -> WebhookOutcome:
        """
        Apply one callback. Safe to call any number of times with the same
        payload.

        Raises:
            InvalidCallback: unknown stage or no prediction id
            RecordNotFound:  no generation carries this prediction id
        """
        try:
            stage = CallbackStage(stage)
        except ValueError:
            raise InvalidCallback(f"Unknown callback stage: {stage!r}")
        if not callback.id:
            raise InvalidCallback("No prediction ID provided")

        record = self.store.find_by_prediction(stage, callback.id)
        if record is None:
            metrics.inc_counter("webhook.unknown_prediction")
            raise RecordNotFound(f"No generation for prediction {callback.id} (stage={stage.value})")

        status = (callback.status or "").lower()
        logger.info(f"Webhook {stage.value} for {record.id}: prediction={callback.id} status={status}")

        if status != SUCCESS and status not in FAILURE_STATUSES:
            # starting / processing notifications carry nothing to apply
            return WebhookOutcome(action="ignored", generation_id=record.id, parent_id=record.parent_id)

        if stage == CallbackStage.AUDIO:
            return self._handle_audio(record, status, callback)

        if record.status != GenerationStatus.PROCESSING:
            return self._replay(record, status)

        if status != SUCCESS:
            return self._fail_video(record, describe_error(callback.error))

        output_url = extract_output_url(callback.output)
        if not output_url:
            logger.error(f"Prediction {callback.id} succeeded without a usable output: {callback.output!r}")
            return self._fail_video(record, "No video URL in prediction output")

        persisted_url = self._persist_output(record.user_id, output_url)

        if record.is_segment:
            return self._complete_segment(record, output_url, persisted_url)
        return self._complete_one_shot(record, output_url, persisted_url)

    def _replay(self, record: GenerationRecord, status: str) -> WebhookOutcome:
        """
        Redelivered callback for a record that already moved on.

        The first delivery may have died between writes, so a replay
        finishes whatever it left undone: a completed segment whose chain
        never advanced, a failed segment whose chain never failed, a
        refund that was never applied, a stitch that never ran, or an
        audio pass that was never dispatched.
        """
        metrics.inc_counter("webhook.duplicate")
        logger.info(f"Duplicate callback for {record.id} (status={record.status.value})")
        duplicate = WebhookOutcome(action="duplicate", generation_id=record.id, parent_id=record.parent_id)

        if record.is_segment:
            return self._replay_segment(record, status) or duplicate

        if record.status == GenerationStatus.FAILED and status != SUCCESS:
            self._refund(record, "Video generation failed")
        elif (
            record.status == GenerationStatus.ADDING_AUDIO
            and status == SUCCESS
            and not record.audio_prediction_ref
        ):
            logger.warning(f"Audio pass for {record.id} was never dispatched, completing silent")
            return self._finish(record, {GenerationStatus.ADDING_AUDIO}, {})
        return duplicate

    def _replay_segment(self, segment: GenerationRecord, status: str) -> Optional[WebhookOutcome]:
        parent = self.store.get_generation(segment.parent_id)
        if parent is None:
            return None

        if segment.status == GenerationStatus.FAILED and status != SUCCESS:
            if parent.status in ACTIVE_STATUSES:
                logger.warning(f"Chain {parent.id} still {parent.status.value} after segment {segment.id} failed")
                parent = self._fail_chain(segment) or parent
            if parent.status == GenerationStatus.FAILED:
                self._refund(parent, "Video generation failed")
            return None

        if segment.status != GenerationStatus.COMPLETED or status != SUCCESS:
            return None

        if parent.status == GenerationStatus.PROCESSING and not self._later_segment_exists(segment):
            logger.warning(f"Chain {parent.id} did not advance after segment {segment.id}, resuming")
            return self._advance_chain(segment)

        if parent.status == GenerationStatus.STITCHING and segment.segment_index == parent.total_segments - 1:
            # Stitch task may have been lost; finalize_chain is guarded by status
            return WebhookOutcome(action="stitching", generation_id=segment.id, parent_id=parent.id)
        return None

    def _later_segment_exists(self, segment: GenerationRecord) -> bool:
        return any(
            other.segment_index > segment.segment_index
            for other in self.store.list_segment_records(segment.parent_id)
        )

    # ═════════════════════════════════════════════════════════════════════
    # Failure path
    # ═════════════════════════════════════════════════════════════════════

    def _fail_video(self, record: GenerationRecord, detail: str) -> WebhookOutcome:
        # Vendor text goes to logs and metrics; the record keeps the public message
        failure = GenerationFailed(detail)
        failed = self.store.transition(
            record.id,
            {GenerationStatus.PROCESSING},
            GenerationStatus.FAILED,
            completed_fields(error_detail=failure.public_message),
        )
        if failed is None:
            return self._replay(self._current(record), "failed")

        metrics.inc_counter("generations.failed")
        metrics.record_error("webhook", type(failure).__name__, detail, record.parent_id or record.id)

        if record.is_segment:
            logger.error(f"Chain {record.parent_id} failed at segment {record.segment_index}: {detail}")
            top = self._fail_chain(failed)
        else:
            logger.error(f"Generation {record.id} failed: {detail}")
            top = failed

        if top is not None and top.status == GenerationStatus.FAILED:
            self._refund(top, "Video generation failed")
        return WebhookOutcome(action="failed", generation_id=record.id, parent_id=record.parent_id)

    def _fail_chain(self, segment: GenerationRecord) -> Optional[GenerationRecord]:
        """Fail the parent of a failed segment; returns the parent as it now stands."""
        chain_detail = (
            f"Segment {segment.segment_index + 1} of {segment.total_segments} failed. "
            f"{GenerationFailed.public_message}"
        )
        return self.store.transition(
            segment.parent_id,
            ACTIVE_STATUSES,
            GenerationStatus.FAILED,
            completed_fields(error_detail=chain_detail),
        ) or self.store.get_generation(segment.parent_id)

    def _refund(self, top: GenerationRecord, reason: str):
        if top.credit_cost <= 0:
            return
        self.ledger.refund_generation(top, f"Refund: {reason}"[:200])

    def _current(self, record: GenerationRecord) -> GenerationRecord:
        return self.store.get_generation(record.id) or record

    # ═════════════════════════════════════════════════════════════════════
    # Success paths
    # ═════════════════════════════════════════════════════════════════════

    def _persist_output(self, user_id: str, output_url: str) -> Optional[str]:
        """Durable copy of the external output; None keeps the raw URL in use."""
        try:
            return self.storage.persist_video(user_id, output_url)
        except Exception as e:
            metrics.inc_counter("storage.persist_failed")
            logger.warning(f"Could not persist {output_url}, keeping the external URL: {e}")
            return None

    def _complete_one_shot(
        self, record: GenerationRecord, output_url: str, persisted_url: Optional[str]
    ) -> WebhookOutcome:
        video_fields = {"video_ref": output_url, "persisted_video_ref": persisted_url}

        if self.audio_pass_enabled and not record.generate_audio:
            moved = self.store.transition(
                record.id, {GenerationStatus.PROCESSING}, GenerationStatus.ADDING_AUDIO, video_fields
            )
            if moved is None:
                return self._replay(self._current(record), SUCCESS)
            try:
                audio_id = self.dispatcher.submit_audio(moved.best_video_ref, record.prompt)
            except DispatchFailed as e:
                logger.warning(f"Audio pass dispatch failed for {record.id}, completing silent: {e}")
                return self._finish(moved, {GenerationStatus.ADDING_AUDIO}, {})
            self.store.update_generation(record.id, {"audio_prediction_ref": audio_id})
            logger.info(f"Generation {record.id} video ready, audio pass {audio_id} started")
            return WebhookOutcome(action="adding_audio", generation_id=record.id)

        return self._finish(record, {GenerationStatus.PROCESSING}, video_fields)

    def _handle_audio(
        self, record: GenerationRecord, status: str, callback: PredictionCallback
    ) -> WebhookOutcome:
        if record.status != GenerationStatus.ADDING_AUDIO:
            return self._replay(record, status)

        audio_url = extract_output_url(callback.output) if status == SUCCESS else None
        if audio_url:
            persisted_url = self._persist_output(record.user_id, audio_url)
            fields = {"video_ref": audio_url, "persisted_video_ref": persisted_url}
        else:
            # Silent video already on the record is the deliverable
            logger.warning(f"Audio pass failed for {record.id}: {describe_error(callback.error)}")
            metrics.inc_counter("audio.failed")
            fields = {}

        return self._finish(record, {GenerationStatus.ADDING_AUDIO}, fields)

    def _finish(self, record: GenerationRecord, expected: set, fields: dict) -> WebhookOutcome:
        done = self.store.transition(
            record.id, expected, GenerationStatus.COMPLETED, completed_fields(**fields)
        )
        if done is None:
            metrics.inc_counter("webhook.duplicate")
            return WebhookOutcome(action="duplicate", generation_id=record.id)

        metrics.inc_counter("generations.completed")
        logger.info(f"Generation {record.id} completed: {done.best_video_ref}")
        self._publish(done)
        return WebhookOutcome(action="completed", generation_id=record.id)

    def _complete_segment(
        self, record: GenerationRecord, output_url: str, persisted_url: Optional[str]
    ) -> WebhookOutcome:
        segment = self.store.transition(
            record.id,
            {GenerationStatus.PROCESSING},
            GenerationStatus.COMPLETED,
            completed_fields(video_ref=output_url, persisted_video_ref=persisted_url),
        )
        if segment is None:
            return self._replay(self._current(record), SUCCESS)
        return self._advance_chain(segment)

    def _advance_chain(self, segment: GenerationRecord) -> WebhookOutcome:
        """
        Move the parent on after a completed segment. Every step is safe to
        repeat, so a redelivered callback resumes here after a partial run.
        """
        parent_id = segment.parent_id
        self.store.update_segment_plan(parent_id, segment.segment_index, {
            "video_ref": segment.video_ref,
            "persisted_video_ref": segment.persisted_video_ref,
            "completed_at": segment.completed_at or now_iso(),
        })

        parent = self.store.get_generation(parent_id)
        if parent is None:
            raise RecordNotFound(f"Parent generation {parent_id} missing for segment {segment.id}")
        if parent.status != GenerationStatus.PROCESSING:
            logger.warning(f"Segment {segment.id} finished but chain {parent_id} is {parent.status.value}")
            return WebhookOutcome(action="ignored", generation_id=segment.id, parent_id=parent_id)

        completed = self.store.increment_segments_completed(parent_id, expected=segment.segment_index)
        if completed is None:
            # Counted by an earlier delivery that stopped before the parent moved
            completed = segment.segment_index + 1
        logger.info(f"Chain {parent_id}: segment {completed}/{parent.total_segments} complete")

        duplicate = WebhookOutcome(action="duplicate", generation_id=segment.id, parent_id=parent_id)
        if completed < parent.total_segments:
            moved = self.store.transition(
                parent_id, {GenerationStatus.PROCESSING}, GenerationStatus.WAITING_FOR_INPUT
            )
            if moved is None:
                return duplicate
            self._extract_frame(parent, segment.segment_index, segment.best_video_ref)
            return WebhookOutcome(action="waiting_for_input", generation_id=segment.id, parent_id=parent_id)

        moved = self.store.transition(parent_id, {GenerationStatus.PROCESSING}, GenerationStatus.STITCHING)
        if moved is None:
            return duplicate
        return WebhookOutcome(action="stitching", generation_id=segment.id, parent_id=parent_id)

    def _extract_frame(self, parent: GenerationRecord, segment_index: int, video_url: str):
        """Best-effort: the client can still supply its own frame on continue."""
        try:
            self.extractor.extract_for_segment(parent.id, segment_index, video_url, parent.user_id)
        except Exception as e:
            metrics.inc_counter("frames.extract_failed")
            logger.warning(f"Last-frame extraction failed for {parent.id} segment {segment_index}: {e}")

    # ═════════════════════════════════════════════════════════════════════
    # Stitching
    # ═════════════════════════════════════════════════════════════════════

    def finalize_chain(self, parent_id: str) -> Optional[GenerationRecord]:
        """
        Stitch a chain whose every segment completed. Runs as a background
        task after the webhook answers; a failure here fails the chain and
        refunds it.
        """
        parent = self.store.get_generation(parent_id)
        if parent is None or parent.status != GenerationStatus.STITCHING:
            logger.info(f"Chain {parent_id} is not awaiting a stitch, skipping")
            return parent

        try:
            plans = self.store.list_segment_plans(parent_id)
            if [p.segment_index for p in plans] != list(range(parent.total_segments)):
                raise StitchFailed(f"Segment plan for {parent_id} is incomplete: {len(plans)} rows")
            urls = [p.persisted_video_ref or p.video_ref for p in plans]
            result = self.stitcher.stitch(urls, parent.user_id)
        except Exception as e:
            logger.error(f"Stitching chain {parent_id} failed: {e}", exc_info=True)
            metrics.record_error("stitch", type(e).__name__, str(e), parent_id)
            failed = self.store.transition(
                parent_id,
                {GenerationStatus.STITCHING},
                GenerationStatus.FAILED,
                completed_fields(error_detail=StitchFailed.public_message),
            )
            if failed is not None:
                metrics.inc_counter("generations.failed")
                self._refund(failed, "Stitching failed")
            return failed

        done = self.store.transition(
            parent_id,
            {GenerationStatus.STITCHING},
            GenerationStatus.COMPLETED,
            completed_fields(video_ref=result.video_url, persisted_video_ref=result.video_url),
        )
        if done is not None:
            metrics.inc_counter("generations.completed")
            logger.info(f"Chain {parent_id} completed ({result.segment_count} segments): {result.video_url}")
            self._publish(done)
        return done

    # ── Library ──────────────────────────────────────────────────────────

    def _publish(self, record: GenerationRecord):
        """Add the finished video to the user's library; failures here never fail the generation."""
        try:
            inserted = self.store.record_video(VideoRow(
                user_id=record.user_id,
                generation_id=record.id,
                video_ref=record.video_ref or record.best_video_ref,
                persisted_video_ref=record.persisted_video_ref,
                thumbnail_ref=record.image_ref,
                prompt=record.prompt,
                duration=rendered_seconds(record),
            ))
            if inserted:
                self.store.increment_user_stats(record.user_id, 1, rendered_seconds(record))
        except Exception as e:
            metrics.inc_counter("library.publish_failed")
            logger.warning(f"Could not add {record.id} to the video library: {e}")
