"""
Request acceptance, continuation and status reads.
"""
import pytest

from clipchain.pipeline.errors import (
    ChainNotAwaitingInput,
    DispatchFailed,
    InsufficientCredits,
    InvalidPlan,
    MissingContinuationInput,
    OutOfOrderSegment,
    RecordNotFound,
)
from clipchain.pipeline.models import ContinueRequest, GenerateRequest, GenerationStatus

from conftest import IMAGE, USER, fund, succeeded


def _request(**overrides):
    fields = {"user_id": USER, "image_url": IMAGE, "prompt": "waves at dusk", "duration": 6, "segment_duration": 6}
    fields.update(overrides)
    return GenerateRequest(**fields)


def _start_chain(pipeline, segments=3):
    accepted = pipeline.service.start_generation(_request(duration=6 * segments))
    return accepted


def _finish_segment(pipeline, prediction_id):
    return pipeline.webhook.handle("video", succeeded(prediction_id))


# ═════════════════════════════════════════════════════════════════════════════
# Acceptance
# ═════════════════════════════════════════════════════════════════════════════

class TestStartGeneration:

    def test_one_shot_debits_and_dispatches(self, pipeline, store, dispatcher):
        fund(pipeline, credits=5)
        accepted = pipeline.service.start_generation(_request())

        assert accepted.status == GenerationStatus.PROCESSING
        assert accepted.credit_cost == 1
        assert accepted.credits_remaining == 4
        assert not accepted.is_multi_segment

        record = store.get_generation(accepted.generation_id)
        assert record.prediction_ref == accepted.prediction_id
        assert record.parent_id is None
        assert dispatcher.video_calls[0]["image_url"] == IMAGE
        assert dispatcher.video_calls[0]["duration"] == 6

    def test_multi_segment_creates_parent_plans_and_first_segment(self, pipeline, store, dispatcher):
        fund(pipeline, credits=5)
        accepted = pipeline.service.start_generation(_request(duration=18))

        assert accepted.is_multi_segment
        assert accepted.total_segments == 3
        assert accepted.credit_cost == 3

        parent = store.get_generation(accepted.generation_id)
        assert parent.total_segments == 3
        assert parent.prediction_ref is None

        plans = store.list_segment_plans(parent.id)
        assert [p.segment_index for p in plans] == [0, 1, 2]
        assert plans[0].prompt == "waves at dusk"
        assert plans[1].prompt == ""

        segments = store.list_segment_records(parent.id)
        assert len(segments) == 1
        assert segments[0].segment_index == 0
        assert segments[0].prediction_ref == accepted.prediction_id
        assert len(dispatcher.video_calls) == 1

    def test_insufficient_credits_creates_nothing(self, pipeline, store, dispatcher):
        fund(pipeline, credits=2)
        with pytest.raises(InsufficientCredits):
            pipeline.service.start_generation(_request(duration=18))
        assert pipeline.ledger.balance(USER) == 2
        assert dispatcher.video_calls == []

    def test_invalid_plan_does_not_charge(self, pipeline):
        fund(pipeline, credits=2)
        with pytest.raises(InvalidPlan):
            pipeline.service.start_generation(_request(duration=300))
        assert pipeline.ledger.balance(USER) == 2

    @pytest.mark.parametrize("reason,status_code", [("auth", 502), ("model", 502), ("input", 400), ("unknown", 502)])
    def test_dispatch_failure_refunds_and_removes_rows(self, pipeline, store, dispatcher, reason, status_code):
        fund(pipeline, credits=5)
        dispatcher.fail_with = reason

        with pytest.raises(DispatchFailed) as exc:
            pipeline.service.start_generation(_request(duration=12))

        assert exc.value.reason == reason
        assert exc.value.status_code == status_code
        assert pipeline.ledger.balance(USER) == 5
        assert store._generations == {}
        assert store._plans == {}


# ═════════════════════════════════════════════════════════════════════════════
# Continuation
# ═════════════════════════════════════════════════════════════════════════════

class TestContinueSegment:

    def _waiting_chain(self, pipeline):
        fund(pipeline, credits=5)
        accepted = _start_chain(pipeline)
        _finish_segment(pipeline, accepted.prediction_id)
        return accepted.generation_id

    def test_continue_dispatches_from_extracted_frame(self, pipeline, store, dispatcher):
        parent_id = self._waiting_chain(pipeline)

        accepted = pipeline.service.continue_segment(ContinueRequest(
            user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="camera pulls back",
        ))

        assert accepted.segment_index == 1
        assert store.get_generation(parent_id).status == GenerationStatus.PROCESSING
        assert dispatcher.video_calls[-1]["prompt"] == "camera pulls back"
        assert dispatcher.video_calls[-1]["image_url"].endswith(".last.jpg")
        assert store.get_segment_plan(parent_id, 1).prompt == "camera pulls back"
        assert store.get_generation(accepted.segment_generation_id).prediction_ref == accepted.prediction_id

    def test_explicit_frame_overrides_extracted(self, pipeline, store, dispatcher):
        parent_id = self._waiting_chain(pipeline)
        pipeline.service.continue_segment(ContinueRequest(
            user_id=USER, parent_generation_id=parent_id, segment_index=1,
            prompt="next", last_frame_url="https://cdn.test/picked.jpg",
        ))
        assert dispatcher.video_calls[-1]["image_url"] == "https://cdn.test/picked.jpg"
        assert store.get_segment_plan(parent_id, 0).last_frame_ref == "https://cdn.test/picked.jpg"
        assert pipeline.service.get_status(parent_id, USER).last_frame_url == "https://cdn.test/picked.jpg"

    def test_out_of_order_index_rejected(self, pipeline, dispatcher):
        parent_id = self._waiting_chain(pipeline)
        calls = len(dispatcher.video_calls)
        with pytest.raises(OutOfOrderSegment) as exc:
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=parent_id, segment_index=2, prompt="skip ahead",
            ))
        assert exc.value.expected == 1
        assert exc.value.status_code == 409
        assert len(dispatcher.video_calls) == calls

    def test_missing_frame_rejected(self, pipeline, store, extractor):
        extractor.fail = True
        parent_id = self._waiting_chain(pipeline)
        assert store.get_generation(parent_id).status == GenerationStatus.WAITING_FOR_INPUT

        with pytest.raises(MissingContinuationInput):
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="go on",
            ))
        assert store.get_generation(parent_id).status == GenerationStatus.WAITING_FOR_INPUT

    def test_chain_not_waiting_rejected(self, pipeline):
        fund(pipeline, credits=5)
        accepted = _start_chain(pipeline)
        with pytest.raises(OutOfOrderSegment):
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=accepted.generation_id, segment_index=1, prompt="too early",
            ))
        with pytest.raises(ChainNotAwaitingInput):
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=accepted.generation_id, segment_index=0, prompt="again",
            ))

    def test_second_continuation_for_same_index_rejected(self, pipeline):
        parent_id = self._waiting_chain(pipeline)
        request = ContinueRequest(user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="one")
        pipeline.service.continue_segment(request)
        with pytest.raises(ChainNotAwaitingInput):
            pipeline.service.continue_segment(request)

    def test_dispatch_failure_keeps_chain_waiting(self, pipeline, store, dispatcher):
        parent_id = self._waiting_chain(pipeline)
        dispatcher.fail_with = "unknown"

        with pytest.raises(DispatchFailed):
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="retry me",
            ))

        assert store.get_generation(parent_id).status == GenerationStatus.WAITING_FOR_INPUT
        assert len(store.list_segment_records(parent_id)) == 1
        assert pipeline.ledger.balance(USER) == 2

        dispatcher.fail_with = None
        accepted = pipeline.service.continue_segment(ContinueRequest(
            user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="retry me",
        ))
        assert accepted.segment_index == 1

    @pytest.mark.parametrize("method,when", [
        ("update_segment_plan", lambda parent_id, index, updates: "prompt" in updates),
        ("insert_generation", lambda record: record.segment_index == 1),
        ("update_generation", lambda gid, updates: "prediction_ref" in updates),
    ])
    def test_store_failure_after_claim_releases_chain(self, pipeline, store, method, when):
        parent_id = self._waiting_chain(pipeline)
        store.fail_once(method, when)

        with pytest.raises(ConnectionError):
            pipeline.service.continue_segment(ContinueRequest(
                user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="retry me",
            ))

        assert store.get_generation(parent_id).status == GenerationStatus.WAITING_FOR_INPUT
        assert [s.segment_index for s in store.list_segment_records(parent_id)] == [0]
        assert pipeline.ledger.balance(USER) == 2

        accepted = pipeline.service.continue_segment(ContinueRequest(
            user_id=USER, parent_generation_id=parent_id, segment_index=1, prompt="retry me",
        ))
        assert store.get_generation(accepted.segment_generation_id).prediction_ref == accepted.prediction_id

    def test_other_users_chain_not_found(self, pipeline):
        parent_id = self._waiting_chain(pipeline)
        with pytest.raises(RecordNotFound):
            pipeline.service.continue_segment(ContinueRequest(
                user_id="someone-else", parent_generation_id=parent_id, segment_index=1, prompt="x",
            ))


# ═════════════════════════════════════════════════════════════════════════════
# Status
# ═════════════════════════════════════════════════════════════════════════════

class TestGetStatus:

    def test_one_shot_processing(self, pipeline):
        fund(pipeline)
        accepted = pipeline.service.start_generation(_request())
        status = pipeline.service.get_status(accepted.generation_id, USER)
        assert status.status == GenerationStatus.PROCESSING
        assert status.video_url is None
        assert not status.is_multi_segment

    def test_waiting_chain_reports_progress(self, pipeline):
        fund(pipeline)
        accepted = _start_chain(pipeline)
        _finish_segment(pipeline, accepted.prediction_id)

        status = pipeline.service.get_status(accepted.generation_id, USER)
        assert status.is_multi_segment
        assert status.is_waiting_for_input
        assert status.segments_completed == 1
        assert status.total_segments == 3
        assert status.next_segment_index == 1
        assert status.last_frame_url.endswith(".last.jpg")
        assert status.video_url.startswith("https://storage.test/")

    def test_status_reads_do_not_change_state(self, pipeline, store):
        fund(pipeline)
        accepted = _start_chain(pipeline)
        before = store.get_generation(accepted.generation_id)
        for _ in range(3):
            pipeline.service.get_status(accepted.generation_id)
        assert store.get_generation(accepted.generation_id) == before

    def test_unknown_generation(self, pipeline):
        with pytest.raises(RecordNotFound):
            pipeline.service.get_status("nope", USER)


def test_quote_plan_snaps_and_prices(pipeline):
    quote = pipeline.service.quote_plan(15, 6)
    assert quote.snapped_duration == 18
    assert quote.total_segments == 3
    assert quote.credit_cost == 3
    assert pipeline.ledger.balance(USER) == 0


def test_suggest_prompt_passes_chain_history(pipeline):
    captured = {}

    def fake_suggester(**kwargs):
        captured.update(kwargs)
        return "the camera rises over the cliffs"

    pipeline.service.prompt_suggester = fake_suggester
    fund(pipeline)
    accepted = _start_chain(pipeline)
    _finish_segment(pipeline, accepted.prediction_id)

    assert pipeline.service.suggest_prompt(accepted.generation_id, USER) == "the camera rises over the cliffs"
    assert captured == {
        "original_prompt": "waves at dusk",
        "segment_index": 1,
        "previous_prompts": ["waves at dusk"],
    }
