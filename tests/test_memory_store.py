"""
In-memory store: conditional transitions, counters, library uniqueness.
"""
import threading

import pytest

from clipchain.pipeline.memory_store import MemoryStore
from clipchain.pipeline.models import CallbackStage, GenerationRecord, GenerationStatus, SegmentPlanRow, VideoRow


@pytest.fixture
def store():
    store = MemoryStore()
    store.insert_generation(GenerationRecord(
        id="g1", user_id="u1", image_ref="https://cdn.test/a.jpg", total_segments=3, prediction_ref="p1",
    ))
    return store


def test_transition_only_from_expected_status(store):
    moved = store.transition("g1", {GenerationStatus.PROCESSING}, GenerationStatus.WAITING_FOR_INPUT)
    assert moved.status == GenerationStatus.WAITING_FOR_INPUT
    assert store.transition("g1", {GenerationStatus.PROCESSING}, GenerationStatus.FAILED) is None
    assert store.get_generation("g1").status == GenerationStatus.WAITING_FOR_INPUT


def test_transition_applies_updates(store):
    store.transition("g1", {GenerationStatus.PROCESSING}, GenerationStatus.FAILED, {"error_detail": "boom"})
    assert store.get_generation("g1").error_detail == "boom"


def test_concurrent_transitions_have_one_winner(store):
    results = []

    def claim():
        results.append(store.transition("g1", {GenerationStatus.PROCESSING}, GenerationStatus.STITCHING))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(r is not None for r in results) == 1


def test_find_by_prediction_per_stage(store):
    store.update_generation("g1", {"audio_prediction_ref": "a1"})
    assert store.find_by_prediction(CallbackStage.VIDEO, "p1").id == "g1"
    assert store.find_by_prediction(CallbackStage.AUDIO, "a1").id == "g1"
    assert store.find_by_prediction(CallbackStage.AUDIO, "p1") is None


def test_increment_segments_completed_is_compare_and_set(store):
    assert store.increment_segments_completed("g1", expected=0) == 1
    assert store.increment_segments_completed("g1", expected=0) is None
    assert store.increment_segments_completed("g1", expected=1) == 2
    assert store.get_generation("g1").segments_completed == 2


def test_duplicate_generation_id_rejected(store):
    with pytest.raises(ValueError):
        store.insert_generation(GenerationRecord(id="g1", user_id="u1", image_ref="x"))


def test_segment_plans_ordered(store):
    store.insert_segment_plans([
        SegmentPlanRow(parent_id="g1", segment_index=i, duration_seconds=6) for i in (2, 0, 1)
    ])
    assert [p.segment_index for p in store.list_segment_plans("g1")] == [0, 1, 2]
    store.update_segment_plan("g1", 1, {"last_frame_ref": "https://cdn.test/f.jpg"})
    assert store.get_segment_plan("g1", 1).last_frame_ref == "https://cdn.test/f.jpg"
    store.delete_segment_plans("g1")
    assert store.list_segment_plans("g1") == []


def test_one_video_row_per_generation(store):
    row = VideoRow(user_id="u1", generation_id="g1", video_ref="https://cdn.test/v.mp4")
    assert store.record_video(row) is True
    assert store.record_video(row) is False
    assert len(store.list_videos("u1")) == 1
