"""
Shared fixtures: an in-memory pipeline with the external services
(prediction API, object storage, ffmpeg) replaced by recording fakes.
"""
import itertools
from pathlib import Path
from uuid import uuid4

import pytest

from clipchain import metrics
from clipchain.pipeline.errors import DispatchFailed
from clipchain.pipeline.frames import FrameExtractor
from clipchain.pipeline.memory_store import MemoryStore
from clipchain.pipeline.models import PredictionCallback
from clipchain.pipeline.stitcher import Stitcher
from clipchain.pipeline.storage import MediaStorage
from clipchain.pipeline.wiring import build_pipeline


USER = "user-1"
IMAGE = "https://cdn.test/source.jpg"


class FakeDispatcher:
    """Records submissions and hands out sequential prediction ids."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.video_calls = []
        self.audio_calls = []
        self.fail_with = None  # reason string → next submission raises DispatchFailed

    def submit_video(self, image_url, prompt, duration, resolution=None, generate_audio=True):
        if self.fail_with:
            raise DispatchFailed(self.fail_with, "simulated")
        self.video_calls.append({
            "image_url": image_url,
            "prompt": prompt,
            "duration": duration,
            "resolution": resolution,
            "generate_audio": generate_audio,
        })
        return f"pred-{next(self._ids)}"

    def submit_audio(self, video_url, prompt):
        if self.fail_with:
            raise DispatchFailed(self.fail_with, "simulated")
        self.audio_calls.append({"video_url": video_url, "prompt": prompt})
        return f"audio-{next(self._ids)}"


class FakeStorage(MediaStorage):
    """Object storage held in a dict; URLs are https://storage.test/{bucket}/{key}."""

    def __init__(self):
        self.objects = {}
        self.persist_fails = False

    def upload_bytes(self, bucket, key, data, content_type):
        url = f"https://storage.test/{bucket}/{key}"
        self.objects[url] = data
        return url

    def download(self, url, dest, timeout=None):
        Path(dest).write_bytes(self.objects.get(url, url.encode()))
        return dest

    def persist_video(self, user_id, source_url):
        if self.persist_fails:
            raise OSError("storage unavailable")
        return self.upload_bytes("videos", f"uploads/{user_id}/{source_url.rsplit('/', 1)[-1]}",
                                 source_url.encode(), "video/mp4")


class FakeExtractor(FrameExtractor):
    """Skips ffmpeg; the frame URL is derived from the video URL."""

    def __init__(self, storage, store):
        super().__init__(storage, store)
        self.calls = []
        self.fail = False

    def extract_last_frame(self, video_url, user_id=None):
        from clipchain.pipeline.errors import ExtractionFailed
        self.calls.append(video_url)
        if self.fail:
            raise ExtractionFailed("simulated decode failure")
        return f"{video_url}.last.jpg"


class ByteConcatStitcher(Stitcher):
    """
    Stitches by concatenating the downloaded bytes, so the output content
    shows the order the segments were joined in.
    """

    def __init__(self, storage):
        super().__init__(storage)
        self.calls = []
        self.fail = False

    def _concat_copy(self, segment_paths, output_path, workdir):
        self.calls.append([p.name for p in segment_paths])
        if self.fail:
            return False
        output_path.write_bytes(b"|".join(p.read_bytes() for p in segment_paths))
        return True

    def _concat_reencode(self, segment_paths, output_path):
        from clipchain.pipeline.errors import StitchFailed
        raise StitchFailed("simulated re-encode failure")


class FlakyStore(MemoryStore):
    """MemoryStore whose armed writes raise once, like a dropped database connection."""

    def __init__(self):
        super().__init__()
        self._armed = {}

    def fail_once(self, method, when=lambda *args: True):
        self._armed[method] = when

    def _trip(self, method, *args):
        when = self._armed.get(method)
        if when is not None and when(*args):
            del self._armed[method]
            raise ConnectionError(f"{method}: connection reset by peer")

    def transition(self, generation_id, expected, new_status, updates=None):
        self._trip("transition", generation_id, new_status)
        return super().transition(generation_id, expected, new_status, updates)

    def insert_generation(self, record):
        self._trip("insert_generation", record)
        return super().insert_generation(record)

    def update_generation(self, generation_id, updates):
        self._trip("update_generation", generation_id, updates)
        return super().update_generation(generation_id, updates)

    def update_segment_plan(self, parent_id, segment_index, updates):
        self._trip("update_segment_plan", parent_id, segment_index, updates)
        return super().update_segment_plan(parent_id, segment_index, updates)

    def increment_segments_completed(self, parent_id, expected):
        self._trip("increment_segments_completed", parent_id, expected)
        return super().increment_segments_completed(parent_id, expected)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def extractor(storage, store):
    return FakeExtractor(storage, store)


@pytest.fixture
def stitcher(storage):
    return ByteConcatStitcher(storage)


@pytest.fixture
def pipeline(store, storage, dispatcher, extractor, stitcher):
    return build_pipeline(
        store=store,
        storage=storage,
        dispatcher=dispatcher,
        extractor=extractor,
        stitcher=stitcher,
        audio_pass_enabled=False,
    )


def fund(pipeline, user_id=USER, credits=10):
    pipeline.ledger.credit(user_id, credits, source_ref=f"seed-{uuid4()}")


def succeeded(prediction_id, url=None):
    return PredictionCallback(
        id=prediction_id,
        status="succeeded",
        output=url or f"https://replicate.test/{prediction_id}.mp4",
    )


def failed(prediction_id, error="model crashed"):
    return PredictionCallback(id=prediction_id, status="failed", error=error)
