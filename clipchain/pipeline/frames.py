"""
Frame Continuation Extractor — last visible frame of a segment video.

The frame seeds the next segment's image-to-video request. Rendering is
ffmpeg first (seek to one second before the end, keep overwriting one
JPEG so the final write is the last decoded frame) and moviepy + Pillow
when ffmpeg is unavailable or cannot decode the file.

Downloads and renders happen inside a TemporaryDirectory, so nothing is
left on disk whichever way the extraction ends.
"""

import logging
import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Optional

import httpx
from PIL import Image

from .. import metrics
from .errors import ExtractionFailed, ExtractionTimedOut
from .storage import FRAME_BUCKET, MediaStorage, frame_key
from .store import GenerationStore

logger = logging.getLogger(__name__)

FRAME_EXTRACT_TIMEOUT = int(os.getenv("FRAME_EXTRACT_TIMEOUT", "60"))
JPEG_QUALITY = 92


class FrameExtractor:

    def __init__(
        self,
        storage: MediaStorage,
        store: Optional[GenerationStore] = None,
        timeout: float = FRAME_EXTRACT_TIMEOUT,
    ):
        self.storage = storage
        self.store = store
        self.timeout = timeout

    def extract_last_frame(self, video_url: str, user_id: Optional[str] = None) -> str:
        """
        Produce one still image at the end of ``video_url`` and upload it.

        Returns:
            Public URL of the uploaded JPEG.

        Raises:
            ExtractionTimedOut: download or render exceeded the timeout.
            ExtractionFailed:   anything else that prevented a frame.
        """
        deadline = time.monotonic() + self.timeout

        with tempfile.TemporaryDirectory(prefix="clipchain_frame_") as tmp:
            video_path = Path(tmp) / "segment.mp4"
            frame_path = Path(tmp) / "last_frame.jpg"

            try:
                self.storage.download(video_url, video_path, timeout=self.timeout)
            except httpx.TimeoutException as e:
                raise ExtractionTimedOut(f"Timed out downloading {video_url}: {e}") from e
            except httpx.HTTPError as e:
                raise ExtractionFailed(f"Failed to download {video_url}: {e}") from e

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExtractionTimedOut(f"No time left to render a frame of {video_url}")

            self._render_last_frame(video_path, frame_path, remaining)

            try:
                frame_url = self.storage.upload_file(
                    FRAME_BUCKET, frame_key(user_id), frame_path, "image/jpeg"
                )
            except Exception as e:
                raise ExtractionFailed(f"Frame upload failed: {e}") from e

        logger.info(f"Extracted last frame of {video_url} → {frame_url}")
        return frame_url

    def extract_for_segment(
        self,
        parent_id: str,
        segment_index: int,
        video_url: str,
        user_id: Optional[str] = None,
    ) -> str:
        """Extract and write the frame onto the segment's plan row."""
        frame_url = self.extract_last_frame(video_url, user_id)
        if self.store is not None:
            try:
                self.store.update_segment_plan(parent_id, segment_index, {"last_frame_ref": frame_url})
            except Exception as e:
                raise ExtractionFailed(f"Frame {frame_url} extracted but not recorded for {parent_id}: {e}") from e
        return frame_url

    # ── Rendering ────────────────────────────────────────────────────────

    def _render_last_frame(self, video_path: Path, frame_path: Path, timeout: float):
        cmd = [
            "ffmpeg",
            "-y",
            "-sseof", "-1",
            "-i", str(video_path),
            "-update", "1",
            "-q:v", "2",
            str(frame_path),
        ]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, errors="replace", timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            raise ExtractionTimedOut(f"ffmpeg did not finish within {timeout:.0f}s") from e
        except FileNotFoundError:
            logger.warning("ffmpeg not found, rendering last frame with moviepy")
            self._render_with_moviepy(video_path, frame_path)
            return

        if result.returncode == 0 and frame_path.exists() and frame_path.stat().st_size > 0:
            return

        logger.warning(f"ffmpeg last-frame render failed, trying moviepy: {result.stderr[-300:]}")
        self._render_with_moviepy(video_path, frame_path)

    def _render_with_moviepy(self, video_path: Path, frame_path: Path):
        try:
            # Lazy import: moviepy pulls in imageio-ffmpeg at import time
            from moviepy import VideoFileClip

            with VideoFileClip(str(video_path), audio=False) as clip:
                fps = clip.fps or 24
                t = max(0.0, clip.duration - 1.0 / fps)
                frame = clip.get_frame(t)
            Image.fromarray(frame).convert("RGB").save(frame_path, "JPEG", quality=JPEG_QUALITY)
        except Exception as e:
            metrics.inc_counter("frames.failed")
            raise ExtractionFailed(f"Could not decode {video_path.name}: {e}") from e
