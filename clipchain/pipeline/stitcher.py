"""
Stitcher — concatenates completed segment videos, in segment order, into
one output file in durable storage.

  1. Download every segment into a private temp dir (segment_000.mp4, ...)
  2. ffmpeg concat demuxer with stream copy (no re-encode)
  3. If the streams are incompatible, re-encode through moviepy
  4. Upload the combined file

The temp dir (downloads, concat list, combined file) is removed on every
exit path.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel

from .. import metrics
from .errors import StitchFailed
from .storage import VIDEO_BUCKET, MediaStorage, video_key

logger = logging.getLogger(__name__)

STITCH_TIMEOUT = int(os.getenv("STITCH_TIMEOUT", "0"))  # 0 → scale with segment count
OUTPUT_HEIGHT = 720
OUTPUT_FPS = 24


class StitchResult(BaseModel):
    video_url: str
    method: str  # "copy" | "reencode"
    segment_count: int


def _concat_list_line(path: Path) -> str:
    escaped = str(path).replace("'", "'\\''")
    return f"file '{escaped}'"


class Stitcher:

    def __init__(self, storage: MediaStorage, timeout: Optional[int] = None):
        self.storage = storage
        self.timeout = timeout if timeout is not None else STITCH_TIMEOUT

    def stitch(self, video_urls: list[str], user_id: str) -> StitchResult:
        """
        Concatenate ``video_urls`` in the given order. The order is the
        segment order and is never changed.

        Raises:
            StitchFailed: missing input, download error, both concat
                          strategies failing, or upload error.
        """
        if not video_urls:
            raise StitchFailed("No segment videos to stitch")
        if not all(video_urls):
            raise StitchFailed(f"Missing segment video in {video_urls}")

        with tempfile.TemporaryDirectory(prefix="clipchain_stitch_") as tmp:
            workdir = Path(tmp)
            segment_paths = self._download_segments(video_urls, workdir)
            output_path = workdir / "stitched.mp4"

            if self._concat_copy(segment_paths, output_path, workdir):
                method = "copy"
            else:
                logger.warning(f"Stream-copy concat failed for {len(segment_paths)} segments, re-encoding")
                self._concat_reencode(segment_paths, output_path)
                method = "reencode"

            try:
                url = self.storage.upload_file(
                    VIDEO_BUCKET, video_key(user_id, "stitched"), output_path, "video/mp4"
                )
            except Exception as e:
                raise StitchFailed(f"Stitched video upload failed: {e}") from e

        metrics.inc_counter(f"stitch.{method}")
        logger.info(f"Stitched {len(video_urls)} segments ({method}) → {url}")
        return StitchResult(video_url=url, method=method, segment_count=len(video_urls))

    # ── Steps ────────────────────────────────────────────────────────────

    def _download_segments(self, video_urls: list[str], workdir: Path) -> list[Path]:
        paths = []
        for i, url in enumerate(video_urls):
            dest = workdir / f"segment_{i:03d}.mp4"
            logger.info(f"Downloading segment {i + 1}/{len(video_urls)}: {url}")
            try:
                self.storage.download(url, dest)
            except httpx.HTTPError as e:
                raise StitchFailed(f"Failed to download segment {i + 1}: {e}") from e
            paths.append(dest)
        return paths

    def _concat_copy(self, segment_paths: list[Path], output_path: Path, workdir: Path) -> bool:
        """Lossless concat. Returns False when the segments cannot be stream-copied."""
        concat_file = workdir / "concat.txt"
        concat_file.write_text("\n".join(_concat_list_line(p) for p in segment_paths) + "\n")

        cmd = [
            "ffmpeg",
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(concat_file),
            "-c", "copy",
            str(output_path),
        ]
        timeout = self.timeout or max(60, len(segment_paths) * 10)
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, errors="replace", timeout=timeout
            )
        except FileNotFoundError:
            logger.warning("ffmpeg not found, skipping stream-copy concat")
            return False
        except subprocess.TimeoutExpired:
            logger.warning(f"Stream-copy concat timed out after {timeout}s")
            return False

        if result.returncode != 0:
            logger.warning(f"ffmpeg concat -c copy failed: {result.stderr[-300:]}")
            return False
        return output_path.exists() and output_path.stat().st_size > 0

    def _concat_reencode(self, segment_paths: list[Path], output_path: Path):
        clips = []
        try:
            # Lazy import: moviepy pulls in imageio-ffmpeg at import time
            from moviepy import VideoFileClip, concatenate_videoclips

            for path in segment_paths:
                clip = VideoFileClip(str(path))
                if clip.h != OUTPUT_HEIGHT:
                    clip = clip.resized(height=OUTPUT_HEIGHT)
                clips.append(clip)

            final_clip = concatenate_videoclips(clips, method="compose")
            final_clip.write_videofile(
                str(output_path),
                codec="libx264",
                audio_codec="aac",
                fps=OUTPUT_FPS,
                preset="medium",
                logger=None,
            )
        except Exception as e:
            metrics.inc_counter("stitch.failed")
            raise StitchFailed(f"Re-encode concat failed: {e}") from e
        finally:
            for clip in clips:
                clip.close()
