"""
Durable media storage for pipeline artifacts.

Object keys:
  videos bucket:  uploads/{user_id}/video_{uuid}.mp4      (persisted segment / one-shot output)
                  uploads/{user_id}/stitched_{uuid}.mp4   (final multi-segment output)
  images bucket:  frames/{user_id}/frame_{uuid}.jpg       (continuation frames)

Downloads stream through httpx so a large segment never sits in memory.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from uuid import uuid4

import httpx
from supabase import Client

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

VIDEO_BUCKET = os.getenv("VIDEO_BUCKET", "videos")
FRAME_BUCKET = os.getenv("FRAME_BUCKET", "images")
LOCAL_MEDIA_DIR = os.getenv("LOCAL_MEDIA_DIR", "media")
DOWNLOAD_TIMEOUT = 120  # seconds


# ── Helpers ──────────────────────────────────────────────────────────────────

def video_key(user_id: str, prefix: str = "video") -> str:
    return f"uploads/{user_id}/{prefix}_{uuid4()}.mp4"


def frame_key(user_id: Optional[str]) -> str:
    name = f"frame_{uuid4()}.jpg"
    return f"frames/{user_id}/{name}" if user_id else f"frames/{name}"


def download_to_file(url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT) -> Path:
    """Stream a remote resource to ``dest``. Raises httpx errors as-is."""
    with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as resp:
        resp.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in resp.iter_bytes():
                f.write(chunk)
    return dest


class MediaStorage(ABC):
    """Upload side of the storage contract; subclasses pick the backend."""

    @abstractmethod
    def upload_bytes(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Store the bytes and return their public URL."""

    def download(self, url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT) -> Path:
        return download_to_file(url, dest, timeout=timeout)

    def upload_file(self, bucket: str, key: str, path: Path, content_type: str) -> str:
        return self.upload_bytes(bucket, key, Path(path).read_bytes(), content_type)

    def persist_video(self, user_id: str, source_url: str) -> str:
        """
        Copy an external output URL into the videos bucket.

        Returns:
            Public URL of the durable copy.
        """
        with httpx.Client(follow_redirects=True, timeout=DOWNLOAD_TIMEOUT) as client:
            resp = client.get(source_url)
            resp.raise_for_status()
            data = resp.content

        logger.info(f"Downloaded output ({len(data)} bytes) for user {user_id}")
        return self.upload_bytes(VIDEO_BUCKET, video_key(user_id), data, "video/mp4")


class SupabaseMediaStorage(MediaStorage):

    def __init__(self, client: Client):
        self.sb = client

    def upload_bytes(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        self.sb.storage.from_(bucket).upload(
            path=key,
            file=data,
            file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
        )
        public_url = self.sb.storage.from_(bucket).get_public_url(key)
        logger.info(f"Uploaded to {bucket}: {public_url}")
        return public_url


class LocalMediaStorage(MediaStorage):
    """Development fallback: writes under LOCAL_MEDIA_DIR and returns file:// URLs."""

    def __init__(self, root: str = LOCAL_MEDIA_DIR):
        self.root = Path(root).resolve()

    def upload_bytes(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        path = self.root / bucket / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {path}")
        return path.as_uri()

    def download(self, url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT) -> Path:
        if url.startswith("file://"):
            source = Path(url[len("file://"):])
            dest.write_bytes(source.read_bytes())
            return dest
        return super().download(url, dest, timeout=timeout)
