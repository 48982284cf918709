"""
Media storage backends: the abstract contract and the local directory store.
"""
import pytest

from clipchain.pipeline.storage import LocalMediaStorage, MediaStorage


def test_storage_without_upload_cannot_be_built():
    class NoUpload(MediaStorage):
        pass

    with pytest.raises(TypeError):
        NoUpload()


def test_local_storage_round_trips_through_file_urls(tmp_path):
    storage = LocalMediaStorage(root=str(tmp_path))
    url = storage.upload_bytes("videos", "uploads/u1/video_1.mp4", b"mp4 bytes", "video/mp4")

    assert url.startswith("file://")
    assert (tmp_path / "videos" / "uploads" / "u1" / "video_1.mp4").read_bytes() == b"mp4 bytes"
    dest = storage.download(url, tmp_path / "copy.mp4")
    assert dest.read_bytes() == b"mp4 bytes"
