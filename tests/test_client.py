"""
Client status poller against a mocked status endpoint.
"""
import httpx

from clipchain.client import StatusPoller


def _status(status, **extra):
    return {"generation_id": "g1", "status": status, **extra}


def _poller(responses, max_attempts=5):
    seen = []

    def handler(request):
        seen.append(request)
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(200, json=item)

    sleeps = []
    poller = StatusPoller(
        "https://api.clipchain.test/",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        interval=10,
        max_attempts=max_attempts,
        sleep=sleeps.append,
    )
    return poller, seen, sleeps


def test_stops_on_completion():
    poller, seen, sleeps = _poller([
        _status("processing"),
        _status("processing"),
        _status("completed", video_url="https://cdn.test/final.mp4"),
    ])
    result = poller.wait("g1", user_id="u1")

    assert not result.timed_out
    assert result.attempts == 3
    assert result.status.video_url == "https://cdn.test/final.mp4"
    assert sleeps == [10, 10]
    assert seen[0].url.path == "/generations/g1"
    assert seen[0].url.params["user_id"] == "u1"


def test_stops_when_chain_needs_input():
    poller, _, _ = _poller([_status("waiting_for_input", is_multi_segment=True, segments_completed=1, total_segments=3)])
    result = poller.wait("g1")
    assert result.attempts == 1
    assert "Add a prompt" in result.message


def test_times_out_without_cancelling():
    poller, seen, sleeps = _poller([_status("stitching")], max_attempts=4)
    result = poller.wait("g1")

    assert result.timed_out
    assert result.status.status == "stitching"
    assert result.message == "Video is still processing. Check back later."
    assert len(seen) == 4
    assert all(r.method == "GET" for r in seen)
    assert len(sleeps) == 3


def test_transient_errors_keep_polling():
    poller, _, _ = _poller([httpx.ConnectError("blip"), _status("failed", error_message="nsfw")])
    result = poller.wait("g1")
    assert result.attempts == 2
    assert result.message == "nsfw"
