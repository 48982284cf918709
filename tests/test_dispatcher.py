"""
Prediction dispatcher and Replicate client: payloads, webhook URL, error mapping, retries.
"""
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from clipchain import predictions
from clipchain.pipeline.dispatcher import PredictionDispatcher, classify_http_error
from clipchain.pipeline.errors import DispatchFailed
from clipchain.pipeline.models import CallbackStage


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.headers = headers or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


@pytest.fixture
def sent(monkeypatch):
    """Queue of responses for requests.request; records each call."""
    calls = []
    responses = []

    def fake_request(method, url, headers=None, **kwargs):
        calls.append({"method": method, "url": url, "headers": headers, **kwargs})
        return responses.pop(0)

    monkeypatch.setattr(requests, "request", fake_request)
    monkeypatch.setattr(predictions.time, "sleep", lambda s: None)
    return calls, responses


def _dispatcher():
    return PredictionDispatcher(
        api_token="r8_test",
        video_model="lightricks/ltx-2-fast",
        audio_version="abc123",
        webhook_base_url="https://api.clipchain.test/",
        webhook_secret="s3cret",
    )


def test_webhook_url_carries_stage_and_token():
    url = urlparse(_dispatcher().webhook_url(CallbackStage.AUDIO))
    assert url.path == "/pipeline-webhook"
    assert parse_qs(url.query) == {"stage": ["audio"], "token": ["s3cret"]}


def test_submit_video_payload(sent):
    calls, responses = sent
    responses.append(FakeResponse(201, {"id": "pred-9", "status": "starting"}))

    prediction_id = _dispatcher().submit_video("https://cdn.test/a.jpg", "waves", 6, "720p", False)

    assert prediction_id == "pred-9"
    call = calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.replicate.com/v1/models/lightricks/ltx-2-fast/predictions"
    assert call["headers"]["Authorization"] == "Bearer r8_test"
    body = call["json"]
    assert body["input"] == {
        "image": "https://cdn.test/a.jpg",
        "prompt": "waves",
        "duration": 6,
        "resolution": "720p",
        "generate_audio": False,
    }
    assert body["webhook_events_filter"] == ["completed"]
    assert "stage=video" in body["webhook"]


def test_submit_audio_uses_version_endpoint(sent):
    calls, responses = sent
    responses.append(FakeResponse(201, {"id": "aud-1"}))

    assert _dispatcher().submit_audio("https://cdn.test/v.mp4", "rain") == "aud-1"
    assert calls[0]["url"] == "https://api.replicate.com/v1/predictions"
    assert calls[0]["json"]["version"] == "abc123"
    assert "stage=audio" in calls[0]["json"]["webhook"]


@pytest.mark.parametrize("status,reason", [(401, "auth"), (403, "auth"), (404, "model"), (422, "input"), (500, "unknown")])
def test_http_errors_are_classified(sent, status, reason):
    _, responses = sent
    responses.append(FakeResponse(status, {"detail": "nope"}))
    with pytest.raises(DispatchFailed) as exc:
        _dispatcher().submit_video("https://cdn.test/a.jpg", "x", 6)
    assert exc.value.reason == reason


def test_retries_on_rate_limit_then_succeeds(sent):
    calls, responses = sent
    responses.extend([FakeResponse(429), FakeResponse(503), FakeResponse(201, {"id": "pred-3"})])
    assert _dispatcher().submit_video("https://cdn.test/a.jpg", "x", 6) == "pred-3"
    assert len(calls) == 3


def test_gives_up_after_max_retries(sent):
    calls, responses = sent
    responses.extend([FakeResponse(503)] * (predictions.MAX_RETRIES + 1))
    with pytest.raises(DispatchFailed) as exc:
        _dispatcher().submit_video("https://cdn.test/a.jpg", "x", 6)
    assert exc.value.reason == "unknown"
    assert len(calls) == predictions.MAX_RETRIES + 1


def test_connection_errors_map_to_unknown(monkeypatch):
    def down(*args, **kwargs):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(requests, "request", down)
    monkeypatch.setattr(predictions.time, "sleep", lambda s: None)
    with pytest.raises(DispatchFailed) as exc:
        _dispatcher().submit_video("https://cdn.test/a.jpg", "x", 6)
    assert exc.value.reason == "unknown"


def test_missing_token_is_auth_failure(sent):
    calls, _ = sent
    dispatcher = _dispatcher()
    dispatcher.api_token = ""
    with pytest.raises(DispatchFailed) as exc:
        dispatcher.submit_video("https://cdn.test/a.jpg", "x", 6)
    assert exc.value.reason == "auth"
    assert calls == []


def test_response_without_id(sent):
    _, responses = sent
    responses.append(FakeResponse(201, {"status": "starting"}))
    with pytest.raises(DispatchFailed):
        _dispatcher().submit_video("https://cdn.test/a.jpg", "x", 6)


def test_classify_http_error_defaults():
    assert classify_http_error(None) == "unknown"
    assert classify_http_error(400) == "input"
