"""
Next-segment prompt suggestion via the Gemini REST API.
"""
import httpx
import pytest

from clipchain import gemini
from clipchain.pipeline.errors import PipelineError, ServiceNotConfigured


@pytest.fixture
def gemini_key(monkeypatch):
    monkeypatch.setattr(gemini, "GEMINI_API_KEY", "g-test")


def _reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def test_suggestion_returned_and_cleaned(gemini_key, monkeypatch):
    seen = {}

    def fake_post(url, json=None, timeout=None):
        seen["url"] = url
        seen["body"] = json
        return _reply('  "The camera glides over the harbour at dawn."  ')

    monkeypatch.setattr(gemini.httpx, "post", fake_post)
    text = gemini.suggest_continuation_prompt("a harbour", 2, ["boats bob", "gulls circle"])

    assert text == "The camera glides over the harbour at dawn."
    assert ":generateContent?key=g-test" in seen["url"]
    instruction = seen["body"]["contents"][0]["parts"][0]["text"]
    assert "segment 3" in instruction
    assert "2. gulls circle" in instruction


def test_missing_key(monkeypatch):
    monkeypatch.setattr(gemini, "GEMINI_API_KEY", "")
    with pytest.raises(ServiceNotConfigured):
        gemini.suggest_continuation_prompt("x", 1, [])


def test_api_error(gemini_key, monkeypatch):
    monkeypatch.setattr(gemini.httpx, "post", lambda url, **kw: httpx.Response(500, text="boom"))
    with pytest.raises(PipelineError):
        gemini.suggest_continuation_prompt("x", 1, [])


def test_empty_candidates(gemini_key, monkeypatch):
    monkeypatch.setattr(gemini.httpx, "post", lambda url, **kw: httpx.Response(200, json={"candidates": []}))
    with pytest.raises(PipelineError):
        gemini.suggest_continuation_prompt("x", 1, [])
