"""
Gemini integration for next-segment prompt suggestions.

Called over the generativelanguage REST API with httpx. Suggestions are
advisory: the user always edits or replaces them before continuing.
"""

import os
import logging

import httpx

from .pipeline.errors import PipelineError, ServiceNotConfigured

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
MAX_PROMPT_CHARS = 400


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


def _generate_content(model: str, parts: list, config: dict | None = None) -> dict:
    """Call Gemini generateContent REST endpoint."""
    if not GEMINI_API_KEY:
        raise ServiceNotConfigured("GEMINI_API_KEY not set")

    body: dict = {
        "contents": [{"parts": parts}],
    }
    if config:
        body["generationConfig"] = config

    try:
        resp = httpx.post(_api_url(model), json=body, timeout=30)
    except httpx.HTTPError as e:
        raise PipelineError(f"Gemini request failed: {e}") from e

    if resp.status_code != 200:
        raise PipelineError(f"Gemini API error {resp.status_code}: {resp.text[:500]}")

    return resp.json()


def _response_text(data: dict) -> str:
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        raise PipelineError(f"Gemini returned no candidates: {str(data)[:200]}")
    return "".join(p.get("text", "") for p in parts).strip()


def build_continuation_instruction(
    original_prompt: str, segment_index: int, previous_prompts: list[str]
) -> str:
    history = "\n".join(f"  {i + 1}. {p}" for i, p in enumerate(previous_prompts)) or "  (none)"
    return (
        "You write prompts for an image-to-video model. A video is being built "
        "as a chain of short segments; each segment starts from the last frame "
        "of the previous one.\n\n"
        f"Original idea: {original_prompt or '(not given)'}\n"
        f"Prompts used so far:\n{history}\n\n"
        f"Write the prompt for segment {segment_index + 1}. Continue the motion and "
        "story naturally from where the last segment ended. Describe camera "
        "movement and action in one or two sentences. Reply with the prompt only."
    )


def suggest_continuation_prompt(
    original_prompt: str,
    segment_index: int,
    previous_prompts: list[str],
) -> str:
    """
    Suggest a prompt for the next segment of a chain.

    Raises:
        ServiceNotConfigured: no Gemini API key
        PipelineError:        Gemini call failed or returned nothing
    """
    instruction = build_continuation_instruction(original_prompt, segment_index, previous_prompts)
    data = _generate_content(
        GEMINI_MODEL,
        [{"text": instruction}],
        config={"temperature": 0.8, "maxOutputTokens": 200},
    )
    text = _response_text(data).strip().strip('"')
    if not text:
        raise PipelineError("Gemini returned an empty suggestion")

    logger.info(f"Suggested prompt for segment {segment_index + 1}: {text[:80]}")
    return text[:MAX_PROMPT_CHARS]
