"""
Replicate predictions API client.

Submits asynchronous predictions and lets Replicate call us back when they
finish (``webhook`` + ``webhook_events_filter=["completed"]``). Nothing
here polls; completion arrives at POST /pipeline-webhook.
"""

import logging
import os
import random
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)

REPLICATE_API_TOKEN = os.environ.get("REPLICATE_API_TOKEN", "")
REPLICATE_API_BASE = "https://api.replicate.com/v1"

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0        # seconds, doubled each retry: 1, 2, 4
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
REQUEST_TIMEOUT = 30


def _request_with_backoff(method: str, url: str, api_token: str, **kwargs) -> requests.Response:
    """
    HTTP request with exponential backoff on 429 / 5xx and connection errors.
    Non-retryable HTTP errors raise ``requests.HTTPError`` immediately.
    """
    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {api_token}")
    headers.setdefault("Content-Type", "application/json")
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, headers=headers, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            if attempt >= MAX_RETRIES:
                raise
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Replicate request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= MAX_RETRIES:
            response.raise_for_status()
            return response

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)

        logger.warning(
            f"Replicate {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
            f"— retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise RuntimeError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")


def create_prediction(
    input: dict,
    webhook: str,
    model: Optional[str] = None,
    version: Optional[str] = None,
    api_token: Optional[str] = None,
) -> dict:
    """
    Start a prediction against an official model (``owner/name``) or a
    specific model version hash.

    Returns:
        The prediction JSON (``id``, ``status``, ...).
    """
    if not model and not version:
        raise ValueError("Either model or version is required")

    payload: dict = {
        "input": input,
        "webhook": webhook,
        "webhook_events_filter": ["completed"],
    }
    if version:
        url = f"{REPLICATE_API_BASE}/predictions"
        payload["version"] = version
    else:
        url = f"{REPLICATE_API_BASE}/models/{model}/predictions"

    logger.info(f"Replicate prediction request: {model or version}")
    response = _request_with_backoff("POST", url, api_token or REPLICATE_API_TOKEN, json=payload)
    return response.json()
