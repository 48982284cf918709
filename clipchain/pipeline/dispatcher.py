"""
Prediction Dispatcher — submits one segment (or one audio pass) to the
external generation service and returns its prediction id.

The dispatcher writes no local state. Callers persist the returned id
onto the generation record right after submission.
"""

import logging
import os
from typing import Optional
from urllib.parse import urlencode

import requests

from .. import predictions
from .errors import DispatchFailed
from .models import CallbackStage

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

VIDEO_MODEL = os.getenv("VIDEO_MODEL", "lightricks/ltx-2-fast")
AUDIO_MODEL_VERSION = os.getenv(
    "AUDIO_MODEL_VERSION",
    "88045928bb97971cffefabfc05a4e55e5bb1c96d475ad4ecc3d229d9169758ae",
)
DEFAULT_RESOLUTION = os.getenv("DEFAULT_RESOLUTION", "1080p")
WEBHOOK_BASE_URL = os.getenv("WEBHOOK_BASE_URL", "http://localhost:8080")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_PATH = "/pipeline-webhook"


def classify_http_error(status_code: Optional[int]) -> str:
    """Map a submission HTTP status to a DispatchFailed reason."""
    if status_code in (401, 403):
        return "auth"
    if status_code == 404:
        return "model"
    if status_code in (400, 422):
        return "input"
    return "unknown"


class PredictionDispatcher:

    def __init__(
        self,
        api_token: Optional[str] = None,
        video_model: str = VIDEO_MODEL,
        audio_version: str = AUDIO_MODEL_VERSION,
        webhook_base_url: str = WEBHOOK_BASE_URL,
        webhook_secret: str = WEBHOOK_SECRET,
    ):
        self.api_token = api_token if api_token is not None else predictions.REPLICATE_API_TOKEN
        self.video_model = video_model
        self.audio_version = audio_version
        self.webhook_base_url = webhook_base_url.rstrip("/")
        self.webhook_secret = webhook_secret

    def webhook_url(self, stage: CallbackStage) -> str:
        query = urlencode({"stage": CallbackStage(stage).value, "token": self.webhook_secret})
        return f"{self.webhook_base_url}{WEBHOOK_PATH}?{query}"

    def submit_video(
        self,
        image_url: str,
        prompt: str,
        duration: int,
        resolution: Optional[str] = None,
        generate_audio: bool = True,
    ) -> str:
        """
        Submit one image-to-video segment.

        Returns:
            The prediction id the webhook will be keyed by.
        """
        model_input = {
            "image": image_url,
            "prompt": prompt,
            "duration": duration,
            "resolution": resolution or DEFAULT_RESOLUTION,
            "generate_audio": generate_audio,
        }
        return self._submit(
            model_input,
            CallbackStage.VIDEO,
            model=self.video_model,
        )

    def submit_audio(self, video_url: str, prompt: str) -> str:
        """Submit a foley pass over a finished silent video."""
        model_input = {
            "video": video_url,
            "prompt": f"Generate audio effects and ambient sounds for: {prompt}",
        }
        return self._submit(
            model_input,
            CallbackStage.AUDIO,
            version=self.audio_version,
        )

    def _submit(
        self,
        model_input: dict,
        stage: CallbackStage,
        model: Optional[str] = None,
        version: Optional[str] = None,
    ) -> str:
        if not self.api_token:
            logger.error("REPLICATE_API_TOKEN not configured")
            raise DispatchFailed("auth", "REPLICATE_API_TOKEN not configured")

        try:
            prediction = predictions.create_prediction(
                model_input,
                self.webhook_url(stage),
                model=model,
                version=version,
                api_token=self.api_token,
            )
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            reason = classify_http_error(status_code)
            body = e.response.text[:300] if e.response is not None else ""
            if reason in ("auth", "model"):
                logger.error(f"Prediction submission rejected ({reason}, HTTP {status_code}): {body}")
            else:
                logger.warning(f"Prediction submission failed ({reason}, HTTP {status_code}): {body}")
            raise DispatchFailed(reason, f"HTTP {status_code}: {body}") from e
        except requests.RequestException as e:
            logger.warning(f"Prediction submission transport error: {e}")
            raise DispatchFailed("unknown", str(e)) from e

        prediction_id = prediction.get("id") if isinstance(prediction, dict) else None
        if not prediction_id:
            raise DispatchFailed("unknown", f"No prediction id in response: {prediction}")

        logger.info(f"Prediction {prediction_id} submitted (stage={CallbackStage(stage).value})")
        return prediction_id
