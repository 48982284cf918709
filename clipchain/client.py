"""
Client-side status poller.

Observes GET /generations/{id} until the generation needs the user
(waiting_for_input) or reaches a terminal status. Giving up after the
poll window only stops watching; the job keeps running and its webhook
still lands.
"""

import logging
import time
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from .pipeline.models import GenerationStatus, GenerationStatusResponse

logger = logging.getLogger(__name__)

POLL_INTERVAL = 10       # seconds
MAX_POLL_ATTEMPTS = 90   # 15 minutes at POLL_INTERVAL

STOP_STATUSES = frozenset({
    GenerationStatus.COMPLETED,
    GenerationStatus.FAILED,
    GenerationStatus.WAITING_FOR_INPUT,
})


class PollResult(BaseModel):
    status: Optional[GenerationStatusResponse] = None
    attempts: int = 0
    timed_out: bool = False

    @property
    def message(self) -> str:
        if self.timed_out:
            return "Video is still processing. Check back later."
        if self.status is None:
            return "No status available."
        if self.status.status == GenerationStatus.FAILED:
            return self.status.error_message or "Video generation failed."
        if self.status.status == GenerationStatus.WAITING_FOR_INPUT:
            return f"Segment {self.status.segments_completed} of {self.status.total_segments} ready. Add a prompt to continue."
        return "Video ready."


class StatusPoller:

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.Client] = None,
        interval: float = POLL_INTERVAL,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.Client(timeout=30)
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep

    def fetch(self, generation_id: str, user_id: Optional[str] = None) -> GenerationStatusResponse:
        params = {"user_id": user_id} if user_id else None
        resp = self.http.get(f"{self.base_url}/generations/{generation_id}", params=params)
        resp.raise_for_status()
        return GenerationStatusResponse.model_validate(resp.json())

    def wait(self, generation_id: str, user_id: Optional[str] = None) -> PollResult:
        """
        Poll until the generation stops or the window runs out. Transient
        HTTP errors count as an attempt and polling carries on.
        """
        last: Optional[GenerationStatusResponse] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                last = self.fetch(generation_id, user_id)
            except httpx.HTTPError as e:
                logger.warning(f"Status check {attempt} for {generation_id} failed: {e}")
            else:
                if last.status in STOP_STATUSES:
                    return PollResult(status=last, attempts=attempt)

            if attempt < self.max_attempts:
                self.sleep(self.interval)

        logger.info(f"Stopped polling {generation_id} after {self.max_attempts} attempts")
        return PollResult(status=last, attempts=self.max_attempts, timed_out=True)
