"""
Exception taxonomy for the generation pipeline.

Every error carries the HTTP status the routes should answer with and a
message that is safe to show to the end user. Vendor error text stays in
``str(exc)`` / the logs and never reaches ``public_message``.
"""

from typing import Optional


class PipelineError(Exception):
    status_code = 500
    public_message = "Something went wrong. Please try again later."

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


# ── Request acceptance ───────────────────────────────────────────────────────

class InvalidPlan(PipelineError):
    status_code = 400
    public_message = "Invalid duration or segment length."

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


class InsufficientCredits(PipelineError):
    status_code = 402
    public_message = "Insufficient credits. Please purchase more credits."

    def __init__(self, user_id: str, required: int, balance: int):
        self.user_id = user_id
        self.required = required
        self.balance = balance
        super().__init__(f"User {user_id} has {balance} credits, needs {required}")


DISPATCH_REASONS = ("auth", "model", "input", "unknown")

_DISPATCH_PUBLIC = {
    "auth": "Video generation is temporarily unavailable. Please try again later.",
    "model": "Video generation is temporarily unavailable. Please try again later.",
    "input": "The image or prompt was rejected by the video model. Try a different image or prompt.",
    "unknown": "The video service is busy right now. Please try again later.",
}


class DispatchFailed(PipelineError):
    """The external prediction service refused or failed the submission."""

    status_code = 502

    def __init__(self, reason: str, message: str = ""):
        if reason not in DISPATCH_REASONS:
            reason = "unknown"
        self.reason = reason
        if reason == "input":
            self.status_code = 400
        super().__init__(
            message or f"Prediction submission failed ({reason})",
            public_message=_DISPATCH_PUBLIC[reason],
        )


# ── Continuation ─────────────────────────────────────────────────────────────

class OutOfOrderSegment(PipelineError):
    status_code = 409

    def __init__(self, expected: int, requested: int):
        self.expected = expected
        self.requested = requested
        super().__init__(
            f"Segment {requested} requested, expected {expected}",
            public_message=f"Segment {requested + 1} cannot be generated yet. Continue with segment {expected + 1}.",
        )


class MissingContinuationInput(PipelineError):
    status_code = 400
    public_message = "A last frame from the previous segment is required to continue."


class ChainNotAwaitingInput(PipelineError):
    status_code = 409

    def __init__(self, generation_id: str, status: str):
        self.status = status
        super().__init__(
            f"Generation {generation_id} is {status}, not waiting_for_input",
            public_message=f"This generation is not waiting for a prompt (status: {status}).",
        )


# ── Asynchronous stages ──────────────────────────────────────────────────────

class ExtractionFailed(PipelineError):
    status_code = 422
    public_message = "Could not extract the last frame. Pick a frame manually."


class ExtractionTimedOut(ExtractionFailed):
    status_code = 504
    public_message = "The video was not ready for frame extraction in time. Pick a frame manually."


class StitchFailed(PipelineError):
    status_code = 500
    public_message = "Combining the video segments failed. Your credits have been refunded."


class GenerationFailed(PipelineError):
    """The prediction service reported a failure; the vendor text stays in str(exc)."""
    public_message = "Video generation failed. Your credits have been refunded."


# ── Lookup / callbacks ───────────────────────────────────────────────────────

class RecordNotFound(PipelineError):
    status_code = 404
    public_message = "Generation not found."


class InvalidCallback(PipelineError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


# ── Payments / configuration ─────────────────────────────────────────────────

class PaymentNotCompleted(PipelineError):
    status_code = 400
    public_message = "Payment not completed."


class ServiceNotConfigured(PipelineError):
    status_code = 503
    public_message = "This feature is not configured on the server."
