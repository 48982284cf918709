"""
Stripe checkout confirmation.

The checkout session (created by the web app) carries ``metadata.user_id``
and ``metadata.credits``. Confirming a paid session credits the ledger
once per session id; replays return the same confirmation without
crediting again.
"""

import logging
import os
from typing import Callable

import httpx

from .errors import PaymentNotCompleted, PipelineError, ServiceNotConfigured
from .ledger import CreditLedger
from .models import PaymentConfirmation

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_API_BASE = "https://api.stripe.com/v1"


def fetch_checkout_session(session_id: str, api_key: str | None = None) -> dict:
    """GET a checkout session from the Stripe REST API."""
    api_key = api_key if api_key is not None else STRIPE_SECRET_KEY
    if not api_key:
        raise ServiceNotConfigured("STRIPE_SECRET_KEY not set")

    try:
        resp = httpx.get(
            f"{STRIPE_API_BASE}/checkout/sessions/{session_id}",
            auth=(api_key, ""),
            timeout=20,
        )
    except httpx.HTTPError as e:
        raise PipelineError(f"Stripe request failed: {e}") from e

    if resp.status_code == 404:
        raise PaymentNotCompleted(f"Checkout session {session_id} not found")
    if resp.status_code != 200:
        raise PipelineError(f"Stripe API error {resp.status_code}: {resp.text[:300]}")
    return resp.json()


class PaymentVerifier:

    def __init__(
        self,
        ledger: CreditLedger,
        fetch_session: Callable[[str], dict] = fetch_checkout_session,
    ):
        self.ledger = ledger
        self.fetch_session = fetch_session

    def verify(self, session_id: str) -> PaymentConfirmation:
        """
        Raises:
            PaymentNotCompleted: session unpaid, unknown or missing metadata
        """
        session = self.fetch_session(session_id)

        if session.get("payment_status") != "paid":
            raise PaymentNotCompleted(
                f"Session {session_id} payment_status={session.get('payment_status')}"
            )

        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        try:
            credits = int(metadata.get("credits") or 0)
        except (TypeError, ValueError):
            credits = 0
        if not user_id or credits <= 0:
            logger.error(f"Session {session_id} is paid but has no usable metadata: {metadata}")
            raise PaymentNotCompleted(f"Session {session_id} missing user_id/credits metadata")

        added = self.ledger.credit(user_id, credits, source_ref=session_id)
        logger.info(f"Payment {session_id} verified for {user_id}: {credits} credits (new={added})")
        return PaymentConfirmation(paid=True, credits=credits, user_id=user_id, session_ref=session_id)
