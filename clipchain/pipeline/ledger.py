"""
Credit Ledger — debit / refund / credit on top of a LedgerStore.

The user's ``credits`` column is a cache of the signed sum of their
``credit_transactions``; the store writes both in one atomic unit.

  - debit:  upfront charge for a whole generation plan
  - refund: exactly once per failed top-level generation
  - credit: payment confirmation, idempotent per payment session
"""

import logging
from typing import Optional

from .. import metrics
from .models import CreditSummary, GenerationRecord
from .store import LedgerStore

logger = logging.getLogger(__name__)


class CreditLedger:

    def __init__(self, store: LedgerStore):
        self.store = store

    def balance(self, user_id: str) -> int:
        return self.store.get_balance(user_id)

    def summary(self, user_id: str) -> CreditSummary:
        return CreditSummary(
            user_id=user_id,
            balance=self.store.get_balance(user_id),
            transactions=self.store.list_transactions(user_id),
        )

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str = "Video generation",
        generation_id: Optional[str] = None,
    ) -> int:
        """
        Charge ``amount`` credits. Raises InsufficientCredits (balance
        untouched) when the user cannot cover it.

        Returns:
            The balance after the debit.
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")

        new_balance = self.store.apply_debit(user_id, amount, description, generation_id)
        logger.info(f"Debited {amount} credits from {user_id} (generation={generation_id}) → {new_balance}")
        return new_balance

    def refund(self, user_id: str, amount: int, reason: str, generation_id: str) -> bool:
        """
        Return ``amount`` credits for a generation that was debited and has
        not been refunded yet. Replays are no-ops.

        Returns:
            True if a refund transaction was written.
        """
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount}")

        new_balance = self.store.apply_refund(user_id, amount, reason, generation_id)
        if new_balance is None:
            logger.info(f"Refund skipped for generation {generation_id}: not debited or already refunded")
            return False

        metrics.inc_counter("credits.refunded", amount)
        logger.info(f"Refunded {amount} credits to {user_id} for generation {generation_id} → {new_balance}")
        return True

    def refund_generation(self, record: GenerationRecord, reason: str) -> bool:
        """Refund a top-level generation's full upfront cost."""
        if record.parent_id is not None:
            raise ValueError(f"Refunds apply to top-level generations, {record.id} is a segment")
        if record.credit_cost <= 0:
            return False
        return self.refund(record.user_id, record.credit_cost, reason, record.id)

    def credit(
        self,
        user_id: str,
        amount: int,
        source_ref: str,
        description: Optional[str] = None,
    ) -> bool:
        """
        Add purchased credits. A confirmation replayed with the same
        ``source_ref`` does not credit twice.

        Returns:
            True if the credits were added by this call.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        description = description or f"Payment for {amount} credits - Session {source_ref}"
        new_balance = self.store.apply_purchase(user_id, amount, description, source_ref)
        if new_balance is None:
            logger.info(f"Payment {source_ref} already credited, skipping")
            return False

        metrics.inc_counter("credits.purchased", amount)
        logger.info(f"Credited {amount} credits to {user_id} (source={source_ref}) → {new_balance}")
        return True
