"""
Repository interfaces for generation records and the credit ledger, plus
the Supabase-backed implementation.

All mutations go through the Supabase service role (RLS bypass). Status
changes are conditional updates (``… eq(id) in_(status, expected)``) so a
replayed webhook finds nothing to update. Ledger mutations and counters
run as Postgres functions (see supabase/migrations) so the balance cache
and the transaction row are written in one database transaction.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from postgrest import APIError
from supabase import Client, create_client

from .errors import InsufficientCredits
from .models import (
    CallbackStage,
    CreditTransaction,
    GenerationRecord,
    GenerationStatus,
    SegmentPlanRow,
    VideoRow,
    now_iso,
)

logger = logging.getLogger(__name__)

GENERATIONS_TABLE = "video_generations"
SEGMENTS_TABLE = "video_segments"
TRANSACTIONS_TABLE = "credit_transactions"
PROFILES_TABLE = "profiles"
VIDEOS_TABLE = "videos"

# Which column a callback's prediction id is matched against, per stage
PREDICTION_COLUMNS = {
    CallbackStage.VIDEO: "prediction_ref",
    CallbackStage.AUDIO: "audio_prediction_ref",
}


# ═════════════════════════════════════════════════════════════════════════════
# Interfaces
# ═════════════════════════════════════════════════════════════════════════════

class GenerationStore(ABC):
    """Persisted state of generation attempts, segment plans and the video library."""

    # ── Generation records ───────────────────────────────────────────────

    @abstractmethod
    def insert_generation(self, record: GenerationRecord) -> GenerationRecord: ...

    @abstractmethod
    def delete_generation(self, generation_id: str) -> None:
        """Compensating delete; only used to roll back a failed acceptance."""

    @abstractmethod
    def get_generation(self, generation_id: str) -> Optional[GenerationRecord]: ...

    @abstractmethod
    def find_by_prediction(
        self, stage: CallbackStage, prediction_ref: str
    ) -> Optional[GenerationRecord]: ...

    @abstractmethod
    def update_generation(self, generation_id: str, updates: dict) -> Optional[GenerationRecord]:
        """Unconditional update of non-status fields."""

    @abstractmethod
    def transition(
        self,
        generation_id: str,
        expected: Iterable[GenerationStatus],
        new_status: GenerationStatus,
        updates: Optional[dict] = None,
    ) -> Optional[GenerationRecord]:
        """
        Move a record to ``new_status`` only if its current status is one of
        ``expected``. Returns the updated record, or None when the record
        was not in an expected status (someone else already moved it).
        """

    @abstractmethod
    def list_segment_records(self, parent_id: str) -> list[GenerationRecord]:
        """Child records of a parent, ordered by segment_index."""

    @abstractmethod
    def increment_segments_completed(self, parent_id: str, expected: int) -> Optional[int]:
        """
        Atomically bump the parent's counter from `expected` to `expected + 1`
        and return the new value; None when the counter is no longer at
        `expected` (the segment was already counted).
        """

    # ── Segment plans ────────────────────────────────────────────────────

    @abstractmethod
    def insert_segment_plans(self, rows: list[SegmentPlanRow]) -> None: ...

    @abstractmethod
    def delete_segment_plans(self, parent_id: str) -> None: ...

    @abstractmethod
    def get_segment_plan(self, parent_id: str, segment_index: int) -> Optional[SegmentPlanRow]: ...

    @abstractmethod
    def list_segment_plans(self, parent_id: str) -> list[SegmentPlanRow]: ...

    @abstractmethod
    def update_segment_plan(
        self, parent_id: str, segment_index: int, updates: dict
    ) -> Optional[SegmentPlanRow]: ...

    # ── Library & stats ──────────────────────────────────────────────────

    @abstractmethod
    def record_video(self, row: VideoRow) -> bool:
        """Insert a library row; False if this generation already has one."""

    @abstractmethod
    def list_videos(self, user_id: str) -> list[VideoRow]: ...

    @abstractmethod
    def increment_user_stats(self, user_id: str, videos: int, render_seconds: int) -> None: ...

    @abstractmethod
    def get_user_stats(self, user_id: str) -> dict: ...


class LedgerStore(ABC):
    """Atomic primitives behind the credit ledger."""

    @abstractmethod
    def get_balance(self, user_id: str) -> int: ...

    @abstractmethod
    def apply_debit(
        self, user_id: str, amount: int, description: str, generation_id: Optional[str]
    ) -> int:
        """Decrement balance + insert a ``used`` row. Raises InsufficientCredits."""

    @abstractmethod
    def apply_refund(
        self, user_id: str, amount: int, description: str, generation_id: str
    ) -> Optional[int]:
        """
        Increment balance + insert a ``refund`` row. Returns None without
        changing anything if the generation has no debit or was already
        refunded.
        """

    @abstractmethod
    def apply_purchase(
        self, user_id: str, amount: int, description: str, source_ref: str
    ) -> Optional[int]:
        """Increment balance + insert a ``purchase`` row; None if source_ref was already applied."""

    @abstractmethod
    def list_transactions(self, user_id: str) -> list[CreditTransaction]: ...


# ═════════════════════════════════════════════════════════════════════════════
# Supabase implementation
# ═════════════════════════════════════════════════════════════════════════════

def _status_values(statuses: Iterable[GenerationStatus]) -> list[str]:
    return [GenerationStatus(s).value for s in statuses]


def _serialize(updates: dict) -> dict:
    out = {}
    for key, value in updates.items():
        out[key] = value.value if isinstance(value, GenerationStatus) else value
    return out


class SupabaseStore(GenerationStore, LedgerStore):

    def __init__(self, client: Client):
        self.sb = client

    @classmethod
    def from_env(cls) -> "SupabaseStore":
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(url, key))

    # ── Generation records ───────────────────────────────────────────────

    def insert_generation(self, record: GenerationRecord) -> GenerationRecord:
        self.sb.table(GENERATIONS_TABLE).insert(record.model_dump(mode="json")).execute()
        return record

    def delete_generation(self, generation_id: str) -> None:
        self.sb.table(GENERATIONS_TABLE).delete().eq("id", generation_id).execute()

    def get_generation(self, generation_id: str) -> Optional[GenerationRecord]:
        result = (
            self.sb.table(GENERATIONS_TABLE)
            .select("*")
            .eq("id", generation_id)
            .limit(1)
            .execute()
        )
        return GenerationRecord.model_validate(result.data[0]) if result.data else None

    def find_by_prediction(
        self, stage: CallbackStage, prediction_ref: str
    ) -> Optional[GenerationRecord]:
        column = PREDICTION_COLUMNS[CallbackStage(stage)]
        result = (
            self.sb.table(GENERATIONS_TABLE)
            .select("*")
            .eq(column, prediction_ref)
            .limit(1)
            .execute()
        )
        return GenerationRecord.model_validate(result.data[0]) if result.data else None

    def update_generation(self, generation_id: str, updates: dict) -> Optional[GenerationRecord]:
        result = (
            self.sb.table(GENERATIONS_TABLE)
            .update(_serialize(updates))
            .eq("id", generation_id)
            .execute()
        )
        return GenerationRecord.model_validate(result.data[0]) if result.data else None

    def transition(
        self,
        generation_id: str,
        expected: Iterable[GenerationStatus],
        new_status: GenerationStatus,
        updates: Optional[dict] = None,
    ) -> Optional[GenerationRecord]:
        payload = _serialize({**(updates or {}), "status": new_status})
        result = (
            self.sb.table(GENERATIONS_TABLE)
            .update(payload)
            .eq("id", generation_id)
            .in_("status", _status_values(expected))
            .execute()
        )
        if not result.data:
            return None
        return GenerationRecord.model_validate(result.data[0])

    def list_segment_records(self, parent_id: str) -> list[GenerationRecord]:
        result = (
            self.sb.table(GENERATIONS_TABLE)
            .select("*")
            .eq("parent_id", parent_id)
            .order("segment_index")
            .execute()
        )
        return [GenerationRecord.model_validate(row) for row in result.data]

    def increment_segments_completed(self, parent_id: str, expected: int) -> Optional[int]:
        result = self.sb.rpc(
            "increment_segments_completed", {"p_generation_id": parent_id, "p_expected": expected}
        ).execute()
        return int(result.data) if result.data is not None else None

    # ── Segment plans ────────────────────────────────────────────────────

    def insert_segment_plans(self, rows: list[SegmentPlanRow]) -> None:
        self.sb.table(SEGMENTS_TABLE).insert([r.model_dump(mode="json") for r in rows]).execute()

    def delete_segment_plans(self, parent_id: str) -> None:
        self.sb.table(SEGMENTS_TABLE).delete().eq("parent_id", parent_id).execute()

    def get_segment_plan(self, parent_id: str, segment_index: int) -> Optional[SegmentPlanRow]:
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .select("*")
            .eq("parent_id", parent_id)
            .eq("segment_index", segment_index)
            .limit(1)
            .execute()
        )
        return SegmentPlanRow.model_validate(result.data[0]) if result.data else None

    def list_segment_plans(self, parent_id: str) -> list[SegmentPlanRow]:
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .select("*")
            .eq("parent_id", parent_id)
            .order("segment_index")
            .execute()
        )
        return [SegmentPlanRow.model_validate(row) for row in result.data]

    def update_segment_plan(
        self, parent_id: str, segment_index: int, updates: dict
    ) -> Optional[SegmentPlanRow]:
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .update(updates)
            .eq("parent_id", parent_id)
            .eq("segment_index", segment_index)
            .execute()
        )
        return SegmentPlanRow.model_validate(result.data[0]) if result.data else None

    # ── Library & stats ──────────────────────────────────────────────────

    def record_video(self, row: VideoRow) -> bool:
        # videos.generation_id is unique; a replayed insert is ignored
        result = (
            self.sb.table(VIDEOS_TABLE)
            .upsert(row.model_dump(mode="json"), on_conflict="generation_id", ignore_duplicates=True)
            .execute()
        )
        return bool(result.data)

    def list_videos(self, user_id: str) -> list[VideoRow]:
        result = (
            self.sb.table(VIDEOS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [VideoRow.model_validate(row) for row in result.data]

    def increment_user_stats(self, user_id: str, videos: int, render_seconds: int) -> None:
        self.sb.rpc("increment_user_stats", {
            "p_user_id": user_id,
            "p_videos": videos,
            "p_render_seconds": render_seconds,
        }).execute()

    def get_user_stats(self, user_id: str) -> dict:
        result = (
            self.sb.table(PROFILES_TABLE)
            .select("videos_generated, total_render_time")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        row = result.data[0] if result.data else {}
        return {
            "videos_generated": row.get("videos_generated") or 0,
            "total_render_time": row.get("total_render_time") or 0,
        }

    # ── Ledger ───────────────────────────────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        result = (
            self.sb.table(PROFILES_TABLE)
            .select("credits")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        return (result.data[0].get("credits") or 0) if result.data else 0

    def apply_debit(
        self, user_id: str, amount: int, description: str, generation_id: Optional[str]
    ) -> int:
        try:
            result = self.sb.rpc("debit_credits", {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_description": description,
                "p_generation_id": generation_id,
            }).execute()
        except APIError as e:
            if "insufficient_credits" in (e.message or ""):
                raise InsufficientCredits(user_id, amount, self.get_balance(user_id)) from None
            raise
        return int(result.data)

    def apply_refund(
        self, user_id: str, amount: int, description: str, generation_id: str
    ) -> Optional[int]:
        result = self.sb.rpc("refund_credits", {
            "p_user_id": user_id,
            "p_amount": amount,
            "p_description": description,
            "p_generation_id": generation_id,
        }).execute()
        return None if result.data is None else int(result.data)

    def apply_purchase(
        self, user_id: str, amount: int, description: str, source_ref: str
    ) -> Optional[int]:
        result = self.sb.rpc("add_credits_with_transaction", {
            "p_user_id": user_id,
            "p_credits": amount,
            "p_description": description,
            "p_source_ref": source_ref,
        }).execute()
        return None if result.data is None else int(result.data)

    def list_transactions(self, user_id: str) -> list[CreditTransaction]:
        result = (
            self.sb.table(TRANSACTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [CreditTransaction.model_validate(row) for row in result.data]


def completed_fields(**extra) -> dict:
    """Common column updates for a terminal transition."""
    return {"completed_at": now_iso(), **extra}
