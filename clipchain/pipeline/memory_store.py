"""
In-memory fallback store.

Activates when Supabase is not configured (local development) and backs
the test suite. Every public method holds one lock for its whole body, so
each call is as atomic as the corresponding Postgres function.
"""

import threading
from typing import Iterable, Optional
from uuid import uuid4

from .errors import InsufficientCredits
from .models import (
    CallbackStage,
    CreditTransaction,
    GenerationRecord,
    GenerationStatus,
    SegmentPlanRow,
    TransactionKind,
    VideoRow,
)
from .store import GenerationStore, LedgerStore, PREDICTION_COLUMNS


class MemoryStore(GenerationStore, LedgerStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._generations: dict[str, dict] = {}
        self._plans: dict[tuple[str, int], dict] = {}
        self._videos: dict[str, VideoRow] = {}
        self._profiles: dict[str, dict] = {}
        self._transactions: list[CreditTransaction] = []

    def _profile(self, user_id: str) -> dict:
        return self._profiles.setdefault(
            user_id, {"credits": 0, "videos_generated": 0, "total_render_time": 0}
        )

    # ── Generation records ───────────────────────────────────────────────

    def insert_generation(self, record: GenerationRecord) -> GenerationRecord:
        with self._lock:
            if record.id in self._generations:
                raise ValueError(f"Duplicate generation id {record.id}")
            self._generations[record.id] = record.model_dump()
            return record

    def delete_generation(self, generation_id: str) -> None:
        with self._lock:
            self._generations.pop(generation_id, None)

    def get_generation(self, generation_id: str) -> Optional[GenerationRecord]:
        with self._lock:
            row = self._generations.get(generation_id)
            return GenerationRecord.model_validate(row) if row else None

    def find_by_prediction(
        self, stage: CallbackStage, prediction_ref: str
    ) -> Optional[GenerationRecord]:
        column = PREDICTION_COLUMNS[CallbackStage(stage)]
        with self._lock:
            for row in self._generations.values():
                if row.get(column) == prediction_ref:
                    return GenerationRecord.model_validate(row)
        return None

    def update_generation(self, generation_id: str, updates: dict) -> Optional[GenerationRecord]:
        with self._lock:
            row = self._generations.get(generation_id)
            if row is None:
                return None
            row.update(updates)
            return GenerationRecord.model_validate(row)

    def transition(
        self,
        generation_id: str,
        expected: Iterable[GenerationStatus],
        new_status: GenerationStatus,
        updates: Optional[dict] = None,
    ) -> Optional[GenerationRecord]:
        allowed = {GenerationStatus(s) for s in expected}
        with self._lock:
            row = self._generations.get(generation_id)
            if row is None or GenerationStatus(row["status"]) not in allowed:
                return None
            row.update(updates or {})
            row["status"] = GenerationStatus(new_status)
            return GenerationRecord.model_validate(row)

    def list_segment_records(self, parent_id: str) -> list[GenerationRecord]:
        with self._lock:
            rows = [r for r in self._generations.values() if r.get("parent_id") == parent_id]
        rows.sort(key=lambda r: r["segment_index"])
        return [GenerationRecord.model_validate(r) for r in rows]

    def increment_segments_completed(self, parent_id: str, expected: int) -> Optional[int]:
        with self._lock:
            row = self._generations[parent_id]
            if (row.get("segments_completed") or 0) != expected:
                return None
            row["segments_completed"] = expected + 1
            return row["segments_completed"]

    # ── Segment plans ────────────────────────────────────────────────────

    def insert_segment_plans(self, rows: list[SegmentPlanRow]) -> None:
        with self._lock:
            for plan in rows:
                key = (plan.parent_id, plan.segment_index)
                if key in self._plans:
                    raise ValueError(f"Duplicate segment plan {key}")
                self._plans[key] = plan.model_dump()

    def delete_segment_plans(self, parent_id: str) -> None:
        with self._lock:
            for key in [k for k in self._plans if k[0] == parent_id]:
                del self._plans[key]

    def get_segment_plan(self, parent_id: str, segment_index: int) -> Optional[SegmentPlanRow]:
        with self._lock:
            row = self._plans.get((parent_id, segment_index))
            return SegmentPlanRow.model_validate(row) if row else None

    def list_segment_plans(self, parent_id: str) -> list[SegmentPlanRow]:
        with self._lock:
            rows = [r for (pid, _), r in self._plans.items() if pid == parent_id]
        rows.sort(key=lambda r: r["segment_index"])
        return [SegmentPlanRow.model_validate(r) for r in rows]

    def update_segment_plan(
        self, parent_id: str, segment_index: int, updates: dict
    ) -> Optional[SegmentPlanRow]:
        with self._lock:
            row = self._plans.get((parent_id, segment_index))
            if row is None:
                return None
            row.update(updates)
            return SegmentPlanRow.model_validate(row)

    # ── Library & stats ──────────────────────────────────────────────────

    def record_video(self, row: VideoRow) -> bool:
        with self._lock:
            if row.generation_id in self._videos:
                return False
            self._videos[row.generation_id] = row
            return True

    def list_videos(self, user_id: str) -> list[VideoRow]:
        with self._lock:
            rows = [v for v in self._videos.values() if v.user_id == user_id]
        return sorted(rows, key=lambda v: v.created_at, reverse=True)

    def increment_user_stats(self, user_id: str, videos: int, render_seconds: int) -> None:
        with self._lock:
            profile = self._profile(user_id)
            profile["videos_generated"] += videos
            profile["total_render_time"] += render_seconds

    def get_user_stats(self, user_id: str) -> dict:
        with self._lock:
            profile = self._profile(user_id)
            return {
                "videos_generated": profile["videos_generated"],
                "total_render_time": profile["total_render_time"],
            }

    # ── Ledger ───────────────────────────────────────────────────────────

    def _append(self, user_id: str, amount: int, kind: TransactionKind, description: str,
                generation_id: Optional[str] = None, source_ref: Optional[str] = None):
        self._transactions.append(CreditTransaction(
            id=str(uuid4()),
            user_id=user_id,
            amount=amount,
            kind=kind,
            description=description,
            generation_id=generation_id,
            source_ref=source_ref,
        ))

    def get_balance(self, user_id: str) -> int:
        with self._lock:
            return self._profile(user_id)["credits"]

    def apply_debit(
        self, user_id: str, amount: int, description: str, generation_id: Optional[str]
    ) -> int:
        with self._lock:
            profile = self._profile(user_id)
            if profile["credits"] < amount:
                raise InsufficientCredits(user_id, amount, profile["credits"])
            profile["credits"] -= amount
            self._append(user_id, -amount, TransactionKind.USED, description, generation_id=generation_id)
            return profile["credits"]

    def apply_refund(
        self, user_id: str, amount: int, description: str, generation_id: str
    ) -> Optional[int]:
        with self._lock:
            kinds = {t.kind for t in self._transactions if t.generation_id == generation_id}
            if TransactionKind.USED not in kinds or TransactionKind.REFUND in kinds:
                return None
            profile = self._profile(user_id)
            profile["credits"] += amount
            self._append(user_id, amount, TransactionKind.REFUND, description, generation_id=generation_id)
            return profile["credits"]

    def apply_purchase(
        self, user_id: str, amount: int, description: str, source_ref: str
    ) -> Optional[int]:
        with self._lock:
            if any(t.source_ref == source_ref for t in self._transactions):
                return None
            profile = self._profile(user_id)
            profile["credits"] += amount
            self._append(user_id, amount, TransactionKind.PURCHASE, description, source_ref=source_ref)
            return profile["credits"]

    def list_transactions(self, user_id: str) -> list[CreditTransaction]:
        with self._lock:
            rows = [t for t in self._transactions if t.user_id == user_id]
        return list(reversed(rows))
