"""
Assembly of the pipeline components.

Supabase-backed when SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are set;
otherwise the in-memory store and local media storage (development only).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .dispatcher import PredictionDispatcher
from .frames import FrameExtractor
from .ledger import CreditLedger
from .memory_store import MemoryStore
from .payments import PaymentVerifier
from .service import GenerationService
from .stitcher import Stitcher
from .storage import LocalMediaStorage, MediaStorage, SupabaseMediaStorage
from .store import SupabaseStore
from .webhook import PipelineWebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    store: object
    ledger: CreditLedger
    dispatcher: PredictionDispatcher
    storage: MediaStorage
    extractor: FrameExtractor
    stitcher: Stitcher
    service: GenerationService
    webhook: PipelineWebhookHandler
    payments: PaymentVerifier


def build_pipeline(
    store=None,
    storage: Optional[MediaStorage] = None,
    dispatcher: Optional[PredictionDispatcher] = None,
    extractor: Optional[FrameExtractor] = None,
    stitcher: Optional[Stitcher] = None,
    payments: Optional[PaymentVerifier] = None,
    audio_pass_enabled: Optional[bool] = None,
) -> Pipeline:
    """Build every component, filling unspecified ones from the environment."""
    if store is None or storage is None:
        if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
            supabase_store = SupabaseStore.from_env()
            store = store or supabase_store
            storage = storage or SupabaseMediaStorage(supabase_store.sb)
        else:
            logger.warning("Supabase not configured, using in-memory store and local media storage")
            store = store or MemoryStore()
            storage = storage or LocalMediaStorage()

    ledger = CreditLedger(store)
    dispatcher = dispatcher or PredictionDispatcher()
    extractor = extractor or FrameExtractor(storage, store)
    stitcher = stitcher or Stitcher(storage)

    webhook_kwargs = {}
    if audio_pass_enabled is not None:
        webhook_kwargs["audio_pass_enabled"] = audio_pass_enabled

    return Pipeline(
        store=store,
        ledger=ledger,
        dispatcher=dispatcher,
        storage=storage,
        extractor=extractor,
        stitcher=stitcher,
        service=GenerationService(store, ledger, dispatcher),
        webhook=PipelineWebhookHandler(
            store, ledger, dispatcher, storage, extractor, stitcher, **webhook_kwargs
        ),
        payments=payments or PaymentVerifier(ledger),
    )


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """FastAPI dependency; lazily builds the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline
