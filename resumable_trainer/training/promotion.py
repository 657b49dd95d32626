from __future__ import annotations

import logging

from resumable_trainer.common.time_utils import now_ms
from resumable_trainer.errors import PromotionError
from resumable_trainer.storage.checkpoint_store import CheckpointStore
from resumable_trainer.storage.records import CURRENT, CheckpointKind, CheckpointRecord


logger = logging.getLogger(__name__)


async def promote_checkpoint(store: CheckpointStore, source_id: str) -> CheckpointRecord:
    """Copy `source_id` into the `current` slot, then delete the source.

    Write-then-delete: a crash between the two steps leaves the transient
    record behind, and the next resume decision repeats the cleanup.
    """
    source = await store.get(source_id)
    if source is None:
        raise PromotionError(f"Training model not found: {source_id}")

    promoted = source.with_id(CURRENT, promoted_at=now_ms(), previous_id=source_id)
    await store.put(promoted)
    await store.delete(source_id)
    logger.info(
        "Promoted %s to %s (epoch=%s accuracy=%.3f)",
        source_id,
        CURRENT,
        promoted.metadata.epoch,
        promoted.accuracy,
    )
    return promoted


async def promote_best_available(store: CheckpointStore) -> CheckpointRecord:
    """Promote `training_best` when present, else `training_last`.

    Both transient slots are gone afterwards.
    """
    for kind in (CheckpointKind.BEST, CheckpointKind.LAST):
        if await store.get(kind.record_id) is None:
            continue
        if kind is CheckpointKind.LAST:
            logger.warning("No best checkpoint found, promoting last checkpoint")
        promoted = await promote_checkpoint(store, kind.record_id)
        await store.delete(kind.other().record_id)
        return promoted
    raise PromotionError("No training checkpoints found to promote")


async def discard_transients(store: CheckpointStore) -> None:
    await store.delete(CheckpointKind.LAST.record_id)
    await store.delete(CheckpointKind.BEST.record_id)
