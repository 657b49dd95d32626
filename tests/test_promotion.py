from __future__ import annotations

import pytest

from conftest import make_record
from resumable_trainer.errors import PromotionError
from resumable_trainer.storage.records import CURRENT, TRAINING_BEST, TRAINING_LAST
from resumable_trainer.training.promotion import discard_transients, promote_best_available, promote_checkpoint


@pytest.mark.asyncio
async def test_promote_copies_then_deletes_source(store) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=3, accuracy=0.6))

    promoted = await promote_checkpoint(store, TRAINING_LAST)

    assert promoted.id == CURRENT
    assert promoted.metadata.previous_id == TRAINING_LAST
    assert promoted.metadata.promoted_at is not None
    assert (await store.get(CURRENT)).accuracy == 0.6
    assert await store.get(TRAINING_LAST) is None


@pytest.mark.asyncio
async def test_best_is_preferred_and_both_transients_go(store) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=9, accuracy=0.6))
    await store.put(make_record(TRAINING_BEST, epoch=6, accuracy=0.8))

    promoted = await promote_best_available(store)

    assert promoted.metadata.previous_id == TRAINING_BEST
    assert promoted.accuracy == 0.8
    assert sorted(await store.list_ids()) == [CURRENT]


@pytest.mark.asyncio
async def test_last_is_promoted_when_best_is_missing(store) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=9, accuracy=0.6))

    promoted = await promote_best_available(store)

    assert promoted.metadata.previous_id == TRAINING_LAST
    assert await store.list_ids() == [CURRENT]


@pytest.mark.asyncio
async def test_nothing_to_promote_raises(store) -> None:
    with pytest.raises(PromotionError):
        await promote_best_available(store)
    with pytest.raises(PromotionError):
        await promote_checkpoint(store, TRAINING_BEST)


@pytest.mark.asyncio
async def test_discard_transients_keeps_current(store) -> None:
    await store.put(make_record(CURRENT, epoch=2))
    await store.put(make_record(TRAINING_LAST, epoch=3))
    await store.put(make_record(TRAINING_BEST, epoch=3))

    await discard_transients(store)

    assert await store.list_ids() == [CURRENT]
