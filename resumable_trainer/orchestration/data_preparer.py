from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from resumable_trainer.errors import TrainingDataError
from resumable_trainer.features.extraction import TrainingExample
from resumable_trainer.orchestration.config import TrainingDefaults
from resumable_trainer.orchestration.config_resolver import ResolvedTrainingConfig
from resumable_trainer.storage.checkpoint_store import CheckpointStore, load_current
from resumable_trainer.training.types import TrainingContext


logger = logging.getLogger(__name__)


class TrainingDataSource(Protocol):
    async def load_all(self) -> list[TrainingExample]:
        ...


class InMemoryTrainingDataSource(TrainingDataSource):
    def __init__(self, examples: Iterable[TrainingExample] = ()) -> None:
        self.examples = list(examples)

    async def load_all(self) -> list[TrainingExample]:
        return list(self.examples)


class JsonFileTrainingDataSource(TrainingDataSource):
    """Labeled examples stored as a JSON list of objects."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> list[TrainingExample]:
        if not self.path.exists():
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        return [TrainingExample.from_dict(item) for item in raw]

    async def load_all(self) -> list[TrainingExample]:
        return await asyncio.to_thread(self._read)


@dataclass(frozen=True)
class PreparedData:
    training: list[TrainingExample]
    validation: list[TrainingExample]


def _url_hash(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def deduplicate_by_url(examples: Iterable[TrainingExample]) -> list[TrainingExample]:
    """One example per url: higher confidence wins, then the newer one."""
    by_url: dict[str, TrainingExample] = {}
    for ex in examples:
        existing = by_url.get(ex.url)
        if existing is None:
            by_url[ex.url] = ex
            continue
        if ex.training_confidence > existing.training_confidence or (
            ex.training_confidence == existing.training_confidence and ex.timestamp > existing.timestamp
        ):
            by_url[ex.url] = ex
    return list(by_url.values())


def split_by_url_hash(
    examples: Sequence[TrainingExample],
    validation_split: float,
) -> tuple[list[TrainingExample], list[TrainingExample]]:
    """Deterministic split: the same url always lands on the same side."""
    ordered = sorted(examples, key=lambda ex: _url_hash(ex.url))
    n_val = int(round(len(ordered) * validation_split))
    if validation_split > 0 and n_val == 0 and len(ordered) > 1:
        n_val = 1
    return ordered[n_val:], ordered[:n_val]


def balance_by_weight(examples: Sequence[TrainingExample], *, seed: int = 0) -> list[TrainingExample]:
    """Oversample each category until its total confidence matches the heaviest one."""
    groups: dict[int, list[TrainingExample]] = defaultdict(list)
    for ex in examples:
        groups[ex.category].append(ex)
    if not groups:
        return []

    weights = {cat: sum(ex.training_confidence or 1.0 for ex in items) for cat, items in groups.items()}
    target = max(weights.values())
    balanced: list[TrainingExample] = []
    for cat in sorted(groups):
        items = groups[cat]
        balanced.extend(items)
        needed = target - weights[cat]
        i = 0
        while needed > 1e-9:
            ex = items[i % len(items)]
            balanced.append(ex)
            needed -= ex.training_confidence or 1.0
            i += 1

    random.Random(seed).shuffle(balanced)
    return balanced


class TrainingDataPreparer:
    """Load, filter, dedupe, split and balance labeled examples for one run."""

    def __init__(
        self,
        source: TrainingDataSource,
        store: CheckpointStore,
        defaults: TrainingDefaults,
        *,
        seed: int = 123,
    ) -> None:
        self.source = source
        self.store = store
        self.defaults = defaults
        self.seed = seed

    async def load_raw(self, resolved: ResolvedTrainingConfig) -> list[TrainingExample]:
        examples = await self.source.load_all()
        if resolved.context is not TrainingContext.INCREMENTAL:
            return examples

        current = await load_current(self.store)
        trained_up_to = (current.metadata.trained_up_to if current is not None else None) or 0
        fresh = [ex for ex in examples if ex.timestamp > trained_up_to]
        logger.info("Incremental training: %d new samples since %d", len(fresh), trained_up_to)
        return fresh

    def validate_and_filter(self, examples: Sequence[TrainingExample]) -> list[TrainingExample]:
        if not examples:
            raise TrainingDataError("No training data available")
        kept = [
            ex
            for ex in examples
            if ex.url and ex.title and ex.category > 0 and ex.training_confidence > 0
        ]
        deduped = deduplicate_by_url(kept)
        minimum = self.defaults.min_training_examples
        if len(deduped) < minimum:
            raise TrainingDataError(f"Insufficient training data: {len(deduped)} (minimum: {minimum})")
        return deduped

    async def prepare(self, resolved: ResolvedTrainingConfig) -> PreparedData:
        raw = await self.load_raw(resolved)
        filtered = self.validate_and_filter(raw)
        training, validation = split_by_url_hash(filtered, resolved.validation_split)
        if resolved.balance_classes:
            training = balance_by_weight(training, seed=self.seed)
        logger.info(
            "Prepared %d training / %d validation examples (%s)",
            len(training),
            len(validation),
            resolved.context.value,
        )
        return PreparedData(training=training, validation=validation)
