from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import torch

from resumable_trainer.features.vocabulary import Vocabulary
from resumable_trainer.models.classifier import (
    TabClassifierNet,
    build_model,
    import_weights,
    make_model_config,
    weights_vocab_size,
)
from resumable_trainer.orchestration.config import ModelArchitectureConfig
from resumable_trainer.storage.checkpoint_store import CheckpointStore, load_current
from resumable_trainer.storage.records import CheckpointRecord
from resumable_trainer.training.types import ModelConfig


logger = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    net: TabClassifierNet
    config: ModelConfig
    vocabulary: Vocabulary | None
    record_id: str
    accuracy: float


class ModelCache:
    """Owns the in-memory model built from the `current` record.

    Prediction consumers go through `get()`; promotion calls `invalidate()`
    so the next `get()` rebuilds from the newly promoted weights.
    """

    def __init__(
        self,
        store: CheckpointStore,
        architecture: ModelArchitectureConfig,
        *,
        learning_rate: float = 0.001,
    ) -> None:
        self.store = store
        self.architecture = architecture
        self.learning_rate = learning_rate
        self._loaded: LoadedModel | None = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> LoadedModel | None:
        return self._loaded

    def invalidate(self) -> None:
        if self._loaded is not None:
            logger.info("Invalidating cached model built from %s", self._loaded.record_id)
        self._loaded = None

    async def get(self) -> LoadedModel | None:
        async with self._lock:
            if self._loaded is None:
                record = await load_current(self.store)
                if record is not None:
                    self._loaded = self.load_from_record(record)
            return self._loaded

    def load_from_record(self, record: CheckpointRecord) -> LoadedModel | None:
        if not record.weights:
            logger.warning("Record %s has no weights; nothing to load", record.id)
            return None

        vocabulary = Vocabulary.from_dict(record.vocabulary) if record.vocabulary else None
        vocab_size = weights_vocab_size(record.weights)
        if vocab_size is None:
            vocab_size = vocabulary.size() if vocabulary is not None else 2
        cfg = make_model_config(self.architecture, vocab_size=vocab_size, learning_rate=self.learning_rate)

        net = build_model(cfg, device=torch.device("cpu"))
        if not import_weights(net, record.weights):
            logger.warning("Record %s does not match the configured architecture", record.id)
            return None
        net.eval()
        self._loaded = LoadedModel(
            net=net,
            config=cfg,
            vocabulary=vocabulary,
            record_id=record.id,
            accuracy=record.accuracy,
        )
        return self._loaded
