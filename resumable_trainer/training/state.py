from __future__ import annotations

import logging
from dataclasses import dataclass, field

from resumable_trainer.storage.records import CheckpointRecord, TrainingHistory, WeightTensor


logger = logging.getLogger(__name__)


def history_epoch_count(record: CheckpointRecord) -> int:
    """Completed epochs recorded in a checkpoint.

    History length wins; the stored counter is only used when there is no
    history at all.
    """
    history = record.metadata.training_history
    history_len = len(history) if history is not None else 0
    stored = record.metadata.epoch
    if history_len and stored and history_len != stored:
        logger.info(
            "Epoch mismatch in %s: history length %d vs stored epoch %d; using history",
            record.id,
            history_len,
            stored,
        )
    return history_len or stored


def reconcile_history(history: TrainingHistory, epoch: int) -> TrainingHistory:
    """Return a copy of `history` holding at most `epoch` entries.

    Entries at or beyond `epoch` belong to a run that was rolled back and are
    dropped. A history shorter than `epoch` is left alone (the counter is
    stale, not the history), never padded.
    """
    out = history.copy()
    if len(out) > epoch:
        logger.info("Truncating training history from %d to %d entries", len(out), epoch)
        out.truncate(epoch)
    return out


@dataclass
class TrainingState:
    """The resumable part of a run."""

    epoch: int = 0
    best_accuracy: float = 0.0
    best_val_loss: float | None = None
    epochs_without_improvement: int = 0
    training_history: TrainingHistory = field(default_factory=TrainingHistory)
    weights: tuple[WeightTensor, ...] | None = None

    @classmethod
    def from_record(cls, record: CheckpointRecord) -> "TrainingState":
        meta = record.metadata
        history = meta.training_history.copy() if meta.training_history is not None else TrainingHistory()
        epoch = history_epoch_count(record)
        if len(history) > epoch:
            history.truncate(epoch)
        best_accuracy = meta.best_accuracy or record.accuracy or 0.0
        return cls(
            epoch=epoch,
            best_accuracy=float(best_accuracy),
            best_val_loss=meta.val_loss,
            epochs_without_improvement=meta.epochs_without_improvement,
            training_history=history,
            weights=record.weights,
        )

    @property
    def start_epoch(self) -> int:
        """1-based number of the next epoch to run, or 0 for a fresh run."""
        return self.epoch + 1 if self.epoch > 0 else 0
