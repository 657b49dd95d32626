from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Sequence


CURRENT = "current"
TRAINING_LAST = "training_last"
TRAINING_BEST = "training_best"
TRAINING_PREFIX = "training_"


class CheckpointKind(str, Enum):
    LAST = "last"
    BEST = "best"

    @property
    def record_id(self) -> str:
        return TRAINING_BEST if self is CheckpointKind.BEST else TRAINING_LAST

    def other(self) -> "CheckpointKind":
        return CheckpointKind.LAST if self is CheckpointKind.BEST else CheckpointKind.BEST


@dataclass(frozen=True)
class WeightTensor:
    """One weight array as an opaque flat blob plus its shape."""

    shape: tuple[int, ...]
    data: tuple[float, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"shape": list(self.shape), "data": list(self.data)}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "WeightTensor":
        return cls(
            shape=tuple(int(s) for s in raw.get("shape", ())),
            data=tuple(float(v) for v in raw.get("data", ())),
        )


def weights_to_list(weights: Sequence[WeightTensor] | None) -> list[dict[str, Any]] | None:
    if weights is None:
        return None
    return [w.to_dict() for w in weights]


def weights_from_list(raw: Sequence[Mapping[str, Any]] | None) -> tuple[WeightTensor, ...] | None:
    if raw is None:
        return None
    return tuple(WeightTensor.from_dict(w) for w in raw)


@dataclass
class TrainingHistory:
    """Per-epoch metrics as parallel lists.

    The history length is the authoritative count of completed epochs.
    """

    loss: list[float] = field(default_factory=list)
    accuracy: list[float | None] = field(default_factory=list)
    val_loss: list[float | None] = field(default_factory=list)
    val_accuracy: list[float | None] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.loss)

    def append(
        self,
        loss: float,
        accuracy: float | None,
        val_loss: float | None,
        val_accuracy: float | None,
    ) -> None:
        self.loss.append(loss)
        self.accuracy.append(accuracy)
        self.val_loss.append(val_loss)
        self.val_accuracy.append(val_accuracy)

    def truncate(self, n: int) -> None:
        n = max(0, n)
        del self.loss[n:]
        del self.accuracy[n:]
        del self.val_loss[n:]
        del self.val_accuracy[n:]

    def copy(self) -> "TrainingHistory":
        return TrainingHistory(
            loss=list(self.loss),
            accuracy=list(self.accuracy),
            val_loss=list(self.val_loss),
            val_accuracy=list(self.val_accuracy),
        )

    def to_dict(self) -> dict[str, list[Any]]:
        return {
            "loss": list(self.loss),
            "accuracy": list(self.accuracy),
            "val_loss": list(self.val_loss),
            "val_accuracy": list(self.val_accuracy),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "TrainingHistory":
        raw = raw or {}
        return cls(
            loss=list(raw.get("loss") or []),
            accuracy=list(raw.get("accuracy") or []),
            val_loss=list(raw.get("val_loss") or []),
            val_accuracy=list(raw.get("val_accuracy") or []),
        )


@dataclass
class CheckpointMetadata:
    epoch: int = 0
    best_accuracy: float = 0.0
    epochs_without_improvement: int = 0
    training_history: TrainingHistory | None = None
    val_loss: float | None = None
    checkpoint_type: str | None = None
    job_id: str | None = None
    vocab_size: int | None = None
    started_at: int | None = None
    saved_at: int | None = None
    promoted_at: int | None = None
    previous_id: str | None = None
    trained_up_to: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "best_accuracy": self.best_accuracy,
            "epochs_without_improvement": self.epochs_without_improvement,
            "training_history": self.training_history.to_dict() if self.training_history is not None else None,
            "val_loss": self.val_loss,
            "checkpoint_type": self.checkpoint_type,
            "job_id": self.job_id,
            "vocab_size": self.vocab_size,
            "started_at": self.started_at,
            "saved_at": self.saved_at,
            "promoted_at": self.promoted_at,
            "previous_id": self.previous_id,
            "trained_up_to": self.trained_up_to,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "CheckpointMetadata":
        raw = raw or {}
        history = raw.get("training_history")
        return cls(
            epoch=int(raw.get("epoch") or 0),
            best_accuracy=float(raw.get("best_accuracy") or 0.0),
            epochs_without_improvement=int(raw.get("epochs_without_improvement") or 0),
            training_history=TrainingHistory.from_dict(history) if history is not None else None,
            val_loss=raw.get("val_loss"),
            checkpoint_type=raw.get("checkpoint_type"),
            job_id=raw.get("job_id"),
            vocab_size=raw.get("vocab_size"),
            started_at=raw.get("started_at"),
            saved_at=raw.get("saved_at"),
            promoted_at=raw.get("promoted_at"),
            previous_id=raw.get("previous_id"),
            trained_up_to=raw.get("trained_up_to"),
        )


@dataclass
class CheckpointRecord:
    """Record shape shared by `current`, `training_last` and `training_best`."""

    id: str
    version: str
    weights: tuple[WeightTensor, ...] | None
    vocabulary: Mapping[str, Any] | None
    accuracy: float
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)

    def with_id(self, record_id: str, **metadata_changes: Any) -> "CheckpointRecord":
        meta = replace(self.metadata, **metadata_changes) if metadata_changes else self.metadata
        return replace(self, id=record_id, metadata=meta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "weights": weights_to_list(self.weights),
            "vocabulary": dict(self.vocabulary) if self.vocabulary is not None else None,
            "accuracy": self.accuracy,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CheckpointRecord":
        return cls(
            id=str(raw["id"]),
            version=str(raw.get("version") or ""),
            weights=weights_from_list(raw.get("weights")),
            vocabulary=raw.get("vocabulary"),
            accuracy=float(raw.get("accuracy") or 0.0),
            metadata=CheckpointMetadata.from_dict(raw.get("metadata")),
        )
