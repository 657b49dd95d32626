from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from resumable_trainer.errors import TrainingConfigError


class TrainingContext(str, Enum):
    MANUAL = "manual"
    BACKGROUND = "background"
    INCREMENTAL = "incremental"
    AUTO = "auto"


@dataclass(frozen=True)
class ModelConfig:
    """Immutable per-run network descriptor, computed once at job start."""

    vocab_size: int
    embedding_dim: int
    max_url_length: int
    max_title_length: int
    num_classes: int
    feature_transform_units: int
    hidden_units: tuple[int, ...]
    dropout: float
    learning_rate: float
    num_engineered_features: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrainingOptions:
    """Option surface handed to the worker.

    `epochs` has no default on purpose: every caller states its own cap.
    """

    epochs: int
    batch_size: int = 32
    learning_rate: float = 0.001
    early_stopping_patience: int = 20
    min_epochs: int = 10
    min_delta: float = 0.001
    validation_split: float = 0.2
    incremental: bool = False
    timeout: float = 0.0

    def validate(self) -> "TrainingOptions":
        if isinstance(self.epochs, bool) or not isinstance(self.epochs, int) or self.epochs <= 0:
            raise TrainingConfigError(f"epochs must be a positive integer, got: {self.epochs!r}")
        if self.batch_size <= 0:
            raise TrainingConfigError(f"Invalid batch_size: {self.batch_size}")
        if self.learning_rate <= 0:
            raise TrainingConfigError(f"Invalid learning_rate: {self.learning_rate}")
        if self.early_stopping_patience <= 0:
            raise TrainingConfigError(f"Invalid early_stopping_patience: {self.early_stopping_patience}")
        if self.min_epochs <= 0:
            raise TrainingConfigError(f"Invalid min_epochs: {self.min_epochs}")
        if self.min_delta <= 0:
            raise TrainingConfigError(f"Invalid min_delta: {self.min_delta}")
        if not 0.0 <= self.validation_split < 1.0:
            raise TrainingConfigError(f"Invalid validation_split: {self.validation_split}")
        if self.timeout < 0:
            raise TrainingConfigError(f"Invalid timeout: {self.timeout}")
        return self


@dataclass
class TrainingResult:
    """Caller-visible outcome of one `start_training` / `train` call."""

    success: bool
    reason: str | None = None
    message: str | None = None
    job_id: str | None = None
    improved: bool | None = None
    completed: bool = False
    cancelled: bool = False
    accuracy: float | None = None
    loss: float | None = None
    actual_epochs: int | None = None
    best_epoch: int | None = None
    used_earlier_checkpoint: bool = False
    duration_s: float | None = None
    history: dict[str, list[Any]] | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


TRAINING_IN_PROGRESS = "training_in_progress"
