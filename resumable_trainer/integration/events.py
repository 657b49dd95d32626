from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping


@dataclass(frozen=True)
class DomainEvent:
    """Base type for all domain events."""

    occurred_at: datetime


# --- Training lifecycle events ----------------------------------------------


@dataclass(frozen=True)
class TrainingStarted(DomainEvent):
    context: str
    is_incremental: bool


@dataclass(frozen=True)
class TrainingProgressed(DomainEvent):
    job_id: str
    epoch: int
    total_epochs: int
    loss: float | None
    accuracy: float | None
    val_loss: float | None
    val_accuracy: float | None
    progress: float


@dataclass(frozen=True)
class CheckpointSaved(DomainEvent):
    job_id: str
    checkpoint_type: str
    epoch: int


@dataclass(frozen=True)
class TrainingCompleted(DomainEvent):
    context: str
    result: Mapping[str, Any]


@dataclass(frozen=True)
class TrainingFailed(DomainEvent):
    context: str
    error: str


# --- Model / worker events ---------------------------------------------------


@dataclass(frozen=True)
class ModelPromoted(DomainEvent):
    source_id: str
    accuracy: float
    epoch: int | None


@dataclass(frozen=True)
class VocabularyArchitectureChanged(DomainEvent):
    checkpoint_vocab_size: int
    current_vocab_size: int


@dataclass(frozen=True)
class WorkerMemoryWarning(DomainEvent):
    num_bytes: int
    details: Mapping[str, Any]


@dataclass(frozen=True)
class MetricRecorded(DomainEvent):
    method: str
    type: str
    value: float | None
    metadata: Mapping[str, Any] | None = None
