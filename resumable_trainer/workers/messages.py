from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class MessageType(str, Enum):
    # outbound
    INIT = "INIT"
    TRAIN = "TRAIN"
    PREDICT = "PREDICT"
    CANCEL = "CANCEL"
    STATUS = "STATUS"
    # inbound
    INITIALIZED = "INITIALIZED"
    PROGRESS = "PROGRESS"
    BATCH_PROGRESS = "BATCH_PROGRESS"
    CHECKPOINT = "CHECKPOINT"
    TRAINING_COMPLETE = "TRAINING_COMPLETE"
    PREDICTION_COMPLETE = "PREDICTION_COMPLETE"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"
    MEMORY_WARNING = "MEMORY_WARNING"


@dataclass(frozen=True)
class WorkerMessage:
    """`{type, job_id, data|error}` envelope exchanged with the worker."""

    type: MessageType
    job_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
