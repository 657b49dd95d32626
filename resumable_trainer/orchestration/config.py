from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path)).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    return tomllib.loads(path.read_bytes().decode("utf-8"))


class ModelArchitectureConfig(BaseModel):
    """Shape of the classifier network; vocabulary size is taken at job start."""

    embedding_dim: int = Field(default=16)
    max_url_length: int = Field(default=20)
    max_title_length: int = Field(default=20)
    feature_transform_units: int = Field(default=32)
    hidden_units: tuple[int, ...] = Field(default=(16, 8))
    dropout: float = Field(default=0.3)
    num_classes: int = Field(default=4)


class EarlyStoppingConfig(BaseModel):
    min_delta: float = Field(default=0.001, description="Smallest val_loss drop that counts as improvement.")
    min_epochs: int = Field(default=10, description="Early stopping cannot trigger before this epoch.")


class TrainingDefaults(BaseModel):
    epochs: int = Field(
        default=10000,
        description="Global ceiling; early stopping does the actual stopping.",
    )
    validation_split: float = Field(default=0.2)
    early_stopping: EarlyStoppingConfig = Field(default_factory=EarlyStoppingConfig)
    min_training_examples: int = Field(default=20)
    min_confidence_threshold: float = Field(default=0.01)


class UserSettings(BaseModel):
    """Knobs a user may tune from the settings screen."""

    batch_size: int = Field(default=32)
    learning_rate: float = Field(default=0.001)
    early_stopping_patience: int = Field(default=20)


class BackgroundTrainingConfig(BaseModel):
    enabled: bool = Field(default=True)
    max_training_time_s: float = Field(default=36000.0, description="Ten hours.")
    min_new_examples: int = Field(default=3)


class WorkerConfig(BaseModel):
    init_timeout_s: float = Field(default=5.0)
    message_timeout_s: float = Field(default=30.0)
    max_restart_attempts: int = Field(default=3)
    restart_backoff_s: float = Field(default=5.0)
    checkpoint_interval_s: float = Field(default=5.0)
    memory_warning_bytes: int = Field(default=512 * 1024 * 1024)
    device: str | None = Field(default=None, description="cpu | cuda | mps; auto when unset.")
    seed: int = Field(default=123)


class StorageConfig(BaseModel):
    base_dir: str = Field(default="~/resumable_trainer")
    checkpoints_dir: str = Field(default="checkpoints")
    logs_dir: str = Field(default="logs")
    data_file: str = Field(default="training_data.json")

    def resolve(self) -> "ResolvedStoragePaths":
        base = _expand(self.base_dir)
        return ResolvedStoragePaths(
            base_dir=base,
            checkpoints_dir=base / self.checkpoints_dir,
            logs_dir=base / self.logs_dir,
            data_path=base / self.data_file,
        )


class TrainerConfig(BaseModel):
    model: ModelArchitectureConfig = Field(default_factory=ModelArchitectureConfig)
    training: TrainingDefaults = Field(default_factory=TrainingDefaults)
    settings: UserSettings = Field(default_factory=UserSettings)
    background: BackgroundTrainingConfig = Field(default_factory=BackgroundTrainingConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def load(cls, path: Path) -> "TrainerConfig":
        raw = _read_toml(path)
        return cls.model_validate(raw)


class ResolvedStoragePaths(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    base_dir: Path
    checkpoints_dir: Path
    logs_dir: Path
    data_path: Path

    def ensure_dirs(self) -> None:
        for p in (self.base_dir, self.checkpoints_dir, self.logs_dir):
            p.mkdir(parents=True, exist_ok=True)
