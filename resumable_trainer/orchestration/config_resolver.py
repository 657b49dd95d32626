from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from resumable_trainer.orchestration.config import TrainerConfig
from resumable_trainer.training.types import TrainingContext, TrainingOptions


logger = logging.getLogger(__name__)

_BACKGROUND_FALLBACK_TIMEOUT_S = 300.0
_INCREMENTAL_TIMEOUT_S = 60.0
_BACKGROUND_MAX_EPOCHS = 50
_INCREMENTAL_MAX_EPOCHS = 10


class TrainingOverrides(BaseModel):
    """Per-call options; anything left unset falls through to settings and defaults."""

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    epochs: int | None = Field(default=None, gt=0)
    batch_size: int | None = Field(default=None, gt=0)
    learning_rate: float | None = Field(default=None, gt=0)
    early_stopping_patience: int | None = Field(default=None, gt=0)
    validation_split: float | None = Field(default=None, ge=0.0, lt=1.0)
    timeout_s: float | None = Field(default=None, ge=0.0)
    incremental: bool | None = None
    model_exists: bool = False
    fresh_training: bool = False
    balance_classes: bool = True


class ResolvedTrainingConfig(BaseModel):
    context: TrainingContext
    epochs: int
    batch_size: int
    learning_rate: float
    early_stopping_patience: int
    validation_split: float
    min_epochs: int
    min_delta: float
    timeout_s: float
    is_incremental: bool
    background_mode: bool
    ui_callbacks: bool
    balance_classes: bool = True

    def to_options(self) -> TrainingOptions:
        return TrainingOptions(
            epochs=self.epochs,
            batch_size=self.batch_size,
            learning_rate=self.learning_rate,
            early_stopping_patience=self.early_stopping_patience,
            min_epochs=self.min_epochs,
            min_delta=self.min_delta,
            validation_split=self.validation_split,
            incremental=self.is_incremental,
            timeout=self.timeout_s,
        )


class TrainingConfigResolver:
    """Resolve per-call training knobs.

    Priority: call options, then user settings, then context defaults, then
    global defaults. Context caps (epochs, timeouts) are applied last.
    """

    def __init__(self, config: TrainerConfig) -> None:
        self.config = config

    def context_defaults(self, context: TrainingContext) -> dict[str, Any]:
        max_time = self.config.background.max_training_time_s or _BACKGROUND_FALLBACK_TIMEOUT_S
        if context is TrainingContext.MANUAL:
            return {"timeout_s": 0.0}
        if context is TrainingContext.BACKGROUND:
            return {"timeout_s": max_time}
        if context is TrainingContext.INCREMENTAL:
            return {"timeout_s": _INCREMENTAL_TIMEOUT_S}
        if context is TrainingContext.AUTO:
            return {"timeout_s": max_time}
        return {}

    @staticmethod
    def determine_incremental(context: TrainingContext, overrides: TrainingOverrides) -> bool:
        if overrides.incremental is not None:
            return overrides.incremental
        if context is TrainingContext.INCREMENTAL:
            return True
        if context is TrainingContext.MANUAL:
            return overrides.model_exists
        if context in (TrainingContext.BACKGROUND, TrainingContext.AUTO):
            return not overrides.fresh_training
        return False

    def resolve(
        self,
        context: TrainingContext | str,
        overrides: TrainingOverrides | None = None,
    ) -> ResolvedTrainingConfig:
        context = TrainingContext(context)
        overrides = overrides or TrainingOverrides()
        training = self.config.training
        settings = self.config.settings

        values: dict[str, Any] = {
            "epochs": training.epochs,
            "batch_size": settings.batch_size,
            "learning_rate": settings.learning_rate,
            "early_stopping_patience": settings.early_stopping_patience,
            "validation_split": training.validation_split,
            "timeout_s": 0.0,
        }
        values.update(self.context_defaults(context))
        explicit = overrides.model_dump(
            exclude_none=True,
            include={"epochs", "batch_size", "learning_rate", "early_stopping_patience", "validation_split", "timeout_s"},
        )
        values.update(explicit)

        if context is TrainingContext.BACKGROUND:
            if not values["timeout_s"]:
                values["timeout_s"] = _BACKGROUND_FALLBACK_TIMEOUT_S
            values["epochs"] = min(values["epochs"], _BACKGROUND_MAX_EPOCHS)
        elif context is TrainingContext.INCREMENTAL:
            values["epochs"] = min(values["epochs"], _INCREMENTAL_MAX_EPOCHS)

        resolved = ResolvedTrainingConfig(
            context=context,
            min_epochs=training.early_stopping.min_epochs,
            min_delta=training.early_stopping.min_delta,
            is_incremental=self.determine_incremental(context, overrides),
            background_mode=context in (TrainingContext.BACKGROUND, TrainingContext.AUTO),
            ui_callbacks=context is TrainingContext.MANUAL,
            balance_classes=overrides.balance_classes,
            **values,
        )
        logger.info(
            "Resolved %s training config: epochs=%d batch_size=%d incremental=%s timeout=%.0fs",
            context.value,
            resolved.epochs,
            resolved.batch_size,
            resolved.is_incremental,
            resolved.timeout_s,
        )
        return resolved
