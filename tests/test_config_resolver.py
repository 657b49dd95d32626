from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from resumable_trainer.errors import TrainingConfigError
from resumable_trainer.orchestration.config import TrainerConfig
from resumable_trainer.orchestration.config_resolver import TrainingConfigResolver, TrainingOverrides
from resumable_trainer.training.types import TrainingContext, TrainingOptions


def test_manual_uses_settings_and_no_timeout() -> None:
    resolved = TrainingConfigResolver(TrainerConfig()).resolve("manual")

    assert resolved.context is TrainingContext.MANUAL
    assert resolved.epochs == 10000
    assert resolved.batch_size == 32
    assert resolved.timeout_s == 0.0
    assert resolved.ui_callbacks
    assert not resolved.background_mode
    assert not resolved.is_incremental


def test_background_caps_epochs_and_uses_max_training_time() -> None:
    resolved = TrainingConfigResolver(TrainerConfig()).resolve(TrainingContext.BACKGROUND)

    assert resolved.epochs == 50
    assert resolved.timeout_s == 36000.0
    assert resolved.background_mode
    assert resolved.is_incremental


def test_background_zero_timeout_falls_back() -> None:
    resolver = TrainingConfigResolver(TrainerConfig())

    resolved = resolver.resolve("background", TrainingOverrides(timeout_s=0))

    assert resolved.timeout_s == 300.0


def test_incremental_caps_epochs_and_times_out_quickly() -> None:
    resolved = TrainingConfigResolver(TrainerConfig()).resolve(
        "incremental", TrainingOverrides(epochs=25, batch_size=8)
    )

    assert resolved.epochs == 10
    assert resolved.batch_size == 8
    assert resolved.timeout_s == 60.0
    assert resolved.is_incremental


def test_explicit_options_win() -> None:
    resolver = TrainingConfigResolver(TrainerConfig())

    resolved = resolver.resolve("manual", TrainingOverrides(epochs=7, learning_rate=0.01, incremental=True))

    assert resolved.epochs == 7
    assert resolved.learning_rate == 0.01
    assert resolved.is_incremental


@pytest.mark.parametrize(
    ("context", "overrides", "expected"),
    [
        ("manual", TrainingOverrides(model_exists=True), True),
        ("manual", TrainingOverrides(), False),
        ("auto", TrainingOverrides(fresh_training=True), False),
        ("auto", TrainingOverrides(), True),
    ],
)
def test_incremental_defaults_by_context(context: str, overrides: TrainingOverrides, expected: bool) -> None:
    assert TrainingConfigResolver.determine_incremental(TrainingContext(context), overrides) is expected


def test_resolved_config_maps_to_worker_options() -> None:
    cfg = TrainerConfig()
    options = TrainingConfigResolver(cfg).resolve("incremental").to_options()

    assert options.epochs == 10
    assert options.min_epochs == cfg.training.early_stopping.min_epochs
    assert options.min_delta == cfg.training.early_stopping.min_delta
    assert options.timeout == 60.0
    assert options.incremental


def test_overrides_reject_unknown_and_invalid_fields() -> None:
    with pytest.raises(ValidationError):
        TrainingOverrides(epochs=0)
    with pytest.raises(ValidationError):
        TrainingOverrides.model_validate({"epocs": 3})


@pytest.mark.parametrize(
    "kwargs",
    [
        {"epochs": 0},
        {"epochs": True},
        {"epochs": 5, "batch_size": 0},
        {"epochs": 5, "min_delta": 0.0},
        {"epochs": 5, "validation_split": 1.0},
        {"epochs": 5, "timeout": -1.0},
    ],
)
def test_training_options_validation(kwargs: dict) -> None:
    with pytest.raises(TrainingConfigError):
        TrainingOptions(**kwargs).validate()


def test_config_loads_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "trainer.toml"
    path.write_text(
        "[settings]\nbatch_size = 8\n\n[training.early_stopping]\nmin_epochs = 3\n\n[worker]\nmax_restart_attempts = 1\n"
    )

    cfg = TrainerConfig.load(path)

    assert cfg.settings.batch_size == 8
    assert cfg.training.early_stopping.min_epochs == 3
    assert cfg.worker.max_restart_attempts == 1
    assert cfg.model.hidden_units == (16, 8)
