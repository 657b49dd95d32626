from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from resumable_trainer.common.logging_config import configure_logging
from resumable_trainer.features.vocabulary import StaticVocabularyProvider, Vocabulary
from resumable_trainer.orchestration.config import TrainerConfig
from resumable_trainer.orchestration.config_resolver import TrainingOverrides
from resumable_trainer.orchestration.data_preparer import JsonFileTrainingDataSource
from resumable_trainer.orchestration.orchestrator import build_orchestrator
from resumable_trainer.orchestration.progress_ui import progress_ui
from resumable_trainer.storage.checkpoint_store import FileCheckpointStore, cleanup_training_models
from resumable_trainer.storage.records import CURRENT, TRAINING_BEST, TRAINING_LAST
from resumable_trainer.training.promotion import discard_transients
from resumable_trainer.training.resume import decide_resume
from resumable_trainer.training.state import history_epoch_count


app = typer.Typer(add_completion=False)

EXAMPLE_CONFIG = """\
# resumable-trainer configuration

[model]
embedding_dim = 16
max_url_length = 20
max_title_length = 20
feature_transform_units = 32
hidden_units = [16, 8]
dropout = 0.3
num_classes = 4

[training]
epochs = 10000
validation_split = 0.2
min_training_examples = 20

[training.early_stopping]
min_delta = 0.001
min_epochs = 10

[settings]
batch_size = 32
learning_rate = 0.001
early_stopping_patience = 20

[background]
enabled = true
max_training_time_s = 36000

[worker]
init_timeout_s = 5.0
message_timeout_s = 30.0
max_restart_attempts = 3
restart_backoff_s = 5.0
checkpoint_interval_s = 5.0

[storage]
base_dir = "~/resumable_trainer"
checkpoints_dir = "checkpoints"
logs_dir = "logs"
data_file = "training_data.json"
"""


def _load_config(config: str | None) -> TrainerConfig:
    if config is None:
        return TrainerConfig()
    path = Path(config).expanduser()
    if not path.exists():
        raise typer.BadParameter(f"Config file not found: {path}")
    return TrainerConfig.load(path)


@app.command()
def init_config(
    path: str = typer.Argument(
        "trainer_config.toml",
        help="Where to write the trainer configuration TOML",
    ),
) -> None:
    """Write an example trainer_config.toml."""
    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(EXAMPLE_CONFIG)
    typer.echo(f"Wrote {out} (edit it, then run: resumable-trainer train --config {out})")


@app.command()
def train(
    config: Optional[str] = typer.Option(None, help="Path to trainer_config.toml"),
    context: str = typer.Option("manual", help="manual | background | incremental | auto"),
    epochs: Optional[int] = typer.Option(None, help="Override the epoch cap"),
    data: Optional[str] = typer.Option(None, help="JSON file of labeled examples"),
    fresh: bool = typer.Option(False, help="Ignore the current model and start from scratch"),
) -> None:
    """Train (or resume, or finish) a classifier run with a progress UI."""
    cfg = _load_config(config)
    paths = cfg.storage.resolve()
    paths.ensure_dirs()
    log_path = configure_logging(logging.INFO, log_dir=paths.logs_dir)
    logging.getLogger(__name__).info("Logging to %s", log_path)

    source = JsonFileTrainingDataSource(Path(data).expanduser() if data else paths.data_path)
    store = FileCheckpointStore(paths.checkpoints_dir)

    async def _run() -> dict:
        examples = await source.load_all()
        vocabulary = Vocabulary.build(f"{ex.url} {ex.title}" for ex in examples)
        with progress_ui() as ui:
            orchestrator = build_orchestrator(
                cfg,
                source,
                StaticVocabularyProvider(vocabulary),
                store=store,
                ui=ui,
            )
            current = await store.get(CURRENT)
            overrides = TrainingOverrides(
                epochs=epochs,
                model_exists=current is not None and not fresh,
                fresh_training=fresh,
            )
            try:
                result = await orchestrator.start_training(context, overrides)
            finally:
                orchestrator.manager.terminate()
        return result.to_dict()

    result = asyncio.run(_run())
    typer.echo(json.dumps(result, indent=2, default=str))
    if not result.get("success"):
        raise typer.Exit(code=1)


@app.command()
def status(
    config: Optional[str] = typer.Option(None, help="Path to trainer_config.toml"),
) -> None:
    """Show the checkpoint slots and what the next run would do with them."""
    cfg = _load_config(config)
    store = FileCheckpointStore(cfg.storage.resolve().checkpoints_dir)

    async def _collect() -> dict:
        out: dict = {}
        for record_id in (CURRENT, TRAINING_LAST, TRAINING_BEST):
            record = await store.get(record_id)
            out[record_id] = (
                None
                if record is None
                else {
                    "epoch": history_epoch_count(record),
                    "accuracy": record.accuracy,
                    "epochs_without_improvement": record.metadata.epochs_without_improvement,
                    "saved_at": record.metadata.saved_at,
                    "promoted_at": record.metadata.promoted_at,
                }
            )
        decision = decide_resume(
            await store.get(TRAINING_LAST),
            target_epochs=cfg.training.epochs,
            min_epochs=cfg.training.early_stopping.min_epochs,
            patience=cfg.settings.early_stopping_patience,
        )
        out["next_run"] = {
            "action": decision.reason,
            "last_epoch": decision.last_epoch,
            "start_epoch": decision.start_epoch,
        }
        return out

    typer.echo(json.dumps(asyncio.run(_collect()), indent=2))


@app.command()
def reset_transients(
    config: Optional[str] = typer.Option(None, help="Path to trainer_config.toml"),
) -> None:
    """Delete interrupted-run checkpoints; the current model is left alone."""
    cfg = _load_config(config)
    store = FileCheckpointStore(cfg.storage.resolve().checkpoints_dir)

    async def _reset() -> int:
        await discard_transients(store)
        return await cleanup_training_models(store)

    removed = asyncio.run(_reset())
    typer.echo(f"Removed training checkpoints ({removed} stale records)")


if __name__ == "__main__":
    app()
