from __future__ import annotations

from dataclasses import dataclass

from resumable_trainer.storage.records import CheckpointRecord
from resumable_trainer.training.state import history_epoch_count


@dataclass(frozen=True)
class ResumeDecision:
    has_checkpoint: bool
    is_complete: bool
    last_epoch: int
    start_epoch: int
    reached_target: bool = False
    early_stopped: bool = False

    @property
    def is_resume(self) -> bool:
        return self.has_checkpoint and not self.is_complete and self.last_epoch > 0

    @property
    def reason(self) -> str:
        if not self.has_checkpoint:
            return "fresh"
        if self.early_stopped:
            return "early stopped"
        if self.reached_target:
            return "reached target"
        return "resume"


def decide_resume(
    checkpoint: CheckpointRecord | None,
    *,
    target_epochs: int,
    min_epochs: int,
    patience: int,
) -> ResumeDecision:
    """Decide whether an interrupted run should continue or be finalised.

    Pure function of the `training_last` record and the run configuration:
    calling it again with the same inputs always yields the same decision.

    A run is complete when it reached `target_epochs`, or when it passed
    `min_epochs` and its epochs-without-improvement counter hit `patience`.
    """
    if checkpoint is None:
        return ResumeDecision(has_checkpoint=False, is_complete=False, last_epoch=0, start_epoch=0)

    last_epoch = history_epoch_count(checkpoint)
    reached_target = last_epoch >= target_epochs
    early_stopped = last_epoch >= min_epochs and checkpoint.metadata.epochs_without_improvement >= patience
    is_complete = reached_target or early_stopped
    return ResumeDecision(
        has_checkpoint=True,
        is_complete=is_complete,
        last_epoch=last_epoch,
        start_epoch=0 if is_complete or last_epoch == 0 else last_epoch + 1,
        reached_target=reached_target,
        early_stopped=early_stopped and not reached_target,
    )
