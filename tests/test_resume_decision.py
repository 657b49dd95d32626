from __future__ import annotations

from conftest import make_history, make_record
from resumable_trainer.storage.records import TRAINING_LAST
from resumable_trainer.training.resume import decide_resume
from resumable_trainer.training.state import TrainingState, history_epoch_count, reconcile_history


def test_no_checkpoint_is_fresh_start() -> None:
    decision = decide_resume(None, target_epochs=50, min_epochs=10, patience=5)

    assert not decision.has_checkpoint
    assert not decision.is_complete
    assert not decision.is_resume
    assert decision.start_epoch == 0
    assert decision.reason == "fresh"


def test_early_stopped_run_is_complete_and_decision_is_stable() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=12, ewi=6)

    first = decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5)
    second = decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5)

    assert first == second
    assert first.is_complete
    assert first.early_stopped
    assert first.last_epoch == 12
    assert checkpoint.metadata.epochs_without_improvement == 6
    assert len(checkpoint.metadata.training_history) == 12


def test_unfinished_run_resumes_after_last_epoch() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=12, ewi=2)

    decision = decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5)

    assert decision.is_resume
    assert decision.start_epoch == 13
    state = TrainingState.from_record(checkpoint)
    assert state.start_epoch == 13
    assert len(state.training_history) == 12
    assert state.epochs_without_improvement == 2


def test_reaching_target_is_complete() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=50, ewi=0)

    decision = decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5)

    assert decision.is_complete
    assert decision.reached_target
    assert decision.reason == "reached target"


def test_patience_before_min_epochs_does_not_stop() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=4, ewi=9)

    decision = decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5)

    assert not decision.is_complete
    assert decision.start_epoch == 5


def test_history_length_wins_over_stored_epoch() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=15, history_len=12)

    assert history_epoch_count(checkpoint) == 12
    assert decide_resume(checkpoint, target_epochs=50, min_epochs=10, patience=5).start_epoch == 13


def test_stored_epoch_is_used_when_history_is_empty() -> None:
    checkpoint = make_record(TRAINING_LAST, epoch=7, history_len=0)

    assert history_epoch_count(checkpoint) == 7


def test_reconcile_truncates_but_never_pads() -> None:
    history = make_history(6)

    shorter = reconcile_history(history, 4)
    longer = reconcile_history(history, 9)

    assert len(shorter) == 4
    assert shorter.loss == history.loss[:4]
    assert len(longer) == 6
    assert len(history) == 6
