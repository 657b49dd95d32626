from __future__ import annotations

import asyncio

import pytest

from conftest import VOCABULARY, default_reply, make_example, make_history, make_record
from resumable_trainer.errors import (
    PromotionError,
    TrainingCancelledError,
    TrainingConfigError,
    WorkerCrashedError,
    WorkerJobError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from resumable_trainer.integration.events import ModelPromoted, VocabularyArchitectureChanged
from resumable_trainer.models.classifier import make_model_config
from resumable_trainer.orchestration.config import WorkerConfig
from resumable_trainer.storage.records import CURRENT, TRAINING_BEST, TRAINING_LAST
from resumable_trainer.training.types import TRAINING_IN_PROGRESS, TrainingOptions
from resumable_trainer.workers.jobs import JobStatus
from resumable_trainer.workers.manager import TrainingRequest, WorkerState
from resumable_trainer.workers.messages import MessageType


def _request(**options) -> TrainingRequest:
    opts = {"epochs": 5, "min_epochs": 1, "early_stopping_patience": 3}
    opts.update(options)
    return TrainingRequest(
        training_data=[make_example(i) for i in range(4)],
        validation_data=[make_example(10)],
        options=TrainingOptions(**opts),
    )


def _checkpoint(epoch: int, kind: str = "last", history_len: int | None = None) -> dict:
    n = epoch if history_len is None else history_len
    return {
        "checkpoint_type": kind,
        "weights": [{"shape": [VOCABULARY.size(), 2], "data": [0.2] * (VOCABULARY.size() * 2)}, {"shape": [2], "data": [0.0, 0.0]}],
        "epoch": epoch,
        "accuracy": 0.7,
        "best_accuracy": 0.7,
        "val_loss": 0.4,
        "epochs_without_improvement": 0,
        "training_history": make_history(n).to_dict(),
    }


async def _until(predicate, steps: int = 500) -> None:
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_concurrent_train_calls_start_one_job(make_manager) -> None:
    manager, channels = make_manager()

    first, second = await asyncio.gather(manager.train(_request()), manager.train(_request()))

    assert first.accepted
    assert not second.accepted
    conflict = await second.result()
    assert conflict.success is False
    assert conflict.reason == TRAINING_IN_PROGRESS
    assert conflict.job_id == first.job_id
    assert len(channels) == 1
    assert len(channels[0].sent(MessageType.TRAIN)) == 1
    manager.terminate()


@pytest.mark.asyncio
async def test_improved_run_promotes_best_and_clears_transients(make_manager, store, bus) -> None:
    manager, channels = make_manager()
    handle = await manager.train(_request())
    ch = channels[0]

    ch.emit(MessageType.CHECKPOINT, handle.job_id, _checkpoint(3))
    ch.emit(MessageType.CHECKPOINT, handle.job_id, _checkpoint(2, kind="best"))
    ch.emit(
        MessageType.TRAINING_COMPLETE,
        handle.job_id,
        {"actual_epochs": 3, "final_accuracy": 0.7, "model_improved": True, "best_epoch": 2, "used_earlier_checkpoint": True},
    )
    result = await handle.result()

    assert result.success and result.improved and result.completed
    assert result.best_epoch == 2
    current = await store.get(CURRENT)
    assert current is not None
    assert current.metadata.previous_id == TRAINING_BEST
    assert current.metadata.epoch == 2
    assert await store.get(TRAINING_LAST) is None
    assert await store.get(TRAINING_BEST) is None
    assert len(bus.of_type(ModelPromoted)) == 1
    assert manager.state is WorkerState.READY
    assert manager.jobs == {}


@pytest.mark.asyncio
async def test_no_improvement_leaves_current_untouched(make_manager, store) -> None:
    await store.put(make_record(CURRENT, epoch=5))
    before = store.raw(CURRENT)
    manager, channels = make_manager()

    handle = await manager.train(_request(incremental=True))
    train_msg = channels[0].sent(MessageType.TRAIN)[0]
    assert train_msg.data["existing_weights"] is not None

    channels[0].emit(MessageType.CHECKPOINT, handle.job_id, _checkpoint(6))
    channels[0].emit(
        MessageType.TRAINING_COMPLETE,
        handle.job_id,
        {"actual_epochs": 1, "model_improved": False, "session_start_val_loss": 0.25},
    )
    result = await handle.result()

    assert result.success is True
    assert result.improved is False
    assert store.raw(CURRENT) == before
    assert await store.get(TRAINING_LAST) is None
    assert await store.get(TRAINING_BEST) is None


@pytest.mark.asyncio
async def test_zero_epoch_completion_is_rejected(make_manager, store) -> None:
    manager, channels = make_manager()
    errors: list[BaseException] = []
    request = _request()
    request.on_error = errors.append

    handle = await manager.train(request)
    channels[0].emit(MessageType.TRAINING_COMPLETE, handle.job_id, {"actual_epochs": 0, "model_improved": True})

    with pytest.raises(PromotionError):
        await handle.result()
    assert await store.get(CURRENT) is None
    assert len(errors) == 1 and isinstance(errors[0], PromotionError)


@pytest.mark.asyncio
async def test_checkpoint_history_is_truncated_to_epoch(make_manager, store) -> None:
    manager, channels = make_manager()
    handle = await manager.train(_request())

    channels[0].emit(MessageType.CHECKPOINT, handle.job_id, _checkpoint(2, history_len=4))
    channels[0].emit(MessageType.ERROR, handle.job_id, error="boom")

    with pytest.raises(WorkerJobError):
        await handle.result()
    saved = await store.get(TRAINING_LAST)
    assert saved is not None
    assert saved.metadata.epoch == 2
    assert len(saved.metadata.training_history) == 2


@pytest.mark.asyncio
async def test_checkpoint_history_shorter_than_epoch_is_not_padded(make_manager, store) -> None:
    manager, channels = make_manager()
    handle = await manager.train(_request())

    channels[0].emit(MessageType.CHECKPOINT, handle.job_id, _checkpoint(5, history_len=3))
    channels[0].emit(MessageType.ERROR, handle.job_id, error="boom")

    with pytest.raises(WorkerJobError):
        await handle.result()
    saved = await store.get(TRAINING_LAST)
    assert len(saved.metadata.training_history) == 3


@pytest.mark.asyncio
async def test_completed_interrupted_run_is_promoted_without_training(make_manager, store) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=12, ewi=6))
    await store.put(make_record(TRAINING_BEST, epoch=7, accuracy=0.9))
    manager, channels = make_manager()

    handle = await manager.train(_request(epochs=50, min_epochs=10, early_stopping_patience=5))
    result = await handle.result()

    assert result.success and result.completed
    assert result.actual_epochs == 12
    assert channels == []
    current = await store.get(CURRENT)
    assert current.metadata.previous_id == TRAINING_BEST
    assert await store.get(TRAINING_LAST) is None
    assert await store.get(TRAINING_BEST) is None


@pytest.mark.asyncio
async def test_interrupted_run_resumes_at_next_epoch(make_manager, store) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=12, ewi=2))
    manager, channels = make_manager()

    await manager.train(_request(epochs=50, min_epochs=10, early_stopping_patience=5))

    payload = channels[0].sent(MessageType.TRAIN)[0].data
    assert payload["resume_state"]["start_epoch"] == 13
    assert payload["resume_state"]["epochs_without_improvement"] == 2
    assert len(payload["resume_state"]["training_history"]["loss"]) == 12
    assert payload["existing_weights"] is not None
    manager.terminate()


@pytest.mark.asyncio
async def test_vocabulary_change_discards_transients(make_manager, store, bus) -> None:
    await store.put(make_record(TRAINING_LAST, epoch=4, vocab_size=VOCABULARY.size() + 5))
    manager, channels = make_manager()

    await manager.train(_request(epochs=50))

    payload = channels[0].sent(MessageType.TRAIN)[0].data
    assert payload["resume_state"] is None
    assert payload["existing_weights"] is None
    assert await store.get(TRAINING_LAST) is None
    events = bus.of_type(VocabularyArchitectureChanged)
    assert events[0].current_vocab_size == VOCABULARY.size()
    manager.terminate()


@pytest.mark.asyncio
async def test_cancel_is_two_phase(make_manager) -> None:
    def init_only(ch, msg) -> None:
        if msg.type is MessageType.INIT:
            ch.emit(MessageType.INITIALIZED, msg.job_id)

    manager, channels = make_manager(on_post=init_only)
    errors: list[BaseException] = []
    request = _request()
    request.on_error = errors.append
    handle = await manager.train(request)

    assert manager.cancel_job(handle.job_id)
    job = manager.jobs[handle.job_id]
    assert job.status is JobStatus.CANCELLING
    assert channels[0].sent(MessageType.CANCEL)[0].job_id == handle.job_id

    second = await manager.train(_request())
    assert not second.accepted

    channels[0].emit(MessageType.CANCELLED, handle.job_id)
    result = await handle.result()

    assert result.cancelled is True
    assert handle.job_id not in manager.jobs
    assert isinstance(errors[0], TrainingCancelledError)
    third = await manager.train(_request())
    assert third.accepted
    manager.terminate()


@pytest.mark.asyncio
async def test_cancelling_unknown_job_is_a_no_op(make_manager) -> None:
    manager, _ = make_manager()
    assert manager.cancel_job("missing") is False


@pytest.mark.asyncio
async def test_timeout_requests_cancel_and_fails_with_timeout(make_manager) -> None:
    manager, channels = make_manager()

    handle = await manager.train(_request(timeout=0.05))

    with pytest.raises(WorkerTimeoutError):
        await handle.result()
    assert len(channels[0].sent(MessageType.CANCEL)) == 1
    assert manager.jobs == {}


@pytest.mark.asyncio
async def test_crash_restarts_are_bounded(make_manager) -> None:
    def crash_on_init(ch, msg) -> None:
        if msg.type is MessageType.INIT:
            ch.crash(RuntimeError("worker died"))

    manager, channels = make_manager(
        on_post=crash_on_init,
        worker=WorkerConfig(max_restart_attempts=2, restart_backoff_s=0.0),
    )

    with pytest.raises(WorkerCrashedError):
        await manager.initialize()
    await _until(lambda: manager.state is WorkerState.FAILED)

    assert len(channels) == 3
    assert manager.restart_attempts == 3
    with pytest.raises(WorkerUnavailableError):
        await manager.train(_request())
    with pytest.raises(WorkerUnavailableError):
        await manager.initialize()


@pytest.mark.asyncio
async def test_successful_restart_resets_attempts(make_manager) -> None:
    crashes = {"left": 1}

    def crash_once(ch, msg) -> None:
        if msg.type is MessageType.INIT:
            if crashes["left"]:
                crashes["left"] -= 1
                ch.crash(RuntimeError("flaky"))
            else:
                ch.emit(MessageType.INITIALIZED, msg.job_id)

    manager, channels = make_manager(on_post=crash_once)

    with pytest.raises(WorkerCrashedError):
        await manager.initialize()
    await _until(lambda: manager.state is WorkerState.READY)

    assert len(channels) == 2
    assert manager.restart_attempts == 0


@pytest.mark.asyncio
async def test_crash_fails_running_job(make_manager) -> None:
    manager, channels = make_manager()
    handle = await manager.train(_request())

    channels[0].crash(RuntimeError("segfault"))

    with pytest.raises(WorkerCrashedError):
        await handle.result()
    assert manager.jobs == {}


@pytest.mark.asyncio
async def test_invalid_confidence_fails_before_any_work(make_manager) -> None:
    manager, channels = make_manager()
    request = _request()
    request.training_data = [make_example(0, confidence=1.5)]

    with pytest.raises(TrainingConfigError):
        await manager.train(request)
    assert channels == []
    assert manager.jobs == {}


@pytest.mark.asyncio
async def test_status_before_initialize(make_manager) -> None:
    manager, _ = make_manager()
    status = await manager.get_status()
    assert status["initialized"] is False
    assert status["state"] == "uninitialized"


@pytest.mark.asyncio
async def test_force_cleanup_resolves_jobs(make_manager) -> None:
    manager, _ = make_manager()
    handle = await manager.train(_request())

    assert manager.force_cleanup_training_jobs() == 1

    result = await handle.result()
    assert result.cancelled is True
    assert result.reason == "force_cleanup"
    assert manager.jobs == {}
    assert manager.state is WorkerState.READY


@pytest.mark.asyncio
async def test_cancel_all_only_touches_running_jobs(make_manager) -> None:
    manager, channels = make_manager()
    handle = await manager.train(_request())

    assert manager.cancel_all_training_jobs() == 1
    assert manager.cancel_all_training_jobs() == 0
    assert len(channels[0].sent(MessageType.CANCEL)) == 1

    result = await handle.result()
    assert result.cancelled is True


@pytest.mark.asyncio
async def test_predict_round_trips_through_the_worker(make_manager) -> None:
    def predictor(ch, msg) -> None:
        if msg.type is MessageType.PREDICT:
            n = len(msg.data["inputs"])
            ch.emit(MessageType.PREDICTION_COMPLETE, msg.job_id, {"predictions": [[0.25] * 4] * n})
        else:
            default_reply(ch, msg)

    manager, channels = make_manager(on_post=predictor)
    model_config = make_model_config(manager.config.model, vocab_size=VOCABULARY.size(), learning_rate=0.001)

    predictions = await manager.predict([], [{"url_tokens": [1], "title_tokens": [2]}] * 2, model_config)

    assert predictions == [[0.25] * 4, [0.25] * 4]
    sent = channels[0].sent(MessageType.PREDICT)[0]
    assert sent.data["model_config"]["vocab_size"] == VOCABULARY.size()


@pytest.mark.asyncio
async def test_cancel_before_dispatch_never_sends_train(make_manager) -> None:
    held: list = []

    def hold_init(ch, msg) -> None:
        if msg.type is MessageType.INIT:
            held.append(msg)
        else:
            default_reply(ch, msg)

    manager, channels = make_manager(on_post=hold_init)
    errors: list[BaseException] = []
    request = _request()
    request.on_error = errors.append
    task = asyncio.ensure_future(manager.train(request))
    await _until(lambda: held)

    (job_id,) = manager.jobs
    assert manager.cancel_job(job_id)
    channels[0].emit(MessageType.INITIALIZED, held[0].job_id)

    handle = await task
    result = await handle.result()

    assert result.cancelled is True
    assert channels[0].sent(MessageType.TRAIN) == []
    assert channels[0].sent(MessageType.CANCEL) == []
    assert manager.jobs == {}
    assert manager.state is WorkerState.READY
    assert isinstance(errors[0], TrainingCancelledError)


@pytest.mark.asyncio
async def test_late_reply_after_timeout_still_fails_with_timeout(make_manager) -> None:
    def slow_predictor(ch, msg) -> None:
        if msg.type is MessageType.CANCEL:
            ch.emit(MessageType.PREDICTION_COMPLETE, msg.job_id, {"predictions": [[1.0, 0.0, 0.0, 0.0]]})
            ch.emit(MessageType.CANCELLED, msg.job_id)
        elif msg.type is not MessageType.PREDICT:
            default_reply(ch, msg)

    manager, _ = make_manager(
        on_post=slow_predictor,
        worker=WorkerConfig(checkpoint_interval_s=0.0, message_timeout_s=0.05),
    )
    model_config = make_model_config(manager.config.model, vocab_size=VOCABULARY.size(), learning_rate=0.001)

    with pytest.raises(WorkerTimeoutError):
        await manager.predict([], [{"url_tokens": [1], "title_tokens": [2]}], model_config)

    await asyncio.sleep(0)
    assert manager._timed_out == set()
