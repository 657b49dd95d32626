from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Sequence

from resumable_trainer.common.time_utils import age_minutes, now_ms, utcnow
from resumable_trainer.errors import (
    PromotionError,
    TrainerError,
    TrainingCancelledError,
    VocabularyMismatchError,
    WorkerCrashedError,
    WorkerJobError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from resumable_trainer.features.extraction import TrainingExample, extract_features, validate_confidences
from resumable_trainer.features.vocabulary import Vocabulary, VocabularyProvider
from resumable_trainer.integration.event_bus import EventBus
from resumable_trainer.integration.events import (
    CheckpointSaved,
    MetricRecorded,
    ModelPromoted,
    TrainingProgressed,
    VocabularyArchitectureChanged,
    WorkerMemoryWarning,
)
from resumable_trainer.models.classifier import make_model_config, weights_vocab_size
from resumable_trainer.models.model_cache import ModelCache
from resumable_trainer.orchestration.config import TrainerConfig
from resumable_trainer.storage.checkpoint_store import (
    CheckpointStore,
    get_training_checkpoint,
    load_current,
    save_training_checkpoint,
)
from resumable_trainer.storage.records import (
    CheckpointKind,
    CheckpointMetadata,
    CheckpointRecord,
    TrainingHistory,
    weights_from_list,
    weights_to_list,
)
from resumable_trainer.training.promotion import discard_transients, promote_best_available
from resumable_trainer.training.resume import ResumeDecision, decide_resume
from resumable_trainer.training.state import TrainingState, reconcile_history
from resumable_trainer.training.types import TRAINING_IN_PROGRESS, ModelConfig, TrainingOptions, TrainingResult
from resumable_trainer.workers.channel import WorkerChannel
from resumable_trainer.workers.jobs import (
    CompleteCallback,
    ErrorCallback,
    JobStatus,
    ProgressCallback,
    TrainingJob,
    new_job_id,
)
from resumable_trainer.workers.messages import MessageType, WorkerMessage


logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    FAILED = "failed"


@dataclass
class TrainingRequest:
    training_data: Sequence[TrainingExample]
    options: TrainingOptions
    validation_data: Sequence[TrainingExample] = ()
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None


@dataclass
class TrainingHandle:
    """What `train` hands back: the job id plus a future for its result."""

    job_id: str
    future: asyncio.Future[TrainingResult]
    accepted: bool = True

    async def result(self) -> TrainingResult:
        return await self.future


@dataclass
class _RunContext:
    model_config: ModelConfig
    vocabulary: Vocabulary
    started_at: int
    is_resume: bool
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


async def _invoke(callback: Callable[[Any], Any] | None, arg: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Job callback failed: %s", callback)


class WorkerManager:
    """Owns the single background execution unit and every job running on it.

    Outbound requests get a future keyed by job id; `handle_message`
    resolves those futures as replies arrive. Training jobs additionally go
    through the resume decision before any work is sent, and through
    checkpoint promotion once the worker reports completion.
    """

    def __init__(
        self,
        channel_factory: Callable[[], WorkerChannel],
        store: CheckpointStore,
        vocabulary_provider: VocabularyProvider,
        config: TrainerConfig | None = None,
        bus: EventBus | None = None,
        model_cache: ModelCache | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.channel_factory = channel_factory
        self.store = store
        self.vocabulary_provider = vocabulary_provider
        self.config = config or TrainerConfig()
        self.bus = bus
        self.model_cache = model_cache
        self._sleep = sleep

        self.state = WorkerState.UNINITIALIZED
        self.restart_attempts = 0
        self._channel: WorkerChannel | None = None
        self._jobs: dict[str, TrainingJob] = {}
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._runs: dict[str, _RunContext] = {}
        self._timed_out: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._init_lock: asyncio.Lock | None = None
        self._restart_task: asyncio.Task[None] | None = None

    # --- lifecycle ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.state in (WorkerState.READY, WorkerState.BUSY)

    @property
    def jobs(self) -> Mapping[str, TrainingJob]:
        return dict(self._jobs)

    async def initialize(self) -> None:
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self.state is WorkerState.FAILED:
                raise WorkerUnavailableError(
                    f"Worker failed to start after {self.config.worker.max_restart_attempts} attempts"
                )
            if self.is_ready:
                return
            self.state = WorkerState.INITIALIZING
            channel = self.channel_factory()
            self._channel = channel
            channel.start(self.handle_message, self.handle_worker_crash)

            init_id = new_job_id("init")
            fut = self.send_message(
                MessageType.INIT,
                {"device": self.config.worker.device, "seed": self.config.worker.seed},
                job_id=init_id,
            )
            try:
                await asyncio.wait_for(fut, timeout=self.config.worker.init_timeout_s)
            except asyncio.TimeoutError:
                self._pending.pop(init_id, None)
                self._drop_channel()
                self.state = WorkerState.UNINITIALIZED
                raise WorkerTimeoutError("Worker initialization timeout") from None
            except TrainerError:
                if self.state is WorkerState.INITIALIZING:
                    self.state = WorkerState.UNINITIALIZED
                raise

            self.state = WorkerState.READY
            self.restart_attempts = 0
            logger.info("Worker manager initialized")

    def _drop_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.terminate()

    def terminate(self) -> None:
        """Cancel every job and shut the worker down."""
        for job_id in list(self._jobs):
            self.cancel_job(job_id)
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None
        self._drop_channel()

        err = TrainingCancelledError("Worker terminated")
        for job in self._jobs.values():
            job.transition(JobStatus.ERROR)
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(err)
        self._jobs.clear()
        self._pending.clear()
        self._runs.clear()
        self.state = WorkerState.UNINITIALIZED
        logger.info("Worker terminated")

    # --- messaging ---------------------------------------------------------

    def send_message(
        self,
        type_: MessageType,
        data: Mapping[str, Any] | None = None,
        job_id: str | None = None,
        *,
        timeout: float | None = None,
        future: asyncio.Future[Any] | None = None,
    ) -> asyncio.Future[Any]:
        """Post a request and return the future its reply will resolve.

        When `timeout` (seconds) elapses first the worker is asked to CANCEL
        the job; the future stays pending until the CANCELLED reply arrives.
        """
        if self._channel is None:
            raise WorkerUnavailableError("Worker is not running")
        loop = asyncio.get_running_loop()
        job_id = job_id or new_job_id()
        fut = future if future is not None else loop.create_future()
        self._pending[job_id] = fut
        self._channel.post(WorkerMessage(type=type_, job_id=job_id, data=dict(data or {})))
        if timeout:
            handle = loop.call_later(timeout, self._on_timeout, job_id, timeout)
            fut.add_done_callback(lambda _f: handle.cancel())
        return fut

    async def request(self, type_: MessageType, data: Mapping[str, Any] | None = None) -> Any:
        return await self.send_message(type_, data, timeout=self.config.worker.message_timeout_s)

    def _on_timeout(self, job_id: str, timeout: float) -> None:
        fut = self._pending.get(job_id)
        if fut is None or fut.done():
            return
        logger.warning("Job %s exceeded %.1fs; requesting cooperative cancel", job_id, timeout)
        self._timed_out.add(job_id)
        job = self._jobs.get(job_id)
        if job is not None:
            job.timed_out = True
            job.transition(JobStatus.CANCELLING)
        self._post_cancel(job_id)

    def _post_cancel(self, job_id: str) -> None:
        if self._channel is None:
            return
        self._channel.post(WorkerMessage(type=MessageType.CANCEL, job_id=job_id))

    def _resolve(self, job_id: str | None, value: Any) -> None:
        self._timed_out.discard(job_id or "")
        fut = self._pending.pop(job_id, None) if job_id is not None else None
        if fut is not None and not fut.done():
            fut.set_result(value)

    def _reject(self, job_id: str | None, exc: BaseException) -> None:
        self._timed_out.discard(job_id or "")
        fut = self._pending.pop(job_id, None) if job_id is not None else None
        if fut is not None and not fut.done():
            fut.set_exception(exc)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def handle_message(self, message: WorkerMessage) -> None:
        type_, job_id, data = message.type, message.job_id, message.data

        if type_ is MessageType.INITIALIZED:
            logger.info("Worker initialized: %s", dict(data))
            self._resolve(job_id, dict(data))
        elif type_ is MessageType.PROGRESS:
            self._handle_progress(job_id, data)
        elif type_ is MessageType.BATCH_PROGRESS:
            logger.debug("Job %s batch progress: %s", job_id, dict(data))
        elif type_ is MessageType.CHECKPOINT:
            self._handle_checkpoint(job_id, data)
        elif type_ is MessageType.TRAINING_COMPLETE:
            self._spawn(self._handle_training_complete(job_id, data))
        elif type_ in (MessageType.PREDICTION_COMPLETE, MessageType.STATUS):
            if job_id in self._timed_out:
                # Reply raced the CANCEL sent on timeout; the caller already gave up.
                self._reject(job_id, WorkerTimeoutError(f"Job {job_id} timed out"))
            else:
                self._resolve(job_id, dict(data))
        elif type_ is MessageType.ERROR:
            self._spawn(self._handle_error(job_id, message.error))
        elif type_ is MessageType.CANCELLED:
            self._spawn(self._handle_cancelled(job_id))
        elif type_ is MessageType.MEMORY_WARNING:
            self._handle_memory_warning(data)
        else:
            logger.warning("Unknown worker message: %s", type_)

    # --- inbound handlers --------------------------------------------------

    def _handle_progress(self, job_id: str | None, data: Mapping[str, Any]) -> None:
        job = self._jobs.get(job_id or "")
        if job is None:
            return
        epoch = int(data.get("epoch") or 0)
        total = int(data.get("total_epochs") or 0)
        job.progress = epoch / total if total else 0.0
        if self.bus is not None:
            self.bus.publish(
                TrainingProgressed(
                    occurred_at=utcnow(),
                    job_id=job.id,
                    epoch=epoch,
                    total_epochs=total,
                    loss=data.get("loss"),
                    accuracy=data.get("accuracy"),
                    val_loss=data.get("val_loss"),
                    val_accuracy=data.get("val_accuracy"),
                    progress=job.progress,
                )
            )
        if job.on_progress is not None:
            payload = dict(data, progress=job.progress, elapsed_s=job.elapsed_s())
            self._spawn(_invoke(job.on_progress, payload))

    def _handle_checkpoint(self, job_id: str | None, data: Mapping[str, Any]) -> None:
        job = self._jobs.get(job_id or "")
        run = self._runs.get(job_id or "")
        if job is None or run is None:
            return
        task = self._spawn(self._persist_checkpoint(job, run, data))
        job.pending_writes.add(task)
        task.add_done_callback(job.pending_writes.discard)

    async def _persist_checkpoint(self, job: TrainingJob, run: _RunContext, data: Mapping[str, Any]) -> None:
        kind = CheckpointKind(data.get("checkpoint_type", CheckpointKind.LAST.value))
        epoch = int(data.get("epoch") or 0)
        history = reconcile_history(TrainingHistory.from_dict(data.get("training_history")), epoch)
        trained_up_to = job.training_data_timestamp or now_ms()
        record = CheckpointRecord(
            id=kind.record_id,
            version=str(now_ms()),
            weights=weights_from_list(data.get("weights")),
            vocabulary=run.vocabulary.to_dict(),
            accuracy=float(data.get("accuracy") or 0.0),
            metadata=CheckpointMetadata(
                epoch=epoch,
                best_accuracy=float(data.get("best_accuracy") or 0.0),
                epochs_without_improvement=int(data.get("epochs_without_improvement") or 0),
                training_history=history,
                val_loss=data.get("val_loss"),
                job_id=job.id,
                vocab_size=run.model_config.vocab_size,
                started_at=run.started_at,
                trained_up_to=trained_up_to,
            ),
        )
        # Writes for one job land in the order the worker emitted them.
        async with run.write_lock:
            try:
                await save_training_checkpoint(self.store, record, kind)
            except Exception:
                logger.exception("Failed to save %s checkpoint at epoch %d", kind.value, epoch)
                return
        logger.info("Saved %s checkpoint at epoch %d", kind.value, epoch)
        if self.bus is not None:
            self.bus.publish(CheckpointSaved(occurred_at=utcnow(), job_id=job.id, checkpoint_type=kind.value, epoch=epoch))

    async def _flush_writes(self, job: TrainingJob) -> None:
        """Wait until every checkpoint write issued for `job` has finished."""
        while job.pending_writes:
            await asyncio.gather(*list(job.pending_writes), return_exceptions=True)

    async def _handle_training_complete(self, job_id: str | None, data: Mapping[str, Any]) -> None:
        job = self._jobs.get(job_id or "")
        run = self._runs.get(job_id or "")
        if job is None:
            return
        try:
            result = await self._complete_training(job, run, data)
        except Exception as exc:
            logger.exception("Error handling training completion for %s", job.id)
            job.transition(JobStatus.ERROR)
            await _invoke(job.on_error, exc)
            self._reject(job.id, exc)
        else:
            job.transition(JobStatus.COMPLETED)
            await _invoke(job.on_complete, result)
            self._resolve(job.id, result)
        finally:
            self._finish_job(job.id)

        stopping = " (early stopped)" if data.get("early_stopping_triggered") else ""
        logger.info(
            "Training finished after %s epochs in %.1fs%s",
            data.get("actual_epochs"),
            float(data.get("duration_s") or 0.0),
            stopping,
        )

    async def _complete_training(
        self,
        job: TrainingJob,
        run: _RunContext | None,
        data: Mapping[str, Any],
    ) -> TrainingResult:
        actual_epochs = int(data.get("actual_epochs") or 0)
        if actual_epochs == 0:
            raise PromotionError("Training completed with 0 epochs; not promoting model")

        current = await load_current(self.store)
        previous_accuracy = current.accuracy if current is not None else 0.0

        if data.get("model_improved") is False:
            logger.info(
                "Model did not improve from baseline (val_loss %s); keeping current model",
                data.get("session_start_val_loss"),
            )
            await self._flush_writes(job)
            await discard_transients(self.store)
            return TrainingResult(
                success=True,
                improved=False,
                completed=True,
                job_id=job.id,
                accuracy=previous_accuracy,
                actual_epochs=actual_epochs,
                message="Training completed but model did not improve",
            )

        await self._flush_writes(job)
        promoted = await promote_best_available(self.store)
        if not promoted.weights:
            raise PromotionError("Promoted model has no weights")
        self._refresh_model(promoted)

        best_epoch = data.get("best_epoch")
        accuracy = data.get("final_accuracy")
        if accuracy is None:
            accuracy = promoted.accuracy
        if float(accuracy) < previous_accuracy:
            logger.info("Model promoted with lower accuracy (%.3f < %.3f)", float(accuracy), previous_accuracy)

        if self.bus is not None:
            self.bus.publish(ModelPromoted(occurred_at=utcnow(), source_id=promoted.metadata.previous_id or "", accuracy=float(accuracy), epoch=best_epoch))
            history = data.get("history") or {}
            self.bus.publish(
                MetricRecorded(
                    occurred_at=utcnow(),
                    method="model",
                    type="training_complete",
                    value=data.get("final_accuracy"),
                    metadata={
                        "duration_s": data.get("duration_s"),
                        "final_loss": data.get("final_loss"),
                        "epochs": len(history.get("loss") or []) or actual_epochs,
                    },
                )
            )

        return TrainingResult(
            success=True,
            improved=True,
            completed=True,
            job_id=job.id,
            accuracy=float(accuracy),
            loss=data.get("final_loss"),
            actual_epochs=actual_epochs,
            best_epoch=best_epoch,
            used_earlier_checkpoint=bool(data.get("used_earlier_checkpoint")),
            duration_s=data.get("duration_s"),
            history=data.get("history"),
        )

    def _refresh_model(self, promoted: CheckpointRecord) -> None:
        if self.model_cache is None:
            return
        self.model_cache.invalidate()
        self.model_cache.load_from_record(promoted)

    async def _handle_error(self, job_id: str | None, error: str | None) -> None:
        exc = WorkerJobError(error or "Unknown worker error")
        logger.error("Worker reported error for %s: %s", job_id, exc)
        job = self._jobs.get(job_id or "")
        if job is not None:
            job.transition(JobStatus.ERROR)
            await self._flush_writes(job)
            await _invoke(job.on_error, exc)
            self._finish_job(job.id)
        self._reject(job_id, exc)

    async def _handle_cancelled(self, job_id: str | None) -> None:
        logger.info("Training cancelled for job %s", job_id)
        timed_out = job_id in self._timed_out
        self._timed_out.discard(job_id or "")
        job = self._jobs.get(job_id or "")
        if timed_out:
            exc: TrainerError = WorkerTimeoutError(f"Job {job_id} timed out and was cancelled")
        else:
            exc = TrainingCancelledError("Training cancelled")

        if job is not None:
            job.transition(JobStatus.ERROR)
            await self._flush_writes(job)
            await _invoke(job.on_error, exc)
            self._finish_job(job.id)

        if timed_out:
            self._reject(job_id, exc)
        else:
            self._resolve(
                job_id,
                TrainingResult(success=False, cancelled=True, job_id=job_id, message="Training cancelled by user"),
            )

    def _handle_memory_warning(self, data: Mapping[str, Any]) -> None:
        logger.warning("Worker memory warning: %s", dict(data))
        if self.bus is None:
            return
        num_bytes = int(data.get("num_bytes") or 0)
        details = dict(data.get("details") or {})
        self.bus.publish(WorkerMemoryWarning(occurred_at=utcnow(), num_bytes=num_bytes, details=details))
        self.bus.publish(
            MetricRecorded(occurred_at=utcnow(), method="system", type="memory_warning", value=float(num_bytes), metadata=details)
        )

    def _finish_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._runs.pop(job_id, None)
        if self.state is WorkerState.BUSY and not self._active_training_jobs():
            self.state = WorkerState.READY

    # --- crash recovery ----------------------------------------------------

    def handle_worker_crash(self, exc: BaseException) -> None:
        logger.error("Worker crashed: %s", exc)
        err = WorkerCrashedError(f"Worker crashed: {exc}")
        jobs = list(self._jobs.values())
        pending = list(self._pending.values())
        self._jobs.clear()
        self._pending.clear()
        self._runs.clear()
        self._timed_out.clear()

        for job in jobs:
            job.transition(JobStatus.ERROR)
            self._spawn(_invoke(job.on_error, err))
            if not job.future.done():
                job.future.set_exception(err)
        for fut in pending:
            if not fut.done():
                fut.set_exception(err)

        self._drop_channel()
        self.state = WorkerState.CRASHED
        self.restart_attempts += 1
        max_attempts = self.config.worker.max_restart_attempts
        if self.restart_attempts <= max_attempts:
            self.state = WorkerState.RESTARTING
            self._restart_task = asyncio.ensure_future(self._restart_after_backoff(self.restart_attempts))
        else:
            self.state = WorkerState.FAILED
            logger.error("Worker failed to start after %d attempts. Giving up.", max_attempts)

    async def _restart_after_backoff(self, attempt: int) -> None:
        await self._sleep(self.config.worker.restart_backoff_s)
        logger.info(
            "Attempting to restart worker (attempt %d/%d)",
            attempt,
            self.config.worker.max_restart_attempts,
        )
        try:
            await self.initialize()
        except TrainerError as exc:
            logger.error("Worker restart attempt %d failed: %s", attempt, exc)

    # --- training ----------------------------------------------------------

    def _active_training_jobs(self) -> list[TrainingJob]:
        return [j for j in self._jobs.values() if j.kind == "training" and j.is_active]

    async def train(self, request: TrainingRequest) -> TrainingHandle:
        """Start (or finish, or resume) a training run.

        Configuration problems raise `TrainingConfigError` before anything is
        awaited. A second call while a run is active gets back a handle whose
        result is `training_in_progress`.
        """
        options = request.options.validate()
        for ex in request.training_data:
            validate_confidences(ex, where="training data")
        for ex in request.validation_data:
            validate_confidences(ex, where="validation data")
        if self.state is WorkerState.FAILED:
            raise WorkerUnavailableError("Worker restart attempts exhausted; restart the process to train again")

        loop = asyncio.get_running_loop()
        active = self._active_training_jobs()
        if active:
            existing = active[0]
            logger.warning("Training conflict: job %s is %s; skipping new request", existing.id, existing.status.value)
            fut: asyncio.Future[TrainingResult] = loop.create_future()
            fut.set_result(
                TrainingResult(
                    success=False,
                    reason=TRAINING_IN_PROGRESS,
                    job_id=existing.id,
                    message="Training is already running in background",
                )
            )
            return TrainingHandle(job_id=existing.id, future=fut, accepted=False)

        # Registered before the first await so a concurrent call sees it.
        job = TrainingJob(
            id=new_job_id(),
            future=loop.create_future(),
            on_progress=request.on_progress,
            on_complete=request.on_complete,
            on_error=request.on_error,
        )
        self._jobs[job.id] = job
        logger.info(
            "Training request: epochs=%d incremental=%s examples=%d",
            options.epochs,
            options.incremental,
            len(request.training_data),
        )

        try:
            checkpoint = await get_training_checkpoint(self.store, CheckpointKind.LAST)
            decision = decide_resume(
                checkpoint,
                target_epochs=options.epochs,
                min_epochs=options.min_epochs,
                patience=options.early_stopping_patience,
            )
            if checkpoint is not None and decision.is_complete:
                result = await self.finish_interrupted_run(checkpoint, decision, job_id=job.id)
                job.transition(JobStatus.COMPLETED)
                self._finish_job(job.id)
                await _invoke(job.on_complete, result)
                job.future.set_result(result)
                return TrainingHandle(job_id=job.id, future=job.future)

            await self._start_training_job(job, request, checkpoint, decision)
        except BaseException as exc:
            job.transition(JobStatus.ERROR)
            self._finish_job(job.id)
            self._pending.pop(job.id, None)
            if not job.future.done():
                job.future.cancel()
            if isinstance(exc, Exception):
                await _invoke(job.on_error, exc)
            raise
        return TrainingHandle(job_id=job.id, future=job.future)

    async def finish_interrupted_run(
        self,
        checkpoint: CheckpointRecord,
        decision: ResumeDecision,
        *,
        job_id: str | None = None,
    ) -> TrainingResult:
        """Promote the leftovers of a run that converged but was never promoted."""
        logger.info(
            "Found interrupted training from %d minutes ago at epoch %d; it is complete (%s), promoting",
            age_minutes(checkpoint.metadata.started_at),
            decision.last_epoch,
            decision.reason,
        )
        promoted = await promote_best_available(self.store)
        self._refresh_model(promoted)
        if self.bus is not None:
            self.bus.publish(
                ModelPromoted(
                    occurred_at=utcnow(),
                    source_id=promoted.metadata.previous_id or "",
                    accuracy=promoted.accuracy,
                    epoch=promoted.metadata.epoch,
                )
            )
        return TrainingResult(
            success=True,
            completed=True,
            improved=True,
            job_id=job_id,
            accuracy=checkpoint.accuracy,
            actual_epochs=decision.last_epoch,
            message=f"Completed training from epoch {decision.last_epoch} ({decision.reason})",
        )

    def _vocabulary_compatible(self, record: CheckpointRecord, vocabulary: Vocabulary) -> bool:
        try:
            check_vocabulary(record, vocabulary)
        except VocabularyMismatchError as exc:
            logger.warning("%s; %s cannot be resumed, starting with fresh weights", exc, record.id)
            if self.bus is not None:
                self.bus.publish(
                    VocabularyArchitectureChanged(
                        occurred_at=utcnow(),
                        checkpoint_vocab_size=exc.checkpoint_vocab_size,
                        current_vocab_size=exc.current_vocab_size,
                    )
                )
            return False
        return True

    async def _start_training_job(
        self,
        job: TrainingJob,
        request: TrainingRequest,
        checkpoint: CheckpointRecord | None,
        decision: ResumeDecision,
    ) -> None:
        options = request.options
        if not self.is_ready:
            await self.initialize()

        vocabulary = await self.vocabulary_provider.get_vocabulary()
        model_config = make_model_config(
            self.config.model,
            vocab_size=vocabulary.size(),
            learning_rate=options.learning_rate,
        )

        state: TrainingState | None = None
        if checkpoint is not None and decision.is_resume:
            if self._vocabulary_compatible(checkpoint, vocabulary):
                state = TrainingState.from_record(checkpoint)
                logger.info("Resuming training from epoch %d", state.start_epoch)
            else:
                await discard_transients(self.store)
        if state is None and options.incremental:
            current = await load_current(self.store)
            if current is None or not current.weights:
                logger.info("No current model found for incremental training")
            elif self._vocabulary_compatible(current, vocabulary):
                state = TrainingState.from_record(current)
                logger.info("Incremental training from current model at epoch %d", state.start_epoch)
        if job.status is not JobStatus.RUNNING:
            await self._cancel_before_dispatch(job)
            return
        if state is None:
            logger.info("No training state loaded, starting from epoch 0")

        training_data, max_timestamp = self._prepare_examples(request.training_data, vocabulary, model_config)
        validation_data, _ = self._prepare_examples(request.validation_data, vocabulary, model_config)
        if max_timestamp:
            job.training_data_timestamp = max_timestamp

        self._runs[job.id] = _RunContext(
            model_config=model_config,
            vocabulary=vocabulary,
            started_at=now_ms(),
            is_resume=state is not None,
        )
        payload: dict[str, Any] = {
            "model_config": model_config.to_dict(),
            "vocabulary": vocabulary.to_dict(),
            "training_data": training_data,
            "validation_data": validation_data,
            "existing_weights": weights_to_list(state.weights) if state is not None else None,
            "options": _options_payload(options),
            "resume_state": _resume_payload(state),
            "checkpoint_interval_s": self.config.worker.checkpoint_interval_s,
            "memory_warning_bytes": self.config.worker.memory_warning_bytes,
        }
        job.dispatched = True
        self.state = WorkerState.BUSY
        self.send_message(MessageType.TRAIN, payload, job_id=job.id, timeout=options.timeout or None, future=job.future)

    async def _cancel_before_dispatch(self, job: TrainingJob) -> None:
        logger.info("Training cancelled for job %s before it reached the worker", job.id)
        job.transition(JobStatus.ERROR)
        self._finish_job(job.id)
        await _invoke(job.on_error, TrainingCancelledError("Training cancelled"))
        if not job.future.done():
            job.future.set_result(
                TrainingResult(success=False, cancelled=True, job_id=job.id, message="Training cancelled by user")
            )

    def _prepare_examples(
        self,
        examples: Sequence[TrainingExample],
        vocabulary: Vocabulary,
        model_config: ModelConfig,
    ) -> tuple[list[dict[str, Any]], int]:
        """Reuse stored features of the current version, extract the rest."""
        out: list[dict[str, Any]] = []
        max_timestamp = 0
        extracted = 0
        for ex in examples:
            max_timestamp = max(max_timestamp, ex.timestamp or 0)
            if not ex.has_current_features():
                ex = ex.with_features(
                    extract_features(
                        ex,
                        vocabulary,
                        max_url_length=model_config.max_url_length,
                        max_title_length=model_config.max_title_length,
                    )
                )
                extracted += 1
            out.append(ex.to_dict())
        if extracted:
            logger.info("Extracted features for %d of %d samples", extracted, len(examples))
        return out, max_timestamp

    # --- other requests ----------------------------------------------------

    async def predict(
        self,
        weights: Sequence[Mapping[str, Any]],
        inputs: Sequence[Mapping[str, Any]],
        model_config: ModelConfig,
    ) -> list[list[float]]:
        if not self.is_ready:
            await self.initialize()
        data = await self.request(
            MessageType.PREDICT,
            {"weights": list(weights), "inputs": list(inputs), "model_config": model_config.to_dict()},
        )
        return list(data.get("predictions") or [])

    def cancel_job(self, job_id: str) -> bool:
        """First phase of cancellation: mark the job and ask the worker to stop.

        The job stays tracked until the worker acknowledges with CANCELLED.
        """
        job = self._jobs.get(job_id)
        if job is None:
            logger.info("Job %s not found in jobs map", job_id)
            return False
        if job.status is JobStatus.CANCELLING:
            return True
        if not job.transition(JobStatus.CANCELLING):
            return False
        if not job.dispatched:
            logger.info("Job %s cancelled before dispatch; TRAIN will not be sent", job_id)
            return True
        logger.info("Sending CANCEL for job %s", job_id)
        self._post_cancel(job_id)
        return True

    def cancel_all_training_jobs(self) -> int:
        running = [j.id for j in self._jobs.values() if j.kind == "training" and j.status is JobStatus.RUNNING]
        for job_id in running:
            self.cancel_job(job_id)
        return len(running)

    def force_cleanup_training_jobs(self) -> int:
        """Drop every training job without waiting for acknowledgements."""
        jobs = [j for j in self._jobs.values() if j.kind == "training"]
        for job in jobs:
            logger.warning("Force removing training job %s (status: %s)", job.id, job.status.value)
            if job.status is JobStatus.RUNNING and job.dispatched:
                self._post_cancel(job.id)
            job.transition(JobStatus.ERROR)
            self._pending.pop(job.id, None)
            self._timed_out.discard(job.id)
            if not job.future.done():
                job.future.set_result(
                    TrainingResult(success=False, cancelled=True, job_id=job.id, reason="force_cleanup")
                )
            self._finish_job(job.id)
        logger.info("Force cleaned up %d training job(s)", len(jobs))
        return len(jobs)

    async def get_status(self) -> dict[str, Any]:
        base: dict[str, Any] = {"state": self.state.value, "restart_attempts": self.restart_attempts}
        if not self.is_ready:
            return {"initialized": False, **base}
        status = await self.request(MessageType.STATUS)
        return {
            "initialized": True,
            **base,
            **dict(status),
            "active_jobs": [
                {
                    "id": j.id,
                    "kind": j.kind,
                    "status": j.status.value,
                    "progress": j.progress,
                    "duration_s": j.elapsed_s(),
                }
                for j in self._jobs.values()
            ],
        }


def check_vocabulary(record: CheckpointRecord, vocabulary: Vocabulary) -> None:
    """Raise if `record` was trained with a different number of embedding rows."""
    stored = weights_vocab_size(record.weights)
    if stored is not None and stored != vocabulary.size():
        raise VocabularyMismatchError(stored, vocabulary.size())


def _options_payload(options: TrainingOptions) -> dict[str, Any]:
    return {
        "epochs": options.epochs,
        "batch_size": options.batch_size,
        "learning_rate": options.learning_rate,
        "early_stopping_patience": options.early_stopping_patience,
        "min_epochs": options.min_epochs,
        "min_delta": options.min_delta,
        "validation_split": options.validation_split,
        "incremental": options.incremental,
        "timeout": options.timeout,
    }


def _resume_payload(state: TrainingState | None) -> dict[str, Any] | None:
    if state is None:
        return None
    return {
        "start_epoch": state.start_epoch,
        "best_accuracy": state.best_accuracy,
        "best_val_loss": state.best_val_loss,
        "epochs_without_improvement": state.epochs_without_improvement,
        "training_history": state.training_history.to_dict(),
    }
