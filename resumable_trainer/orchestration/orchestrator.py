from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from resumable_trainer.common.time_utils import utcnow
from resumable_trainer.errors import TrainerError, TrainingConfigError, TrainingDataError
from resumable_trainer.features.vocabulary import VocabularyProvider
from resumable_trainer.integration.event_bus import EventBus, InMemoryEventBus
from resumable_trainer.integration.events import TrainingFailed, TrainingStarted
from resumable_trainer.models.model_cache import ModelCache
from resumable_trainer.orchestration.config import TrainerConfig
from resumable_trainer.orchestration.config_resolver import (
    ResolvedTrainingConfig,
    TrainingConfigResolver,
    TrainingOverrides,
)
from resumable_trainer.orchestration.data_preparer import TrainingDataPreparer, TrainingDataSource
from resumable_trainer.orchestration.progress import TrainingProgressManager
from resumable_trainer.orchestration.progress_ui import Ui
from resumable_trainer.storage.checkpoint_store import CheckpointStore, FileCheckpointStore
from resumable_trainer.training.types import TRAINING_IN_PROGRESS, TrainingContext, TrainingResult
from resumable_trainer.workers.channel import ThreadedWorkerChannel, WorkerChannel
from resumable_trainer.workers.manager import TrainingRequest, WorkerManager


logger = logging.getLogger(__name__)

BACKGROUND_DISABLED = "background_disabled"
INSUFFICIENT_DATA = "insufficient_data"


class TrainingOrchestrator:
    """Single entry point for starting a training run.

    At most one run is in flight per orchestrator. The gate is taken
    synchronously, so two calls scheduled in the same loop iteration cannot
    both get through.
    """

    def __init__(
        self,
        manager: WorkerManager,
        resolver: TrainingConfigResolver,
        preparer: TrainingDataPreparer,
        progress: TrainingProgressManager | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.manager = manager
        self.resolver = resolver
        self.preparer = preparer
        self.progress = progress or TrainingProgressManager(bus=bus)
        self.bus = bus

        self.is_training = False
        self.context: TrainingContext | None = None
        self.job_id: str | None = None
        self._runs = itertools.count(1)
        self._run: int | None = None
        self._cancelled_runs: set[int] = set()

    def _resolve(
        self,
        context: TrainingContext | str,
        overrides: TrainingOverrides | Mapping[str, Any] | None,
    ) -> ResolvedTrainingConfig:
        try:
            context = TrainingContext(context)
            if overrides is not None and not isinstance(overrides, TrainingOverrides):
                overrides = TrainingOverrides.model_validate(dict(overrides))
            resolved = self.resolver.resolve(context, overrides)
        except TrainingConfigError:
            raise
        except (ValueError, ValidationError) as exc:
            raise TrainingConfigError(str(exc)) from exc
        resolved.to_options().validate()
        return resolved

    def _publish_failed(self, context: TrainingContext, error: str) -> None:
        if self.bus is not None:
            self.bus.publish(TrainingFailed(occurred_at=utcnow(), context=context.value, error=error))

    async def start_training(
        self,
        context: TrainingContext | str = TrainingContext.MANUAL,
        overrides: TrainingOverrides | Mapping[str, Any] | None = None,
    ) -> TrainingResult:
        if self.is_training:
            logger.info("Training already in progress (%s); ignoring new request", self.context)
            return TrainingResult(
                success=False,
                reason=TRAINING_IN_PROGRESS,
                job_id=self.job_id,
                message="Training is already in progress",
            )

        resolved = self._resolve(context, overrides)
        context = resolved.context
        if resolved.background_mode and not self.resolver.config.background.enabled:
            logger.info("Background training disabled; skipping %s run", context.value)
            return TrainingResult(success=False, reason=BACKGROUND_DISABLED, message="Background training is disabled")

        run = next(self._runs)
        self._run = run
        self.is_training = True
        self.context = context
        self.job_id = None
        try:
            return await self._run_training(context, resolved, run)
        finally:
            self._cancelled_runs.discard(run)
            if self._run == run:
                self._clear()

    async def _run_training(self, context: TrainingContext, resolved: ResolvedTrainingConfig, run: int) -> TrainingResult:
        try:
            data = await self.preparer.prepare(resolved)
        except TrainingDataError as exc:
            logger.warning("Cannot train (%s): %s", context.value, exc)
            self._publish_failed(context, str(exc))
            return TrainingResult(success=False, reason=INSUFFICIENT_DATA, error=str(exc), message=str(exc))

        if run in self._cancelled_runs:
            logger.info("Training (%s) cancelled before it was handed to the worker", context.value)
            return TrainingResult(success=False, cancelled=True, message="Training cancelled by user")

        callbacks = self.progress.create_callbacks(context, resolved)
        if self.bus is not None:
            self.bus.publish(TrainingStarted(occurred_at=utcnow(), context=context.value, is_incremental=resolved.is_incremental))

        request = TrainingRequest(
            training_data=data.training,
            validation_data=data.validation,
            options=resolved.to_options(),
            on_progress=callbacks.on_progress,
            on_complete=callbacks.on_complete,
            on_error=callbacks.on_error,
        )
        try:
            handle = await self.manager.train(request)
            if handle.accepted:
                if self._run == run:
                    self.job_id = handle.job_id
                if run in self._cancelled_runs:
                    # Cancelled while the manager was still setting the job up.
                    self.manager.cancel_job(handle.job_id)
            return await handle.result()
        except TrainingConfigError:
            raise
        except TrainerError as exc:
            logger.error("Training failed (%s): %s", context.value, exc)
            return TrainingResult(success=False, job_id=self.job_id, error=str(exc), message=str(exc))
        except Exception as exc:
            logger.exception("Unexpected training failure (%s)", context.value)
            return TrainingResult(success=False, job_id=self.job_id, error=str(exc), message=str(exc))

    def _clear(self) -> None:
        self.is_training = False
        self.context = None
        self.job_id = None
        self._run = None

    async def cancel_training(self) -> bool:
        """Ask the worker to stop the active run; local state is cleared at once."""
        if not self.is_training:
            return False
        job_id = self.job_id
        if self._run is not None:
            self._cancelled_runs.add(self._run)
        if job_id is not None:
            sent = self.manager.cancel_job(job_id)
        else:
            # The manager may already hold the job even though `train` has not returned yet.
            sent = self.manager.cancel_all_training_jobs() > 0
        logger.info("Cancel requested for job %s (sent=%s)", job_id, sent)
        self._clear()
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "is_training": self.is_training,
            "context": self.context.value if self.context is not None else None,
            "job_id": self.job_id,
        }


def build_orchestrator(
    config: TrainerConfig,
    source: TrainingDataSource,
    vocabulary_provider: VocabularyProvider,
    *,
    store: CheckpointStore | None = None,
    bus: EventBus | None = None,
    ui: Ui | None = None,
    channel_factory: Callable[[], WorkerChannel] = ThreadedWorkerChannel,
) -> TrainingOrchestrator:
    """Wire the default collaborators from a config."""
    if store is None:
        paths = config.storage.resolve()
        paths.ensure_dirs()
        store = FileCheckpointStore(paths.checkpoints_dir)
    bus = bus or InMemoryEventBus()
    cache = ModelCache(store, config.model, learning_rate=config.settings.learning_rate)
    manager = WorkerManager(
        channel_factory=channel_factory,
        store=store,
        vocabulary_provider=vocabulary_provider,
        config=config,
        bus=bus,
        model_cache=cache,
    )
    return TrainingOrchestrator(
        manager=manager,
        resolver=TrainingConfigResolver(config),
        preparer=TrainingDataPreparer(source, store, config.training, seed=config.worker.seed),
        progress=TrainingProgressManager(bus=bus, ui=ui),
        bus=bus,
    )
