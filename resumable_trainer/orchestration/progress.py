from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from resumable_trainer.common.time_utils import utcnow
from resumable_trainer.errors import TrainingCancelledError
from resumable_trainer.integration.event_bus import EventBus
from resumable_trainer.integration.events import TrainingCompleted, TrainingFailed
from resumable_trainer.orchestration.config_resolver import ResolvedTrainingConfig
from resumable_trainer.orchestration.progress_ui import Ui
from resumable_trainer.training.types import TrainingContext, TrainingResult
from resumable_trainer.workers.jobs import CompleteCallback, ErrorCallback, ProgressCallback


logger = logging.getLogger(__name__)


def _fmt(value: Any) -> str:
    return f"{float(value):.4f}" if value is not None else "-"


@dataclass(frozen=True)
class TrainingCallbacks:
    on_progress: ProgressCallback
    on_complete: CompleteCallback
    on_error: ErrorCallback


class TrainingProgressManager:
    """Turns worker progress into log lines, bus events and (optionally) a rich bar."""

    def __init__(self, bus: EventBus | None = None, ui: Ui | None = None) -> None:
        self.bus = bus
        self.ui = ui

    def create_callbacks(self, context: TrainingContext, resolved: ResolvedTrainingConfig) -> TrainingCallbacks:
        show_ui = self.ui is not None and resolved.ui_callbacks

        def on_progress(data: Mapping[str, Any]) -> None:
            epoch = int(data.get("epoch") or 0)
            total = int(data.get("total_epochs") or 0)
            logger.info(
                "[%s] epoch %d/%d loss=%s acc=%s val_loss=%s val_acc=%s",
                context.value,
                epoch,
                total,
                _fmt(data.get("loss")),
                _fmt(data.get("accuracy")),
                _fmt(data.get("val_loss")),
                _fmt(data.get("val_accuracy")),
            )
            if show_ui:
                self._update_task(epoch, total, data)

        def on_complete(result: TrainingResult) -> None:
            if result.improved is False:
                logger.info("[%s] training finished without improvement; current model kept", context.value)
            else:
                logger.info(
                    "[%s] training complete: accuracy=%s epochs=%s",
                    context.value,
                    _fmt(result.accuracy),
                    result.actual_epochs,
                )
            self._end_run(f"[{context.value}] finished: accuracy={_fmt(result.accuracy)} epochs={result.actual_epochs}")
            if self.bus is not None:
                self.bus.publish(TrainingCompleted(occurred_at=utcnow(), context=context.value, result=result.to_dict()))

        def on_error(exc: BaseException) -> None:
            if isinstance(exc, TrainingCancelledError):
                logger.info("[%s] training cancelled", context.value)
            else:
                logger.error("[%s] training failed: %s", context.value, exc)
            self._end_run(f"[{context.value}] stopped: {exc}")
            if self.bus is not None:
                self.bus.publish(TrainingFailed(occurred_at=utcnow(), context=context.value, error=str(exc)))

        return TrainingCallbacks(on_progress=on_progress, on_complete=on_complete, on_error=on_error)

    def _update_task(self, epoch: int, total: int, data: Mapping[str, Any]) -> None:
        assert self.ui is not None
        self.ui.show_epoch(epoch, total, f"loss={_fmt(data.get('loss'))} val_acc={_fmt(data.get('val_accuracy'))}")

    def _end_run(self, summary: str) -> None:
        if self.ui is not None:
            self.ui.end_run(summary)
