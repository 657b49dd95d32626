from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from resumable_trainer.errors import TrainingConfigError
from resumable_trainer.integration.events import TrainingProgressed
from resumable_trainer.orchestration.config_resolver import TrainingOverrides
from resumable_trainer.orchestration.orchestrator import TrainingOrchestrator
from resumable_trainer.training.types import TrainingContext


class StartTrainingRequest(BaseModel):
    context: TrainingContext = Field(TrainingContext.MANUAL)
    options: TrainingOverrides = Field(default_factory=TrainingOverrides)


class TrainingResultResponse(BaseModel):
    success: bool
    reason: str | None = None
    message: str | None = None
    job_id: str | None = None
    improved: bool | None = None
    completed: bool = False
    cancelled: bool = False
    accuracy: float | None = None
    loss: float | None = None
    actual_epochs: int | None = None
    best_epoch: int | None = None
    used_earlier_checkpoint: bool = False
    duration_s: float | None = None
    error: str | None = None


class StatusResponse(BaseModel):
    is_training: bool
    context: str | None = None
    job_id: str | None = None
    worker: dict[str, Any] | None = None
    last_progress: dict[str, Any] | None = None


def create_app(orchestrator: TrainingOrchestrator) -> FastAPI:
    app = FastAPI(title="Resumable Trainer")

    @app.post("/training/start", response_model=TrainingResultResponse)
    async def start(req: StartTrainingRequest) -> TrainingResultResponse:
        try:
            result = await orchestrator.start_training(req.context, req.options)
        except TrainingConfigError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return TrainingResultResponse.model_validate(result.to_dict())

    @app.post("/training/cancel")
    async def cancel() -> dict[str, Any]:
        cancelled = await orchestrator.cancel_training()
        return {"cancelled": cancelled}

    @app.get("/training/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        worker = await orchestrator.manager.get_status()
        return StatusResponse(**orchestrator.get_status(), worker=worker, last_progress=_last_progress(orchestrator))

    return app


def _last_progress(orchestrator: TrainingOrchestrator) -> dict[str, Any] | None:
    if orchestrator.bus is None or not orchestrator.is_training:
        return None
    event = orchestrator.bus.latest(TrainingProgressed)
    if event is None or event.job_id != orchestrator.job_id:
        return None
    return {
        "epoch": event.epoch,
        "total_epochs": event.total_epochs,
        "loss": event.loss,
        "val_accuracy": event.val_accuracy,
        "progress": event.progress,
    }
