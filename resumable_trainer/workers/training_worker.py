from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import torch
from torch import nn
from torch.utils.data import DataLoader, TensorDataset

from resumable_trainer.common.seeding import batch_order_generator, seed_worker
from resumable_trainer.errors import TrainingCancelledError, TrainingConfigError
from resumable_trainer.features.extraction import FeatureVector
from resumable_trainer.models.classifier import build_model, export_weights, import_weights, select_device
from resumable_trainer.storage.records import TrainingHistory, WeightTensor, weights_from_list, weights_to_list
from resumable_trainer.training.types import ModelConfig, TrainingOptions
from resumable_trainer.workers.messages import MessageType, WorkerMessage


logger = logging.getLogger(__name__)

Emit = Callable[[WorkerMessage], None]


@dataclass
class _Tensors:
    url: torch.Tensor
    title: torch.Tensor
    engineered: torch.Tensor
    labels: torch.Tensor
    weights: torch.Tensor

    def __len__(self) -> int:
        return int(self.labels.shape[0])

    def nbytes(self) -> int:
        return sum(t.element_size() * t.nelement() for t in (self.url, self.title, self.engineered, self.labels, self.weights))


def _to_tensors(examples: Sequence[Mapping[str, Any]], num_classes: int) -> _Tensors:
    url: list[Sequence[int]] = []
    title: list[Sequence[int]] = []
    eng: list[Sequence[float]] = []
    labels: list[int] = []
    weights: list[float] = []
    for ex in examples:
        feats = FeatureVector.from_dict(ex["features"])
        label = int(ex["category"]) - 1
        if not 0 <= label < num_classes:
            raise TrainingConfigError(f"Category {ex['category']} out of range for {num_classes} classes")
        url.append(feats.url_tokens)
        title.append(feats.title_tokens)
        eng.append(feats.engineered)
        labels.append(label)
        weights.append(float(ex.get("training_confidence", 1.0)))
    return _Tensors(
        url=torch.tensor(url, dtype=torch.long),
        title=torch.tensor(title, dtype=torch.long),
        engineered=torch.tensor(eng, dtype=torch.float32),
        labels=torch.tensor(labels, dtype=torch.long),
        weights=torch.tensor(weights, dtype=torch.float32),
    )


def _weighted_ce(logits: torch.Tensor, labels: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
    per_example = nn.functional.cross_entropy(logits, labels, reduction="none")
    return (per_example * weights).sum() / weights.sum().clamp(min=1e-8)


@torch.no_grad()
def _evaluate(net: nn.Module, data: _Tensors, device: torch.device) -> tuple[float, float]:
    net.eval()
    logits = net(data.url.to(device), data.title.to(device), data.engineered.to(device))
    labels = data.labels.to(device)
    loss = _weighted_ce(logits, labels, data.weights.to(device))
    acc = (logits.argmax(dim=1) == labels).float().mean()
    return float(loss.item()), float(acc.item())


class TrainingWorker:
    """Message-driven training loop; the body of the background execution unit.

    `handle` runs one request to completion on the worker thread.
    `handle_control` is called from other threads and only flips flags.
    """

    def __init__(self, emit: Emit) -> None:
        self._emit = emit
        self._device = torch.device("cpu")
        self._seed = 123
        self._initialized = False
        self._current_job: str | None = None
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        # Jobs cancelled while their request was still queued.
        self._cancelled_ids: set[str] = set()

    # --- dispatch ----------------------------------------------------------

    def handle(self, message: WorkerMessage) -> None:
        if message.type is MessageType.INIT:
            self._init(message)
        elif message.type is MessageType.TRAIN:
            self._run_job(message, self._train)
        elif message.type is MessageType.PREDICT:
            self._run_job(message, self._predict)
        else:
            self._send(MessageType.ERROR, message.job_id, error=f"Unknown message type: {message.type}")

    def handle_control(self, message: WorkerMessage) -> None:
        if message.type is MessageType.CANCEL:
            self.request_cancel(message.job_id)
        elif message.type is MessageType.STATUS:
            with self._lock:
                job = self._current_job
            self._send(
                MessageType.STATUS,
                message.job_id,
                {"initialized": self._initialized, "busy": job is not None, "current_job": job, "device": str(self._device)},
            )

    def request_cancel(self, job_id: str | None) -> None:
        with self._lock:
            running = self._current_job
            if running is not None and running == job_id:
                self._cancel.set()
                return
            if job_id is not None:
                self._cancelled_ids.add(job_id)
        # Not running (yet); acknowledge now and drop the request if it is dequeued later.
        self._send(MessageType.CANCELLED, job_id)

    def shutdown(self) -> None:
        self._cancel.set()

    def _send(self, type_: MessageType, job_id: str | None, data: Mapping[str, Any] | None = None, error: str | None = None) -> None:
        self._emit(WorkerMessage(type=type_, job_id=job_id, data=dict(data or {}), error=error))

    def _init(self, message: WorkerMessage) -> None:
        data = message.data
        self._device = select_device(data.get("device"))
        self._seed = int(data.get("seed", self._seed))
        seed_worker(self._seed)
        self._initialized = True
        logger.info("Training worker initialised on %s", self._device)
        self._send(MessageType.INITIALIZED, message.job_id, {"device": str(self._device)})

    def _run_job(self, message: WorkerMessage, fn: Callable[[WorkerMessage], None]) -> None:
        with self._lock:
            if message.job_id in self._cancelled_ids:
                self._cancelled_ids.discard(message.job_id)
                logger.info("Skipping job %s; it was cancelled before it started", message.job_id)
                return
            self._current_job = message.job_id
            self._cancel.clear()
        try:
            fn(message)
        except TrainingCancelledError:
            logger.info("Job %s cancelled", message.job_id)
            self._send(MessageType.CANCELLED, message.job_id)
        except Exception as exc:
            logger.exception("Job %s failed", message.job_id)
            self._send(MessageType.ERROR, message.job_id, error=str(exc) or type(exc).__name__)
        finally:
            with self._lock:
                self._current_job = None
                self._cancel.clear()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TrainingCancelledError("Training cancelled")

    # --- PREDICT -----------------------------------------------------------

    def _predict(self, message: WorkerMessage) -> None:
        data = message.data
        cfg = _model_config(data["model_config"])
        net = build_model(cfg, device=torch.device("cpu"))
        weights = weights_from_list(data.get("weights"))
        if not weights or not import_weights(net, weights):
            raise ValueError("Prediction requires weights matching the model config")
        inputs = [FeatureVector.from_dict(f) for f in data.get("inputs", [])]
        if not inputs:
            self._send(MessageType.PREDICTION_COMPLETE, message.job_id, {"predictions": []})
            return
        net.eval()
        with torch.no_grad():
            logits = net(
                torch.tensor([f.url_tokens for f in inputs], dtype=torch.long),
                torch.tensor([f.title_tokens for f in inputs], dtype=torch.long),
                torch.tensor([f.engineered for f in inputs], dtype=torch.float32),
            )
            probs = torch.softmax(logits, dim=1).numpy()
        self._check_cancelled()
        self._send(MessageType.PREDICTION_COMPLETE, message.job_id, {"predictions": probs.tolist()})

    # --- TRAIN -------------------------------------------------------------

    def _train(self, message: WorkerMessage) -> None:
        job_id = message.job_id
        data = message.data
        started = time.monotonic()

        cfg = _model_config(data["model_config"])
        opts = TrainingOptions(**dict(data["options"])).validate()
        checkpoint_interval_s = float(data.get("checkpoint_interval_s", 5.0))
        memory_warning_bytes = data.get("memory_warning_bytes")

        train = _to_tensors(data["training_data"], cfg.num_classes)
        val = _to_tensors(data["validation_data"], cfg.num_classes) if data.get("validation_data") else None
        if len(train) == 0:
            raise TrainingConfigError("No training examples")

        device = self._device
        net = build_model(cfg, device=device)
        existing = weights_from_list(data.get("existing_weights"))
        loaded_existing = False
        if existing:
            loaded_existing = import_weights(net, existing)
            if not loaded_existing:
                logger.warning("Existing weights incompatible; training from fresh weights")
        opt = torch.optim.Adam(net.parameters(), lr=opts.learning_rate)

        resume = data.get("resume_state") or {}
        start_epoch = int(resume.get("start_epoch") or 0)
        if start_epoch < 0:
            raise TrainingConfigError(f"Invalid start epoch: {start_epoch}")
        completed_before = start_epoch - 1 if start_epoch > 0 else 0
        history = TrainingHistory.from_dict(resume.get("training_history"))
        if len(history) > completed_before:
            history.truncate(completed_before)
        best_accuracy = float(resume.get("best_accuracy") or 0.0)
        best_val_loss = resume.get("best_val_loss")
        epochs_without_improvement = int(resume.get("epochs_without_improvement") or 0)

        if opts.incremental and start_epoch > 0:
            target_epochs = completed_before + opts.epochs
        else:
            target_epochs = opts.epochs

        self._maybe_warn_memory(job_id, net, train, val, memory_warning_bytes)

        session_start_val_loss: float | None = None
        if opts.incremental and loaded_existing and val is not None:
            session_start_val_loss, _ = _evaluate(net, val, device)
            logger.info("Incremental baseline val_loss=%.4f", session_start_val_loss)

        generator = batch_order_generator(self._seed, completed_before)
        loader = DataLoader(
            TensorDataset(train.url, train.title, train.engineered, train.labels, train.weights),
            batch_size=opts.batch_size,
            shuffle=True,
            generator=generator,
        )

        best_weights: tuple[WeightTensor, ...] | None = None
        best_epoch: int | None = None
        best_history: TrainingHistory | None = None
        best_dirty = False
        early_stopped = False
        epochs_run = 0
        last_loss: float | None = None
        last_accuracy: float | None = None
        last_checkpoint_at = time.monotonic()
        num_batches = len(loader)

        for epoch in range(completed_before + 1, target_epochs + 1):
            self._check_cancelled()
            net.train()
            for batch_idx, (xu, xt, xe, yb, wb) in enumerate(loader):
                self._check_cancelled()
                opt.zero_grad(set_to_none=True)
                logits = net(xu.to(device), xt.to(device), xe.to(device))
                loss = _weighted_ce(logits, yb.to(device), wb.to(device))
                loss.backward()
                nn.utils.clip_grad_norm_(net.parameters(), max_norm=5.0)
                opt.step()
                if num_batches > 10 and (batch_idx + 1) % 10 == 0:
                    self._send(
                        MessageType.BATCH_PROGRESS,
                        job_id,
                        {"epoch": epoch, "batch": batch_idx + 1, "total_batches": num_batches, "loss": float(loss.item())},
                    )

            train_loss, train_acc = _evaluate(net, train, device)
            val_loss, val_acc = _evaluate(net, val, device) if val is not None else (None, None)
            history.append(train_loss, train_acc, val_loss, val_acc)
            epochs_run += 1
            last_loss, last_accuracy = train_loss, (val_acc if val_acc is not None else train_acc)

            monitor = val_loss if val_loss is not None else train_loss
            if best_val_loss is None or monitor < float(best_val_loss) - opts.min_delta:
                best_val_loss = monitor
                epochs_without_improvement = 0
                best_accuracy = last_accuracy
                if session_start_val_loss is None or monitor < session_start_val_loss:
                    best_weights = export_weights(net)
                    best_epoch = epoch
                    best_history = history.copy()
                    best_dirty = True
            else:
                epochs_without_improvement += 1

            self._send(
                MessageType.PROGRESS,
                job_id,
                {
                    "epoch": epoch,
                    "total_epochs": target_epochs,
                    "loss": train_loss,
                    "accuracy": train_acc,
                    "val_loss": val_loss,
                    "val_accuracy": val_acc,
                    "epochs_without_improvement": epochs_without_improvement,
                },
            )

            stop = epoch >= opts.min_epochs and epochs_without_improvement >= opts.early_stopping_patience
            if time.monotonic() - last_checkpoint_at >= checkpoint_interval_s or stop:
                self._send_checkpoints(
                    job_id, net, epoch, history, last_accuracy, best_accuracy, best_val_loss, epochs_without_improvement,
                    best_weights if best_dirty else None, best_epoch, best_history,
                )
                best_dirty = False
                last_checkpoint_at = time.monotonic()

            if stop:
                early_stopped = True
                logger.info("Early stopping at epoch %d (patience %d)", epoch, opts.early_stopping_patience)
                break

        self._check_cancelled()
        if epochs_run:
            final_epoch = completed_before + epochs_run
            self._send_checkpoints(
                job_id, net, final_epoch, history, last_accuracy, best_accuracy, best_val_loss, epochs_without_improvement,
                best_weights if best_dirty else None, best_epoch, best_history,
            )

        used_earlier = best_epoch is not None and best_epoch != completed_before + epochs_run
        if best_weights is not None and used_earlier:
            import_weights(net, best_weights)
        model_improved = best_weights is not None if session_start_val_loss is not None else True

        self._send(
            MessageType.TRAINING_COMPLETE,
            job_id,
            {
                "actual_epochs": epochs_run,
                "total_epochs": len(history),
                "final_accuracy": best_accuracy if best_weights is not None else last_accuracy,
                "final_loss": last_loss,
                "history": history.to_dict(),
                "model_improved": model_improved,
                "used_earlier_checkpoint": used_earlier,
                "best_epoch": best_epoch,
                "duration_s": time.monotonic() - started,
                "early_stopping_triggered": early_stopped,
                "session_start_val_loss": session_start_val_loss,
            },
        )

    def _send_checkpoints(
        self,
        job_id: str | None,
        net: nn.Module,
        epoch: int,
        history: TrainingHistory,
        accuracy: float | None,
        best_accuracy: float,
        best_val_loss: float | None,
        epochs_without_improvement: int,
        best_weights: tuple[WeightTensor, ...] | None,
        best_epoch: int | None,
        best_history: TrainingHistory | None,
    ) -> None:
        self._send(
            MessageType.CHECKPOINT,
            job_id,
            {
                "checkpoint_type": "last",
                "weights": weights_to_list(export_weights(net)),
                "epoch": epoch,
                "accuracy": accuracy,
                "best_accuracy": best_accuracy,
                "val_loss": best_val_loss,
                "epochs_without_improvement": epochs_without_improvement,
                "training_history": history.to_dict(),
            },
        )
        if best_weights is not None and best_epoch is not None and best_history is not None:
            self._send(
                MessageType.CHECKPOINT,
                job_id,
                {
                    "checkpoint_type": "best",
                    "weights": weights_to_list(best_weights),
                    "epoch": best_epoch,
                    "accuracy": best_accuracy,
                    "best_accuracy": best_accuracy,
                    "val_loss": best_val_loss,
                    "epochs_without_improvement": 0,
                    "training_history": best_history.to_dict(),
                },
            )

    def _maybe_warn_memory(
        self,
        job_id: str | None,
        net: nn.Module,
        train: _Tensors,
        val: _Tensors | None,
        threshold: int | None,
    ) -> None:
        if not threshold:
            return
        param_bytes = sum(p.element_size() * p.nelement() for p in net.parameters())
        data_bytes = train.nbytes() + (val.nbytes() if val is not None else 0)
        total = param_bytes + data_bytes
        if total > int(threshold):
            self._send(
                MessageType.MEMORY_WARNING,
                job_id,
                {"num_bytes": total, "details": {"params": param_bytes, "data": data_bytes}},
            )


def _model_config(raw: Mapping[str, Any]) -> ModelConfig:
    values = dict(raw)
    values["hidden_units"] = tuple(values.get("hidden_units") or ())
    return ModelConfig(**values)
