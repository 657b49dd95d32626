from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping

import pytest

from resumable_trainer.features.extraction import TrainingExample
from resumable_trainer.features.vocabulary import StaticVocabularyProvider, Vocabulary
from resumable_trainer.integration.event_bus import InMemoryEventBus
from resumable_trainer.integration.events import DomainEvent
from resumable_trainer.orchestration.config import TrainerConfig, WorkerConfig
from resumable_trainer.orchestration.config_resolver import TrainingConfigResolver
from resumable_trainer.orchestration.data_preparer import InMemoryTrainingDataSource, TrainingDataPreparer
from resumable_trainer.orchestration.orchestrator import TrainingOrchestrator
from resumable_trainer.orchestration.progress import TrainingProgressManager
from resumable_trainer.storage.checkpoint_store import InMemoryCheckpointStore
from resumable_trainer.storage.records import CheckpointMetadata, CheckpointRecord, TrainingHistory, WeightTensor
from resumable_trainer.workers.manager import WorkerManager
from resumable_trainer.workers.messages import MessageType, WorkerMessage


def default_reply(channel: "FakeChannel", message: WorkerMessage) -> None:
    if message.type is MessageType.INIT:
        channel.emit(MessageType.INITIALIZED, message.job_id, {"device": "cpu"})
    elif message.type is MessageType.STATUS:
        channel.emit(MessageType.STATUS, message.job_id, {"busy": False})
    elif message.type is MessageType.CANCEL:
        channel.emit(MessageType.CANCELLED, message.job_id)


class FakeChannel:
    """Scriptable stand-in for the worker thread; replies go through the loop."""

    def __init__(self, on_post: Callable[["FakeChannel", WorkerMessage], None] = default_reply) -> None:
        self.on_post = on_post
        self.posted: list[WorkerMessage] = []
        self.terminated = False

    def start(self, on_message, on_crash) -> None:
        self.on_message = on_message
        self.on_crash = on_crash

    def post(self, message: WorkerMessage) -> None:
        self.posted.append(message)
        self.on_post(self, message)

    def terminate(self) -> None:
        self.terminated = True

    def emit(
        self,
        type_: MessageType,
        job_id: str | None,
        data: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        message = WorkerMessage(type=type_, job_id=job_id, data=dict(data or {}), error=error)
        asyncio.get_running_loop().call_soon(self.on_message, message)

    def crash(self, exc: BaseException) -> None:
        asyncio.get_running_loop().call_soon(self.on_crash, exc)

    def sent(self, type_: MessageType) -> list[WorkerMessage]:
        return [m for m in self.posted if m.type is type_]


class RecordingBus(InMemoryEventBus):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)
        super().publish(event)

    def of_type(self, event_type: type) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


VOCABULARY = Vocabulary.build(["docs python guide", "github login dashboard", "news article blog"])


def make_weights(vocab_size: int = VOCABULARY.size()) -> tuple[WeightTensor, ...]:
    return (
        WeightTensor(shape=(vocab_size, 2), data=tuple(0.1 for _ in range(vocab_size * 2))),
        WeightTensor(shape=(2,), data=(0.5, -0.5)),
    )


def make_history(n: int) -> TrainingHistory:
    history = TrainingHistory()
    for i in range(n):
        history.append(1.0 / (i + 1), 0.5, 1.2 / (i + 1), 0.5)
    return history


def make_record(
    record_id: str,
    *,
    epoch: int,
    history_len: int | None = None,
    ewi: int = 0,
    accuracy: float = 0.8,
    vocab_size: int = VOCABULARY.size(),
    trained_up_to: int | None = None,
) -> CheckpointRecord:
    return CheckpointRecord(
        id=record_id,
        version="1",
        weights=make_weights(vocab_size),
        vocabulary=VOCABULARY.to_dict(),
        accuracy=accuracy,
        metadata=CheckpointMetadata(
            epoch=epoch,
            best_accuracy=accuracy,
            epochs_without_improvement=ewi,
            training_history=make_history(epoch if history_len is None else history_len),
            val_loss=0.3,
            started_at=0,
            trained_up_to=trained_up_to,
        ),
    )


def make_example(i: int, *, category: int = 1, confidence: float = 0.9, timestamp: int = 1000) -> TrainingExample:
    return TrainingExample(
        url=f"https://example.com/docs/{i}",
        title=f"python guide {i}",
        category=category,
        training_confidence=confidence,
        combined_confidence=confidence,
        timestamp=timestamp + i,
    )


@pytest.fixture
def store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def make_manager(store: InMemoryCheckpointStore, bus: RecordingBus):
    """Build a WorkerManager wired to FakeChannels; returns (manager, channels)."""

    def _make(
        on_post: Callable[[FakeChannel, WorkerMessage], None] = default_reply,
        *,
        worker: WorkerConfig | None = None,
    ) -> tuple[WorkerManager, list[FakeChannel]]:
        channels: list[FakeChannel] = []

        def factory() -> FakeChannel:
            ch = FakeChannel(on_post)
            channels.append(ch)
            return ch

        config = TrainerConfig(worker=worker or WorkerConfig(checkpoint_interval_s=0.0))
        manager = WorkerManager(
            channel_factory=factory,
            store=store,
            vocabulary_provider=StaticVocabularyProvider(VOCABULARY),
            config=config,
            bus=bus,
            sleep=no_sleep,
        )
        return manager, channels

    return _make


def auto_train(ch, msg) -> None:
    if msg.type is MessageType.TRAIN:
        ch.emit(MessageType.PROGRESS, msg.job_id, {"epoch": 1, "total_epochs": 2, "loss": 0.9})
        ch.emit(
            MessageType.CHECKPOINT,
            msg.job_id,
            {
                "checkpoint_type": "last",
                "weights": [{"shape": [VOCABULARY.size(), 1], "data": [0.0] * VOCABULARY.size()}],
                "epoch": 2,
                "accuracy": 0.6,
                "best_accuracy": 0.6,
                "epochs_without_improvement": 0,
                "training_history": make_history(2).to_dict(),
            },
        )
        ch.emit(MessageType.TRAINING_COMPLETE, msg.job_id, {"actual_epochs": 2, "final_accuracy": 0.6, "model_improved": True})
    else:
        default_reply(ch, msg)


def make_orchestrator(manager, store, bus, n_examples: int = 25, config: TrainerConfig | None = None) -> TrainingOrchestrator:
    config = config or manager.config
    return TrainingOrchestrator(
        manager=manager,
        resolver=TrainingConfigResolver(config),
        preparer=TrainingDataPreparer(
            InMemoryTrainingDataSource([make_example(i) for i in range(n_examples)]),
            store,
            config.training,
        ),
        progress=TrainingProgressManager(bus=bus),
        bus=bus,
    )
