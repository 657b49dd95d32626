from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Callable, Protocol

from resumable_trainer.workers.messages import MessageType, WorkerMessage
from resumable_trainer.workers.training_worker import TrainingWorker


logger = logging.getLogger(__name__)

MessageHandler = Callable[[WorkerMessage], None]
CrashHandler = Callable[[BaseException], None]

_STOP = object()


class WorkerChannel(Protocol):
    """Connection to one background execution unit."""

    def start(self, on_message: MessageHandler, on_crash: CrashHandler) -> None:
        ...

    def post(self, message: WorkerMessage) -> None:
        ...

    def terminate(self) -> None:
        ...


class ThreadedWorkerChannel(WorkerChannel):
    """Hosts a `TrainingWorker` on a daemon thread.

    Requests are processed one at a time from a queue. CANCEL and STATUS
    bypass the queue so they reach a worker that is busy inside an epoch
    loop. Replies are handed to the event loop with `call_soon_threadsafe`,
    which keeps them in emission order.
    """

    def __init__(self, worker_factory: Callable[..., TrainingWorker] = TrainingWorker) -> None:
        self._worker_factory = worker_factory
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._worker: TrainingWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_message: MessageHandler | None = None
        self._on_crash: CrashHandler | None = None
        self._terminated = threading.Event()

    def start(self, on_message: MessageHandler, on_crash: CrashHandler) -> None:
        self._loop = asyncio.get_running_loop()
        self._on_message = on_message
        self._on_crash = on_crash
        self._worker = self._worker_factory(emit=self._emit)
        self._thread = threading.Thread(target=self._run, name="training-worker", daemon=True)
        self._thread.start()

    def post(self, message: WorkerMessage) -> None:
        if self._worker is None or self._terminated.is_set():
            raise RuntimeError("Worker channel is not running")
        if message.type in (MessageType.CANCEL, MessageType.STATUS):
            self._worker.handle_control(message)
            return
        self._queue.put(message)

    def terminate(self) -> None:
        if self._terminated.is_set():
            return
        self._terminated.set()
        if self._worker is not None:
            self._worker.shutdown()
        self._queue.put(_STOP)

    def _emit(self, message: WorkerMessage) -> None:
        if self._terminated.is_set() or self._loop is None or self._on_message is None:
            return
        self._loop.call_soon_threadsafe(self._on_message, message)

    def _run(self) -> None:
        assert self._worker is not None
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._worker.handle(item)  # type: ignore[arg-type]
            except BaseException as exc:
                logger.exception("Training worker thread crashed")
                if not self._terminated.is_set() and self._loop is not None and self._on_crash is not None:
                    self._loop.call_soon_threadsafe(self._on_crash, exc)
                self._terminated.set()
                return
