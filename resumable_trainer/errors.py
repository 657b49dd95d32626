from __future__ import annotations


class TrainerError(Exception):
    """Base class for all training orchestration failures."""


class TrainingConfigError(TrainerError, ValueError):
    """Invalid configuration or input data; raised before any async work."""


class WorkerTimeoutError(TrainerError, TimeoutError):
    pass


class WorkerCrashedError(TrainerError):
    pass


class WorkerUnavailableError(TrainerError):
    """Restart attempts are exhausted; the host process must be restarted."""


class WorkerJobError(TrainerError):
    """The background worker reported an ERROR message for a job."""


class TrainingCancelledError(TrainerError):
    pass


class PromotionError(TrainerError):
    """A completed run cannot be promoted (zero epochs, missing checkpoints)."""


class VocabularyMismatchError(TrainerError):
    def __init__(self, checkpoint_vocab_size: int, current_vocab_size: int) -> None:
        super().__init__(
            f"Checkpoint vocabulary size {checkpoint_vocab_size} does not match "
            f"current vocabulary size {current_vocab_size}"
        )
        self.checkpoint_vocab_size = checkpoint_vocab_size
        self.current_vocab_size = current_vocab_size


class TrainingDataError(TrainerError):
    """No usable training data, or too little of it."""
