"""Reproducibility for the training worker thread."""

from __future__ import annotations

import random

import numpy as np
import torch


def seed_worker(seed: int) -> None:
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def batch_order_generator(seed: int, completed_epochs: int = 0) -> torch.Generator:
    """Generator for DataLoader shuffling.

    Offsetting by the epochs already completed means a resumed run does not
    replay the batch order its first session started with.
    """
    return torch.Generator().manual_seed(seed + completed_epochs)
