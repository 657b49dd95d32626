from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import torch
from torch import nn

from resumable_trainer.features.extraction import NUM_ENGINEERED_FEATURES
from resumable_trainer.orchestration.config import ModelArchitectureConfig
from resumable_trainer.storage.records import WeightTensor
from resumable_trainer.training.types import ModelConfig


logger = logging.getLogger(__name__)


def select_device(device: str | None) -> torch.device:
    """Prefer Apple Silicon MPS when available, else CUDA, else CPU."""
    if device is not None:
        return torch.device(device)
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


class _MaskedMeanPool(nn.Module):
    def forward(self, emb: torch.Tensor, tokens: torch.Tensor) -> torch.Tensor:
        mask = (tokens != 0).unsqueeze(-1).to(emb.dtype)
        total = (emb * mask).sum(dim=1)
        count = mask.sum(dim=1).clamp(min=1.0)
        return total / count


class TabClassifierNet(nn.Module):
    """URL/title token embeddings + engineered features -> category logits.

    The embedding is the first parameter, so `weights[0].shape[0]` is the
    vocabulary size a checkpoint was trained with.
    """

    def __init__(self, cfg: ModelConfig) -> None:
        super().__init__()
        self.embedding = nn.Embedding(cfg.vocab_size, cfg.embedding_dim, padding_idx=0)
        self.pool = _MaskedMeanPool()
        self.feature_transform = nn.Sequential(
            nn.Linear(cfg.num_engineered_features, cfg.feature_transform_units),
            nn.ReLU(),
        )
        layers: list[nn.Module] = []
        last = 2 * cfg.embedding_dim + cfg.feature_transform_units
        for h in cfg.hidden_units:
            layers.append(nn.Linear(last, h))
            layers.append(nn.ReLU())
            layers.append(nn.Dropout(cfg.dropout))
            last = h
        self.hidden = nn.Sequential(*layers)
        self.out = nn.Linear(last, cfg.num_classes)

    def forward(
        self,
        url_tokens: torch.Tensor,
        title_tokens: torch.Tensor,
        engineered: torch.Tensor,
    ) -> torch.Tensor:
        url_vec = self.pool(self.embedding(url_tokens), url_tokens)
        title_vec = self.pool(self.embedding(title_tokens), title_tokens)
        feat_vec = self.feature_transform(engineered)
        z = self.hidden(torch.cat([url_vec, title_vec, feat_vec], dim=1))
        return self.out(z)


def build_model(cfg: ModelConfig, device: torch.device | None = None) -> TabClassifierNet:
    net = TabClassifierNet(cfg)
    if device is not None:
        net = net.to(device)
    return net


def _state_dict_compatible(
    loaded: dict[str, torch.Tensor],
    expected: dict[str, torch.Tensor],
) -> bool:
    if loaded.keys() != expected.keys():
        return False
    for key, value in loaded.items():
        if value.shape != expected[key].shape:
            return False
    return True


def export_weights(net: nn.Module) -> tuple[WeightTensor, ...]:
    """Flatten a state_dict into blob + shape pairs in parameter order."""
    out: list[WeightTensor] = []
    for tensor in net.state_dict().values():
        arr = tensor.detach().cpu().numpy().astype(np.float64)
        out.append(WeightTensor(shape=tuple(arr.shape), data=tuple(arr.reshape(-1).tolist())))
    return tuple(out)


def import_weights(net: nn.Module, weights: Sequence[WeightTensor]) -> bool:
    """Load blob + shape weights into `net`.

    Returns False and leaves `net` untouched when the count or any shape
    differs from the network's own state_dict.
    """
    expected = net.state_dict()
    if len(weights) != len(expected):
        logger.warning("Weight count mismatch: got %d, expected %d", len(weights), len(expected))
        return False

    loaded: dict[str, torch.Tensor] = {}
    for (key, ref), w in zip(expected.items(), weights):
        if len(w.data) != int(np.prod(w.shape, dtype=np.int64)):
            logger.warning("Corrupt weight blob for %s: %d values for shape %s", key, len(w.data), w.shape)
            return False
        arr = np.asarray(w.data, dtype=np.float64).reshape(w.shape)
        loaded[key] = torch.tensor(arr, dtype=ref.dtype)

    if not _state_dict_compatible(loaded, expected):
        logger.warning("Weight shapes incompatible with current model; ignoring")
        return False
    net.load_state_dict(loaded)
    return True


def weights_vocab_size(weights: Sequence[WeightTensor] | None) -> int | None:
    if not weights:
        return None
    first = weights[0]
    return int(first.shape[0]) if first.shape else None


def make_model_config(
    arch: ModelArchitectureConfig,
    *,
    vocab_size: int,
    learning_rate: float,
) -> ModelConfig:
    return ModelConfig(
        vocab_size=vocab_size,
        embedding_dim=arch.embedding_dim,
        max_url_length=arch.max_url_length,
        max_title_length=arch.max_title_length,
        num_classes=arch.num_classes,
        feature_transform_units=arch.feature_transform_units,
        hidden_units=tuple(arch.hidden_units),
        dropout=arch.dropout,
        learning_rate=learning_rate,
        num_engineered_features=NUM_ENGINEERED_FEATURES,
    )
