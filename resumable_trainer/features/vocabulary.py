from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Sequence


PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall((text or "").lower())


@dataclass
class Vocabulary:
    """Token <-> id mapping; ids 0 and 1 are reserved for padding and unknowns."""

    token_to_id: dict[str, int] = field(default_factory=lambda: {PAD_TOKEN: 0, UNK_TOKEN: 1})

    def size(self) -> int:
        return len(self.token_to_id)

    def add_tokens(self, tokens: Iterable[str]) -> None:
        for tok in tokens:
            if tok not in self.token_to_id:
                self.token_to_id[tok] = len(self.token_to_id)

    def encode(self, tokens: Sequence[str], max_length: int) -> list[int]:
        unk = self.token_to_id[UNK_TOKEN]
        ids = [self.token_to_id.get(t, unk) for t in tokens[:max_length]]
        return ids + [0] * (max_length - len(ids))

    def to_dict(self) -> dict[str, Any]:
        return {"token_to_id": dict(self.token_to_id), "size": self.size()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Vocabulary":
        return cls(token_to_id={str(k): int(v) for k, v in (raw.get("token_to_id") or {}).items()})

    @classmethod
    def build(cls, texts: Iterable[str]) -> "Vocabulary":
        vocab = cls()
        for text in texts:
            vocab.add_tokens(tokenize(text))
        return vocab


class VocabularyProvider(Protocol):
    async def get_vocabulary(self) -> Vocabulary:
        ...


@dataclass
class StaticVocabularyProvider(VocabularyProvider):
    vocabulary: Vocabulary

    async def get_vocabulary(self) -> Vocabulary:
        return self.vocabulary
