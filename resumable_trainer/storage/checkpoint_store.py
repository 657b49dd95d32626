from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Protocol

from resumable_trainer.common.time_utils import now_ms
from resumable_trainer.storage.records import (
    CURRENT,
    TRAINING_BEST,
    TRAINING_LAST,
    TRAINING_PREFIX,
    CheckpointKind,
    CheckpointRecord,
)


logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class CheckpointStore(Protocol):
    """Durable key -> record store. Atomic per record, no cross-key transactions."""

    async def get(self, record_id: str) -> CheckpointRecord | None:
        ...

    async def put(self, record: CheckpointRecord) -> None:
        ...

    async def delete(self, record_id: str) -> None:
        ...

    async def list_ids(self) -> list[str]:
        ...


class InMemoryCheckpointStore(CheckpointStore):
    """Store that keeps serialised records in a dict.

    Records are round-tripped through their dict form so callers can never
    mutate what is "on disk" through a shared reference.
    """

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, record_id: str) -> CheckpointRecord | None:
        raw = self._records.get(record_id)
        if raw is None:
            return None
        return CheckpointRecord.from_dict(json.loads(raw))

    async def put(self, record: CheckpointRecord) -> None:
        self._records[record.id] = json.dumps(record.to_dict(), sort_keys=True)

    async def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    async def list_ids(self) -> list[str]:
        return sorted(self._records)

    def raw(self, record_id: str) -> str | None:
        """Serialised form of a record, for byte-level comparisons."""
        return self._records.get(record_id)


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, sort_keys=True))
    os.replace(tmp, path)


class FileCheckpointStore(CheckpointStore):
    """One JSON file per record under `directory`.

    Writes go to a temp file followed by os.replace, so a kill mid-write
    leaves either the old record or the new one, never a torn file.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, record_id: str) -> Path:
        if not _SAFE_ID.match(record_id):
            raise ValueError(f"Invalid record id: {record_id!r}")
        return self.directory / f"{record_id}.json"

    def _read(self, record_id: str) -> CheckpointRecord | None:
        path = self._path(record_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text())
            return CheckpointRecord.from_dict(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, exc)
            return None

    def _delete(self, record_id: str) -> None:
        self._path(record_id).unlink(missing_ok=True)

    def _list(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    async def get(self, record_id: str) -> CheckpointRecord | None:
        return await asyncio.to_thread(self._read, record_id)

    async def put(self, record: CheckpointRecord) -> None:
        await asyncio.to_thread(_atomic_write_json, self._path(record.id), record.to_dict())

    async def delete(self, record_id: str) -> None:
        await asyncio.to_thread(self._delete, record_id)

    async def list_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list)


# --- Slot helpers ------------------------------------------------------------


async def load_current(store: CheckpointStore) -> CheckpointRecord | None:
    return await store.get(CURRENT)


async def get_training_checkpoint(
    store: CheckpointStore,
    kind: CheckpointKind = CheckpointKind.LAST,
) -> CheckpointRecord | None:
    return await store.get(kind.record_id)


async def delete_training_checkpoint(
    store: CheckpointStore,
    kind: CheckpointKind = CheckpointKind.LAST,
) -> None:
    await store.delete(kind.record_id)


async def save_training_checkpoint(
    store: CheckpointStore,
    record: CheckpointRecord,
    kind: CheckpointKind = CheckpointKind.LAST,
) -> CheckpointRecord:
    stamped = record.with_id(kind.record_id, checkpoint_type=kind.value, saved_at=now_ms())
    await store.put(stamped)
    return stamped


async def cleanup_training_models(store: CheckpointStore) -> int:
    """Delete leftover `training_*` records other than the two live slots."""
    removed = 0
    for record_id in await store.list_ids():
        if not record_id.startswith(TRAINING_PREFIX):
            continue
        if record_id in (TRAINING_LAST, TRAINING_BEST):
            continue
        await store.delete(record_id)
        removed += 1
    if removed:
        logger.info("Cleaned up %d stale training records", removed)
    return removed
