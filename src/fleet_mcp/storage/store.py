"""JSON snapshot of all managed instances."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable

from pydantic import TypeAdapter, ValidationError

from ..errors import StoreError
from .models import InstanceRecord

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(list[InstanceRecord])


class InstanceStore:
    """One JSON document per manager, rewritten wholesale on every change.

    All writes go through a single lock and land via an atomic rename, so readers see
    either the previous or the next snapshot.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> list[InstanceRecord]:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StoreError(f"cannot read instance store {self._path}: {exc}") from exc
        if not raw.strip():
            return []
        try:
            return _RECORDS.validate_json(raw)
        except ValidationError as exc:
            raise StoreError(f"instance store {self._path} is invalid: {exc}") from exc

    def _write(self, records: list[InstanceRecord]) -> None:
        titles = [record.title for record in records]
        if len(set(titles)) != len(titles):
            raise StoreError("refusing to persist duplicate instance titles")
        payload = _RECORDS.dump_json(records, indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreError(f"cannot write instance store {self._path}: {exc}") from exc

    async def load(self) -> list[InstanceRecord]:
        async with self._lock:
            return self._read()

    async def save(self, records: Iterable[InstanceRecord]) -> None:
        records = list(records)
        async with self._lock:
            self._write(records)
        logger.debug("Saved instance snapshot", extra={"count": len(records), "path": str(self._path)})

    async def delete(self, title: str) -> bool:
        """Remove ``title`` from the snapshot; return whether it was present."""

        async with self._lock:
            records = self._read()
            remaining = [record for record in records if record.title != title]
            if len(remaining) == len(records):
                return False
            self._write(remaining)
        logger.info("Deleted instance from store", extra={"title": title})
        return True


__all__ = ["InstanceStore"]
