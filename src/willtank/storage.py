"""Blob storage for will documents and tank media."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import structlog

from willtank.errors import StoragePathError, TransientStoreError

logger = structlog.get_logger()


class Storage(Protocol):
    async def delete(self, paths: Iterable[str]) -> None: ...


class LocalFileStorage:
    """Files under a root directory. Missing files count as already deleted."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root):
            msg = f"Path escapes storage root: {path}"
            raise StoragePathError(msg)
        return target

    async def delete(self, paths: Iterable[str]) -> None:
        targets = [self._resolve(p) for p in paths]
        try:
            await asyncio.to_thread(_unlink_all, targets)
        except OSError as exc:
            logger.warning("storage_delete_failed", root=str(self.root), error=str(exc))
            raise TransientStoreError(str(exc)) from exc


def _unlink_all(targets: list[Path]) -> None:
    for target in targets:
        target.unlink(missing_ok=True)
