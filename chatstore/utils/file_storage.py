from __future__ import annotations

import asyncio
import json
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import aiofiles
import aiofiles.os

from chatstore.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class FileStat:
    size: int
    mtime: float


class FileStorage:
    """JSON file primitive rooted at a base directory.

    Paths are relative to ``base_dir``. ``write`` is a plain write; callers that
    need atomic replacement write a temporary path and ``rename`` it over the
    target themselves.
    """

    def __init__(self, base_dir: str | Path, *, pretty_print: bool = True) -> None:
        self.base_dir = Path(base_dir)
        self.pretty_print = pretty_print

    def full_path(self, relative_path: str) -> Path:
        return self.base_dir / relative_path

    def temp_path_for(self, relative_path: str) -> str:
        return f"{relative_path}.{uuid.uuid4().hex[:12]}.tmp"

    async def exists(self, relative_path: str) -> bool:
        return await aiofiles.os.path.exists(self.full_path(relative_path))

    async def ensure_directory(self, relative_path: str) -> None:
        await aiofiles.os.makedirs(self.full_path(relative_path), exist_ok=True)

    async def read(self, relative_path: str) -> Any | None:
        """Return the decoded JSON value, or None when the file does not exist.

        Invalid JSON raises ``json.JSONDecodeError`` so callers can decide
        whether it is fatal.
        """

        path = self.full_path(relative_path)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as handle:
                content = await handle.read()
        except FileNotFoundError:
            return None
        return json.loads(content)

    async def write(self, relative_path: str, value: Any) -> None:
        path = self.full_path(relative_path)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        if self.pretty_print:
            content = json.dumps(value, ensure_ascii=False, indent=2)
        else:
            content = json.dumps(value, ensure_ascii=False)
        async with aiofiles.open(path, "w", encoding="utf-8") as handle:
            await handle.write(content)

    async def rename(self, source: str, target: str) -> None:
        await aiofiles.os.replace(self.full_path(source), self.full_path(target))

    async def delete(self, relative_path: str) -> bool:
        try:
            await aiofiles.os.remove(self.full_path(relative_path))
        except FileNotFoundError:
            return False
        return True

    async def delete_directory(self, relative_path: str) -> bool:
        path = self.full_path(relative_path)
        if not await aiofiles.os.path.isdir(path):
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        return True

    async def list_directories(self, relative_path: str) -> List[str]:
        path = self.full_path(relative_path)
        try:
            entries = await aiofiles.os.scandir(path)
        except FileNotFoundError:
            return []
        with entries:
            return sorted(entry.name for entry in entries if entry.is_dir())

    async def stat(self, relative_path: str) -> Optional[FileStat]:
        try:
            result = await aiofiles.os.stat(self.full_path(relative_path))
        except FileNotFoundError:
            return None
        return FileStat(size=result.st_size, mtime=result.st_mtime)


class WriteFailure(RuntimeError):
    """Raised when a write or the final rename fails; the previous file is left intact."""

    def __init__(self, path: str, record_id: str | None, cause: BaseException) -> None:
        target = record_id or "-"
        super().__init__(f"Failed to write {path} (id={target}): {cause}")
        self.path = path
        self.record_id = record_id
        self.__cause__ = cause


async def write_atomic(
    storage: FileStorage,
    relative_path: str,
    value: Any,
    *,
    record_id: str | None = None,
) -> None:
    """Write to a unique temporary path, then rename it over ``relative_path``."""

    temp_path = storage.temp_path_for(relative_path)
    try:
        await storage.write(temp_path, value)
        await storage.rename(temp_path, relative_path)
    except OSError as exc:
        try:
            await storage.delete(temp_path)
        except OSError as cleanup_exc:
            log.warning("temp_cleanup_failed", path=temp_path, error=str(cleanup_exc))
        log.error("atomic_write_failed", path=relative_path, record_id=record_id, error=str(exc))
        raise WriteFailure(relative_path, record_id, exc) from exc
