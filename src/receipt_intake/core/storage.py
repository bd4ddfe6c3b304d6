from __future__ import annotations

import asyncio
import errno
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

from receipt_intake.core.errors import FilesystemError, UnsupportedMediaType
from receipt_intake.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
DEFAULT_FILENAME = "receipt.pdf"
UNDATED_SEGMENT = "undated"
UNCATEGORIZED_SEGMENT = "uncategorized"


@dataclass(frozen=True)
class StagedFile:
    sanitized_name: str
    path: Path
    byte_size: int


def sanitize_filename(name: str | None) -> str:
    # Strip any path components and turn whitespace runs into underscores.
    name = (name or "").replace("\\", "/").split("/")[-1].strip()
    name = re.sub(r"\s+", "_", name)
    if name in {"", ".", ".."}:
        return DEFAULT_FILENAME
    return name


def _path_segment(value: str | None, default: str) -> str:
    seg = re.sub(r"[^a-z0-9_-]+", "_", (value or "").strip().lower()).strip("_")
    return seg or default


def _absolute(path: Path) -> Path:
    return path if path.is_absolute() else Path(os.getcwd()) / path


def _same_location(a: Path, b: Path) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))


class FileStaging:
    """
    Two-phase file placement: uploads land in a staging directory and are moved
    into ``<storage_root>/<year>/<category>/<name>`` once extraction succeeds.

    Exactly one physical copy exists per file record; callers write the new path
    to the database only after ``finalize`` returns.
    """

    def __init__(self, *, staging_dir: Path, storage_root: Path):
        self._staging_dir = _absolute(staging_dir)
        self._storage_root = _absolute(storage_root)

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    @property
    def storage_root(self) -> Path:
        return self._storage_root

    async def prepare(self, *, purge_staging: bool = False) -> int:
        await aiofiles.os.makedirs(self._staging_dir, exist_ok=True)
        await aiofiles.os.makedirs(self._storage_root, exist_ok=True)
        if not purge_staging:
            return 0

        purged = 0
        for entry in await aiofiles.os.listdir(self._staging_dir):
            path = self._staging_dir / entry
            if await aiofiles.os.path.isfile(path):
                await aiofiles.os.remove(path)
                purged += 1
        log_event(logger, "staging.purge", staging_dir=str(self._staging_dir), purged=purged)
        return purged

    async def stage(
        self, *, body: bytes, declared_name: str | None, content_type: str | None
    ) -> StagedFile:
        media_type = (content_type or "").split(";")[0].strip().lower()
        if media_type != PDF_CONTENT_TYPE:
            raise UnsupportedMediaType("Only PDF files are allowed!", contentType=content_type)

        start = time.monotonic()
        sanitized = sanitize_filename(declared_name)
        stamp = time.time_ns() // 1_000_000
        try:
            await aiofiles.os.makedirs(self._staging_dir, exist_ok=True)
            attempt = 0
            while True:
                prefix = f"{stamp}" if attempt == 0 else f"{stamp}-{attempt}"
                path = self._staging_dir / f"{prefix}-{sanitized}"
                try:
                    async with aiofiles.open(path, "xb") as fh:
                        await fh.write(body)
                    break
                except FileExistsError:
                    attempt += 1
        except OSError as e:
            log_exception(
                logger,
                "staging.put.failure",
                filename=sanitized,
                byte_size=len(body),
            )
            raise FilesystemError(f"Could not stage upload: {e}") from e

        log_event(
            logger,
            "staging.put.success",
            filename=sanitized,
            path=str(path),
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StagedFile(sanitized_name=sanitized, path=path, byte_size=len(body))

    def destination(self, *, year: str | None, category: str | None, sanitized_name: str) -> Path:
        return (
            self._storage_root
            / _path_segment(year, UNDATED_SEGMENT)
            / _path_segment(category, UNCATEGORIZED_SEGMENT)
            / sanitize_filename(sanitized_name)
        )

    async def finalize(
        self,
        *,
        staged_path: Path | str,
        year: str | None,
        category: str | None,
        sanitized_name: str,
    ) -> Path:
        src = Path(staged_path)
        dest = self.destination(year=year, category=category, sanitized_name=sanitized_name)

        if _same_location(src, dest):
            # Re-processing into the slot the file already occupies.
            return dest

        start = time.monotonic()
        try:
            if not await aiofiles.os.path.isfile(src):
                raise FilesystemError(f"Source file is missing: {src}", path=str(src))
            await aiofiles.os.makedirs(dest.parent, exist_ok=True)
            # Last processed wins.
            if await aiofiles.os.path.exists(dest):
                await aiofiles.os.remove(dest)
            await _move(src, dest)
        except OSError as e:
            log_exception(
                logger,
                "staging.finalize.failure",
                source_path=str(src),
                dest_path=str(dest),
            )
            raise FilesystemError(f"Could not move file into storage: {e}", path=str(src)) from e

        log_event(
            logger,
            "staging.finalize.success",
            source_path=str(src),
            dest_path=str(dest),
            duration_ms=monotonic_ms(start),
        )
        return dest

    async def exists(self, path: Path | str) -> bool:
        return await aiofiles.os.path.isfile(Path(path))

    def is_staged(self, path: Path | str) -> bool:
        return _same_location(Path(path).parent, self._staging_dir)

    async def remove(self, path: Path | str) -> bool:
        """Best-effort delete; returns whether a file was removed."""
        target = Path(path)
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            return False
        except OSError:
            log_exception(logger, "storage.delete.failure", path=str(target))
            return False
        log_event(logger, "storage.delete.success", path=str(target))
        return True


async def _move(src: Path, dest: Path) -> None:
    try:
        await aiofiles.os.replace(src, dest)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        await asyncio.to_thread(shutil.move, str(src), str(dest))
