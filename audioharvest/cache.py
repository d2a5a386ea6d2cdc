"""
Content-addressable result cache.

Every finished artifact lives at ``<cache_dir>/<sha1><extension>``. Entries
are immutable once written: populate copies into a private temporary name
and then hard-links it into place, so a concurrent producer that loses the
race sees ``FileExistsError`` and simply keeps the winner's file.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from .errors import CacheWriteError
from .models import CacheEntry, Quality

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"


@dataclass
class SweepReport:
    deleted: int = 0
    kept: int = 0
    errors: int = 0


class ResultCache:
    def __init__(
        self,
        directory: Path,
        *,
        extension: str = ".mp3",
        max_age_seconds: float = 7 * 24 * 3600,
        sweep_interval_seconds: float = 24 * 3600,
    ) -> None:
        self.directory = Path(directory)
        self.extension = extension
        self.max_age_seconds = max_age_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sweeper: Optional["asyncio.Task[None]"] = None

    @staticmethod
    def key_for(normalized_reference: str, quality: Quality) -> str:
        value = f"{normalized_reference.strip()}::{Quality(quality).value}"
        return hashlib.sha1(value.encode("utf-8")).hexdigest()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.extension}"

    def _entry(self, key: str, path: Path) -> Optional[CacheEntry]:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if stat.st_size == 0:
            return None
        return CacheEntry(key=key, file_path=path, created_at=stat.st_mtime, size_bytes=stat.st_size)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entry(key, self.path_for(key))
        logger.debug("Cache %s for %s", "hit" if entry else "miss", key)
        return entry

    def populate(self, key: str, source: Path) -> CacheEntry:
        """Copy ``source`` in under ``key``; an existing entry always wins."""
        target = self.path_for(key)
        existing = self._entry(key, target)
        if existing:
            logger.info("Cache entry %s already present, skipping populate", key)
            return existing

        temp_path = self.directory / f"{TEMP_PREFIX}{uuid.uuid4().hex}{self.extension}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, temp_path)
            try:
                os.link(temp_path, target)
            except FileExistsError:
                logger.info("Concurrent populate for %s won the race, keeping its file", key)
            except OSError:
                # Filesystems without hard links: recheck, then rename into place.
                if not target.exists():
                    os.replace(temp_path, target)
        except OSError as exc:
            raise CacheWriteError(f"Could not store result in cache: {exc}") from exc
        finally:
            temp_path.unlink(missing_ok=True)

        entry = self._entry(key, target)
        if entry is None:
            raise CacheWriteError(f"Cache entry {key} vanished right after populate")
        logger.info("Cached %s (%d bytes)", target.name, entry.size_bytes)
        return entry

    def remove(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def entries(self) -> List[CacheEntry]:
        if not self.directory.exists():
            return []
        items: List[CacheEntry] = []
        for path in self.directory.glob(f"*{self.extension}"):
            if path.name.startswith(TEMP_PREFIX) or not path.is_file():
                continue
            entry = self._entry(path.stem, path)
            if entry:
                items.append(entry)
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        """Delete files older than ``max_age_seconds`` by mtime."""
        report = SweepReport()
        if not self.directory.exists():
            logger.info("Cache directory %s does not exist yet, nothing to sweep", self.directory)
            return report
        current = time.time() if now is None else now
        for path in self.directory.iterdir():
            try:
                if path.is_dir():
                    continue
                age = current - path.stat().st_mtime
                if age > self.max_age_seconds:
                    path.unlink()
                    report.deleted += 1
                else:
                    report.kept += 1
            except OSError as exc:
                report.errors += 1
                logger.warning("Could not sweep %s: %s", path.name, exc)
        logger.info(
            "Cache sweep finished: %d deleted, %d kept, %d errors",
            report.deleted,
            report.kept,
            report.errors,
        )
        return report

    async def _sweep_forever(self) -> None:
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except Exception as exc:
                logger.warning("Cache sweep failed: %s", exc)
            await asyncio.sleep(self.sweep_interval_seconds)

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.ensure_future(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
