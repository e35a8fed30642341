"""Timestamped file backups with TTL-based cleanup.

Backups live in ``<root>/.backup`` and are named
``<original-filename>.<epoch-ms>``.  A ``.gitignore`` holding ``*`` keeps the
directory out of commits.  Expired backups are removed by
:class:`BackupSweeper`, a background task owned by the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Callable, List

from ..config import PatchGateConfig
from ..schema import BACKUP_DIR_NAME, BackupRecord

LOGGER = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return time.time_ns() // 1_000_000


class BackupStore:
    """Create, restore and expire file snapshots under ``<root>/.backup``."""

    def __init__(
        self,
        root: Path | str,
        config: PatchGateConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config or PatchGateConfig()
        self.directory = self.root / BACKUP_DIR_NAME
        self._clock = clock
        self._records: List[BackupRecord] = []
        self._reserved: set[str] = set()

    @property
    def ttl_seconds(self) -> float:
        return self.config.file_operations.backup_ttl_ms / 1000

    # ----------------------------------------------------------------- helpers
    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        ignore = self.directory / ".gitignore"
        if not ignore.exists():
            ignore.write_text("*\n", encoding="utf-8")

    def _reserve_name(self, original: Path) -> Path:
        stamp = _epoch_ms()
        while True:
            name = f"{original.name}.{stamp}"
            if name not in self._reserved and not (self.directory / name).exists():
                self._reserved.add(name)
                return self.directory / name
            stamp += 1

    def _resolve(self, relative_path: Path | str) -> Path:
        candidate = Path(relative_path)
        return candidate if candidate.is_absolute() else self.root / candidate

    def _forget(self, record: BackupRecord) -> None:
        if record in self._records:
            self._records.remove(record)
        self._reserved.discard(record.backup_path.name)

    # --------------------------------------------------------------------- API
    async def snapshot(self, relative_path: Path | str) -> BackupRecord:
        """Copy the current bytes of ``relative_path`` into the backup directory."""

        original = self._resolve(relative_path)
        await asyncio.to_thread(self._ensure_directory)
        backup_path = self._reserve_name(original)
        try:
            data = await asyncio.to_thread(original.read_bytes)
            await asyncio.to_thread(backup_path.write_bytes, data)
        except OSError:
            self._reserved.discard(backup_path.name)
            raise
        record = BackupRecord(
            original_path=original,
            backup_path=backup_path,
            created_at_monotonic=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        self._records.append(record)
        LOGGER.debug("Backed up %s to %s", original, backup_path)
        await self._enforce_limit(original)
        return record

    async def _enforce_limit(self, original: Path) -> None:
        limit = max(1, self.config.file_operations.max_backups_per_file)
        existing = self.records(original)
        for stale in existing[: max(0, len(existing) - limit)]:
            await self.discard(stale)

    async def restore(self, record: BackupRecord, *, discard: bool = True) -> None:
        """Write the backed-up bytes over the original file."""

        data = await asyncio.to_thread(record.backup_path.read_bytes)
        await asyncio.to_thread(record.original_path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(record.original_path.write_bytes, data)
        LOGGER.info("Restored %s from %s", record.original_path, record.backup_path)
        if discard:
            await self.discard(record)

    async def discard(self, record: BackupRecord) -> None:
        await asyncio.to_thread(record.backup_path.unlink, missing_ok=True)
        self._forget(record)

    def records(self, path: Path | str | None = None) -> List[BackupRecord]:
        """Return live records, oldest first, optionally filtered by original path."""

        if path is None:
            return list(self._records)
        target = self._resolve(path)
        return [record for record in self._records if record.original_path == target]

    async def purge_expired(self, now: float | None = None) -> List[BackupRecord]:
        """Delete every backup whose TTL has elapsed."""

        current = self._clock() if now is None else now
        expired = [record for record in self._records if record.is_expired(current)]
        for record in expired:
            await self.discard(record)
        if expired:
            LOGGER.debug("Purged %d expired backups", len(expired))
        return expired

    async def prune_orphans(self, max_age_seconds: float | None = None) -> List[Path]:
        """Remove untracked backup files older than ``max_age_seconds``.

        Files left behind by earlier processes are not in :meth:`records`;
        their age is judged by modification time.
        """

        age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        tracked = {record.backup_path for record in self._records}
        return await asyncio.to_thread(self._prune_orphans_sync, age, tracked)

    def _prune_orphans_sync(self, max_age_seconds: float, tracked: set[Path]) -> List[Path]:
        if not self.directory.is_dir():
            return []
        cutoff = time.time() - max_age_seconds
        removed: List[Path] = []
        for entry in sorted(self.directory.iterdir()):
            if entry.name == ".gitignore" or entry in tracked or not entry.is_file():
                continue
            if entry.stat().st_mtime <= cutoff:
                entry.unlink(missing_ok=True)
                removed.append(entry)
        if removed:
            LOGGER.info("Pruned %d orphaned backups from %s", len(removed), self.directory)
        return removed


class BackupSweeper:
    """Background task that periodically purges expired backups.

    The sweeper has its own lifecycle and is never cancelled by a pipeline
    run.  Use it as an async context manager or call :meth:`start` and
    :meth:`stop` explicitly.
    """

    def __init__(self, store: BackupStore, *, interval_seconds: float | None = None) -> None:
        self.store = store
        default_interval = store.config.file_operations.sweep_interval_ms / 1000
        self.interval_seconds = interval_seconds if interval_seconds is not None else default_interval
        self._task: asyncio.Task[None] | None = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="patchgate-backup-sweeper")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.store.purge_expired()
            except OSError as error:
                LOGGER.warning("Backup sweep failed: %s", error)
            except Exception:
                LOGGER.exception("Unexpected error during backup sweep")
            self.sweeps += 1

    async def __aenter__(self) -> "BackupSweeper":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = ["BACKUP_DIR_NAME", "BackupStore", "BackupSweeper"]
