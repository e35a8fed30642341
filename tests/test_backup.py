from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path

import pytest

from patchgate.config import FileOperationsConfig, PatchGateConfig
from patchgate.schema import BackupRecord
from patchgate.tools.backup import BACKUP_DIR_NAME, BackupStore, BackupSweeper


class _Clock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _config(**file_options: object) -> PatchGateConfig:
    return PatchGateConfig(file_operations=FileOperationsConfig(**file_options))


@pytest.mark.asyncio
async def test_snapshot_creates_named_backup_and_gitignore(tmp_path: Path) -> None:
    target = tmp_path / "hello.txt"
    target.write_text("Hello World\n", encoding="utf-8")
    store = BackupStore(tmp_path)

    record = await store.snapshot("hello.txt")

    assert record.original_path == target.resolve()
    assert record.backup_path.parent == tmp_path.resolve() / BACKUP_DIR_NAME
    assert re.fullmatch(r"hello\.txt\.\d+", record.backup_path.name)
    assert record.backup_path.read_text(encoding="utf-8") == "Hello World\n"
    assert (tmp_path / BACKUP_DIR_NAME / ".gitignore").read_text(encoding="utf-8").strip() == "*"
    assert store.records() == [record]


@pytest.mark.asyncio
async def test_restore_is_byte_for_byte(tmp_path: Path) -> None:
    target = tmp_path / "data.bin"
    original = b"line one\r\nline two\x00\xff\n"
    target.write_bytes(original)
    store = BackupStore(tmp_path)

    record = await store.snapshot(target)
    target.write_bytes(b"clobbered")
    await store.restore(record)

    assert target.read_bytes() == original
    assert not record.backup_path.exists()
    assert store.records() == []


@pytest.mark.asyncio
async def test_restore_can_keep_backup(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("a", encoding="utf-8")
    store = BackupStore(tmp_path)

    record = await store.snapshot("a.txt")
    await store.restore(record, discard=False)

    assert record.backup_path.exists()
    assert store.records("a.txt") == [record]


@pytest.mark.asyncio
async def test_name_clash_bumps_timestamp(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    store = BackupStore(tmp_path)

    records = await asyncio.gather(*(store.snapshot("a.txt") for _ in range(4)))

    names = {record.backup_path.name for record in records}
    assert len(names) == 4


@pytest.mark.asyncio
async def test_max_backups_per_file_drops_oldest(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    store = BackupStore(tmp_path, _config(max_backups_per_file=2))

    created = []
    for version in range(3):
        target.write_text(f"v{version}", encoding="utf-8")
        created.append(await store.snapshot("a.txt"))

    remaining = store.records("a.txt")
    assert remaining == created[1:]
    assert not created[0].backup_path.exists()
    assert [record.backup_path.read_text(encoding="utf-8") for record in remaining] == ["v1", "v2"]


@pytest.mark.asyncio
async def test_purge_expired_respects_ttl(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    clock = _Clock()
    store = BackupStore(tmp_path, _config(backup_ttl_ms=2_000), clock=clock)
    record = await store.snapshot("a.txt")

    clock.now += 1.0
    assert await store.purge_expired() == []
    assert record.backup_path.exists()

    clock.now += 1.5
    assert await store.purge_expired() == [record]
    assert not record.backup_path.exists()
    assert store.records() == []


@pytest.mark.asyncio
async def test_prune_orphans_removes_only_old_untracked(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    store = BackupStore(tmp_path)
    tracked = await store.snapshot("a.txt")

    backup_dir = tmp_path.resolve() / BACKUP_DIR_NAME
    stale = backup_dir / "old.txt.1000"
    stale.write_text("old", encoding="utf-8")
    fresh = backup_dir / "new.txt.2000"
    fresh.write_text("new", encoding="utf-8")
    an_hour_ago = time.time() - 3_600
    os.utime(stale, (an_hour_ago, an_hour_ago))
    os.utime(tracked.backup_path, (an_hour_ago, an_hour_ago))

    removed = await store.prune_orphans(max_age_seconds=60)

    assert removed == [stale]
    assert fresh.exists()
    assert tracked.backup_path.exists()
    assert (backup_dir / ".gitignore").exists()


@pytest.mark.asyncio
async def test_prune_orphans_without_directory(tmp_path: Path) -> None:
    assert await BackupStore(tmp_path).prune_orphans() == []


@pytest.mark.asyncio
async def test_sweeper_purges_in_background(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    store = BackupStore(tmp_path, _config(backup_ttl_ms=0))
    record = await store.snapshot("a.txt")

    async with BackupSweeper(store, interval_seconds=0.01) as sweeper:
        assert sweeper.running
        for _ in range(100):
            if not store.records():
                break
            await asyncio.sleep(0.01)

    assert not sweeper.running
    assert sweeper.sweeps >= 1
    assert not record.backup_path.exists()


@pytest.mark.asyncio
async def test_sweeper_stop_is_idempotent(tmp_path: Path) -> None:
    sweeper = BackupSweeper(BackupStore(tmp_path), interval_seconds=10)

    sweeper.start()
    sweeper.start()
    await sweeper.stop()
    await sweeper.stop()

    assert not sweeper.running


class _BrokenOnceStore(BackupStore):
    """Store whose first purge raises a non-filesystem error."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.purges = 0

    async def purge_expired(self, now: float | None = None) -> list[BackupRecord]:
        self.purges += 1
        if self.purges == 1:
            raise RuntimeError("clock went backwards")
        return []


@pytest.mark.asyncio
async def test_sweeper_survives_unexpected_errors(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="patchgate.tools.backup")
    store = _BrokenOnceStore(tmp_path)

    async with BackupSweeper(store, interval_seconds=0.01) as sweeper:
        for _ in range(100):
            if store.purges >= 3:
                break
            await asyncio.sleep(0.01)
        assert sweeper.running

    assert store.purges >= 3
    assert any("Unexpected error during backup sweep" in record.getMessage() for record in caplog.records)
