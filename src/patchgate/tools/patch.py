"""Apply search/replace edit blocks to files with backup and rollback.

Each mutation walks ``PENDING -> LOCATED -> BACKED_UP -> WRITTEN -> VERIFIED
-> COMMITTED``.  A failed integrity check after the write moves it to
``ROLLED_BACK`` and leaves the file byte-identical to its prior state.
Writes to the same path are serialised through a per-path lock.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Dict

from ..config import PatchGateConfig
from ..edit_blocks import path_violation
from ..errors import ApplyError, ErrorKind, ValidationError
from ..policy.validator import check_integrity, locate_search
from ..schema import BackupRecord, EditBlock, PatchOutcome
from ..telemetry import emit_event
from .backup import BackupStore

LOGGER = logging.getLogger(__name__)


class ApplyState(str, Enum):
    """Lifecycle of a single file mutation."""

    PENDING = "pending"
    LOCATED = "located"
    BACKED_UP = "backed_up"
    WRITTEN = "written"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class PatchApplier:
    """Apply edit blocks beneath ``root`` using a :class:`BackupStore`."""

    def __init__(
        self,
        root: Path | str,
        config: PatchGateConfig | None = None,
        backup_store: BackupStore | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config or PatchGateConfig()
        self.backups = backup_store or BackupStore(self.root, self.config)
        self.states: Dict[str, ApplyState] = {}
        self._locks: Dict[Path, asyncio.Lock] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    def _transition(self, block: EditBlock, state: ApplyState) -> ApplyState:
        self.states[block.file_path] = state
        return state

    def _failure(
        self,
        block: EditBlock,
        state: ApplyState,
        kind: ErrorKind,
        message: str,
        *,
        rolled_back: bool = False,
    ) -> ApplyError:
        emit_event(
            "patch_apply_failed",
            level=logging.WARNING,
            file_path=block.file_path,
            block_index=block.index,
            state=state,
            kind=kind,
            reason=message,
            rolled_back=rolled_back,
        )
        return ApplyError(message, kind=kind, file_path=block.file_path, rolled_back=rolled_back)

    async def apply(self, block: EditBlock) -> PatchOutcome:
        """Apply ``block`` and return a successful outcome or raise :class:`ApplyError`."""

        violation = path_violation(block.file_path, self.root)
        if violation is not None:
            raise ValidationError(violation, details={"file_path": block.file_path})
        target = (self.root / block.file_path).resolve()
        async with self._lock_for(target):
            return await self._apply_locked(block, target)

    async def _apply_locked(self, block: EditBlock, target: Path) -> PatchOutcome:
        options = self.config.file_operations
        state = self._transition(block, ApplyState.PENDING)
        emit_event("patch_apply_started", file_path=block.file_path, block_index=block.index)

        if await asyncio.to_thread(target.is_dir):
            raise self._failure(block, state, ErrorKind.NOT_FOUND, f"Path is a directory, not a file: {block.file_path}")
        exists = await asyncio.to_thread(target.is_file)
        original_bytes: bytes | None = None
        original = ""
        if exists:
            original_bytes = await asyncio.to_thread(target.read_bytes)
            try:
                original = original_bytes.decode("utf-8")
            except UnicodeDecodeError:
                raise self._failure(
                    block, state, ErrorKind.NO_MATCH, f"File is not UTF-8 text: {block.file_path}"
                ) from None

        if not exists and not block.is_insert:
            raise self._failure(block, state, ErrorKind.NOT_FOUND, f"File not found: {block.file_path}")

        if block.is_insert:
            if original:
                raise self._failure(
                    block,
                    state,
                    ErrorKind.NO_MATCH,
                    f"Empty search text cannot be applied to non-empty file {block.file_path}",
                )
            updated = block.replace_text
        else:
            search, replace, count = locate_search(original, block.search_text, block.replace_text)
            if count == 0:
                raise self._failure(
                    block, state, ErrorKind.NO_MATCH, f"Search text not found in {block.file_path}"
                )
            if count > 1 and not options.allow_first_match:
                raise self._failure(
                    block,
                    state,
                    ErrorKind.AMBIGUOUS,
                    f"Search text matches {count} locations in {block.file_path}",
                )
            updated = original.replace(search, replace, 1)
        state = self._transition(block, ApplyState.LOCATED)

        record: BackupRecord | None = None
        if options.enable_backups and exists:
            record = await self.backups.snapshot(target)
            state = self._transition(block, ApplyState.BACKED_UP)

        # from here on the file may differ from its prior state until verified
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, updated.encode("utf-8"))
            state = self._transition(block, ApplyState.WRITTEN)
            problem = check_integrity(block.file_path, original, updated)
        except OSError as error:
            await self._rollback(block, target, record, original_bytes)
            raise self._failure(
                block,
                ApplyState.ROLLED_BACK,
                ErrorKind.IO,
                f"Failed to write {block.file_path}: {error}",
                rolled_back=True,
            ) from error
        except BaseException:
            await self._rollback(block, target, record, original_bytes)
            raise
        if problem is not None:
            await self._rollback(block, target, record, original_bytes)
            raise self._failure(
                block, ApplyState.ROLLED_BACK, ErrorKind.INTEGRITY_FAILED, problem, rolled_back=True
            )
        self._transition(block, ApplyState.VERIFIED)
        state = self._transition(block, ApplyState.COMMITTED)

        emit_event(
            "patch_apply_succeeded",
            file_path=block.file_path,
            block_index=block.index,
            state=state,
            created=not exists,
            backup_path=record.backup_path if record else None,
        )
        LOGGER.info("Applied edit block %d to %s", block.index, block.file_path)
        return PatchOutcome(
            file_path=block.file_path,
            applied=True,
            block_index=block.index,
            backup_path=record.backup_path if record else None,
        )

    async def _rollback(
        self,
        block: EditBlock,
        target: Path,
        record: BackupRecord | None,
        original_bytes: bytes | None,
    ) -> None:
        if record is not None:
            await self.backups.restore(record)
        elif original_bytes is not None:
            await asyncio.to_thread(target.write_bytes, original_bytes)
        elif await asyncio.to_thread(target.is_file):
            await asyncio.to_thread(target.unlink)
        self._transition(block, ApplyState.ROLLED_BACK)
        emit_event(
            "patch_rolled_back",
            level=logging.WARNING,
            file_path=block.file_path,
            block_index=block.index,
            restored_from=record.backup_path if record else None,
        )


__all__ = ["ApplyState", "PatchApplier"]
