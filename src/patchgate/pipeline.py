"""End-to-end pipeline: parse, validate, apply, commit and push.

Blocks are resolved strictly in parser order.  Block-level failures are
collected into the :class:`~patchgate.schema.PipelineReport`; failures while
committing or pushing abort the run with a :class:`~patchgate.errors.PipelineError`
that carries the partial report.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import PatchGateConfig
from .edit_blocks import EditBlockParser
from .errors import ApplyError, ErrorKind, ParseError, PipelineError, PushError, ShellError, ValidationError
from .policy.validator import PatchValidator
from .schema import EditBlock, PatchOutcome, PipelineReport, ValidationResult
from .telemetry import emit_event
from .tools.backup import BackupStore
from .tools.patch import PatchApplier
from .tools.vcs import GitPushRetrier, SafeProcessExecutor, normalise_commit_message

LOGGER = logging.getLogger(__name__)

DEADLINE_REASON = "deadline exceeded"


class PatchPipeline:
    """Drive a model response through every stage against ``root``."""

    def __init__(
        self,
        config: PatchGateConfig,
        root: Path | str,
        executor: SafeProcessExecutor | None = None,
        retrier: GitPushRetrier | None = None,
        backup_store: BackupStore | None = None,
    ) -> None:
        self.config = config
        self.root = Path(root).resolve()
        self.backups = backup_store or BackupStore(self.root, config)
        self.parser = EditBlockParser(self.root)
        self.validator = PatchValidator(config)
        self.applier = PatchApplier(self.root, config, self.backups)
        self.executor = executor or SafeProcessExecutor(config)
        self.retrier = retrier or GitPushRetrier(self.executor, config)

    async def _read_current(self, block: EditBlock) -> str | None:
        target = self.root / block.file_path
        if not await asyncio.to_thread(target.is_file):
            return None
        data = await asyncio.to_thread(target.read_bytes)
        return data.decode("utf-8", errors="replace")

    def _failed_outcome(
        self, block: EditBlock, error: BaseException, validation: ValidationResult | None = None
    ) -> PatchOutcome:
        if isinstance(error, ApplyError):
            kind = error.kind
        elif isinstance(error, ValidationError):
            kind = ErrorKind.VALIDATION
        elif isinstance(error, OSError):
            kind = ErrorKind.IO
        else:
            LOGGER.error(
                "Unexpected error in edit block %d for %s", block.index, block.file_path, exc_info=error
            )
            kind = ErrorKind.INTERNAL
        return PatchOutcome(
            file_path=block.file_path,
            applied=False,
            reason=str(error) or type(error).__name__,
            kind=kind,
            block_index=block.index,
            validation=validation,
        )

    async def _apply(
        self, block: EditBlock, validation: ValidationResult, deadline: float | None
    ) -> tuple[PatchOutcome, bool]:
        """Apply ``block``; the deadline never cancels an apply in flight.

        ``asyncio.wait`` leaves the task running on timeout, so a late apply
        still finishes its verify or rollback step before the run moves on.
        """

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(self.applier.apply(block))
        timeout = None if deadline is None else max(0.0, deadline - loop.time())
        done, _ = await asyncio.wait({task}, timeout=timeout)
        timed_out = not done
        if timed_out:
            LOGGER.warning("Deadline reached while applying %s; waiting for it to settle", block.file_path)
            await asyncio.wait({task})

        error = task.exception()
        if error is not None:
            return self._failed_outcome(block, error, validation), timed_out
        outcome = task.result()
        outcome.validation = validation
        return outcome, timed_out

    async def _process_block(self, block: EditBlock, deadline: float | None) -> tuple[PatchOutcome, bool]:
        try:
            current = await self._read_current(block)
            validation = self.validator.validate(block.file_path, block.search_text, block.replace_text, current)
        except Exception as error:
            return self._failed_outcome(block, error), False
        if not validation.is_valid:
            LOGGER.info("Rejected edit block %d for %s: %s", block.index, block.file_path, "; ".join(validation.errors))
            emit_event(
                "patch_validation_failed",
                file_path=block.file_path,
                block_index=block.index,
                validation=validation,
            )
            return (
                PatchOutcome(
                    file_path=block.file_path,
                    applied=False,
                    reason="; ".join(validation.errors) or "validation failed",
                    kind=ErrorKind.VALIDATION,
                    block_index=block.index,
                    validation=validation,
                ),
                False,
            )
        for warning in validation.warnings:
            LOGGER.warning("%s: %s", block.file_path, warning)
        return await self._apply(block, validation, deadline)

    async def run(
        self,
        response_text: str,
        *,
        commit_message: str,
        branch: str | None = None,
        commit: bool = True,
        push: bool = True,
        allow_empty: bool = False,
        deadline_seconds: float | None = None,
    ) -> PipelineReport:
        """Process ``response_text`` and return the run report."""

        git = self.config.git_operations
        if commit:
            normalise_commit_message(commit_message, git.max_commit_message_length)

        loop = asyncio.get_running_loop()
        deadline = None if deadline_seconds is None else loop.time() + deadline_seconds
        report = PipelineReport()
        emit_event("pipeline_started", root=self.root, commit=commit, push=push)

        for item in self.parser.iter_parse(response_text):
            if isinstance(item, ParseError):
                report.parse_errors.append(item)
                report.outcomes.append(
                    PatchOutcome(
                        file_path=item.file_path or "",
                        applied=False,
                        reason=str(item),
                        kind=ErrorKind.PARSE,
                        block_index=item.block_index,
                    )
                )
                continue
            if deadline is not None and (report.deadline_exceeded or loop.time() >= deadline):
                report.deadline_exceeded = True
                report.outcomes.append(
                    PatchOutcome(
                        file_path=item.file_path,
                        applied=False,
                        reason=DEADLINE_REASON,
                        kind=ErrorKind.DEADLINE,
                        block_index=item.index,
                    )
                )
                continue
            outcome, timed_out = await self._process_block(item, deadline)
            report.outcomes.append(outcome)
            if timed_out:
                report.deadline_exceeded = True

        applied = report.applied_paths
        if commit and (applied or allow_empty):
            await self._commit(report, applied, commit_message, allow_empty)
        if push and report.committed:
            await self._push(report, branch)

        emit_event(
            "pipeline_completed",
            applied=len(applied),
            failed=len(report.failed),
            committed=report.committed,
            pushed=report.pushed,
            deadline_exceeded=report.deadline_exceeded,
        )
        return report

    async def _commit(self, report: PipelineReport, applied: list[str], message: str, allow_empty: bool) -> None:
        try:
            if applied:
                await self.executor.stage(applied, cwd=self.root)
            if not allow_empty and not await self.executor.has_staged_changes(cwd=self.root):
                LOGGER.info("Applied edits produced no staged changes; skipping commit")
                return
            report.commit_sha = await self.executor.commit(message, allow_empty=allow_empty, cwd=self.root)
            report.committed = True
        except (ShellError, ValidationError) as error:
            raise PipelineError(f"Commit failed: {error}", cause=error, report=report) from error

    async def _push(self, report: PipelineReport, branch: str | None) -> None:
        try:
            target = branch or await self.executor.current_branch(cwd=self.root) or self.config.git_operations.default_branch
            report.branch = target
            report.push_attempts = await self.retrier.push(self.root, target)
            report.pushed = True
        except PushError as error:
            report.push_attempts = list(error.history)
            raise PipelineError(str(error), cause=error, report=report) from error
        except (ShellError, ValidationError) as error:
            raise PipelineError(f"Push failed: {error}", cause=error, report=report) from error


__all__ = ["DEADLINE_REASON", "PatchPipeline"]
