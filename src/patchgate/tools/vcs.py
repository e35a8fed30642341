"""Process execution and git helpers for committing and pushing edits.

Every child process is started from an argument vector with an explicit
working directory; no command line is ever handed to a shell.
:func:`sanitize_for_display` exists only to render arguments in logs and
error messages and its output never reaches a process.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import shlex
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Sequence

from ..config import PatchGateConfig
from ..errors import ErrorKind, PushError, ShellError, ValidationError
from ..schema import CommitRequest, PushAttempt
from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")
_UNSAFE_REF = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]|\.\.|@\{")
DISPLAY_LIMIT = 200
ELLIPSIS = "..."


def normalise_commit_message(message: str, max_length: int) -> str:
    """Collapse control characters, trim and cap ``message``.

    Raises :class:`ValidationError` with kind ``EMPTY_MESSAGE`` when nothing
    printable remains.
    """

    cleaned = _CONTROL_CHARS.sub(" ", message or "").strip()
    cleaned = re.sub(r" {2,}", " ", cleaned)
    if not cleaned:
        raise ValidationError("Commit message cannot be empty", kind=ErrorKind.EMPTY_MESSAGE)
    limit = max(1, max_length)
    if len(cleaned) > limit:
        if limit > len(ELLIPSIS):
            cleaned = cleaned[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS
        else:
            cleaned = cleaned[:limit]
    return cleaned


def sanitize_for_display(value: str, max_length: int = DISPLAY_LIMIT) -> str:
    """Return a shell-quoted, single-line rendering of ``value`` for diagnostics."""

    text = str(value).replace("\x00", "")
    text = text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    if len(text) > max_length:
        text = text[: max(0, max_length - len(ELLIPSIS))] + ELLIPSIS
    return shlex.quote(text)


def _display_command(command: Sequence[str]) -> str:
    return " ".join(sanitize_for_display(part) for part in command)


def _check_ref_name(branch: str) -> None:
    if not branch or branch.startswith("-") or branch.endswith((".", "/", ".lock")) or _UNSAFE_REF.search(branch):
        raise ValidationError(f"Invalid branch name: {sanitize_for_display(branch)}")


class SafeProcessExecutor:
    """Run git (or another program) without a shell, bounded by a timeout."""

    def __init__(self, config: PatchGateConfig | None = None, *, program: str | None = None) -> None:
        self.config = config or PatchGateConfig()
        self.program = program or self.config.git_operations.git_binary

    @property
    def timeout_seconds(self) -> float:
        return self.config.git_operations.command_timeout_ms / 1000

    async def execute(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str,
        capture_output: bool = True,
        check: bool = True,
        program: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``[program, *args]`` in ``cwd`` and return the completed process."""

        command = [program or self.program, *[str(arg) for arg in args]]
        display = _display_command(command)
        stdout_target = asyncio.subprocess.PIPE if capture_output else asyncio.subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ShellError(
                f"Executable not found for {display}: {error}",
                exit_code=127,
                args=tuple(command),
            ) from error

        try:
            raw_stdout, raw_stderr = await asyncio.wait_for(process.communicate(), self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ShellError(
                f"{display} timed out after {self.config.git_operations.command_timeout_ms}ms",
                exit_code=None,
                args=tuple(command),
            ) from None
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout = raw_stdout.decode("utf-8", errors="replace") if raw_stdout else ""
        stderr = raw_stderr.decode("utf-8", errors="replace") if raw_stderr else ""
        result = subprocess.CompletedProcess(command, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = stderr.strip() or stdout.strip() or "unknown error"
            raise ShellError(
                f"{display} failed with exit code {result.returncode}: {message}",
                exit_code=result.returncode,
                args=tuple(command),
                stdout=stdout,
                stderr=stderr,
            )
        LOGGER.debug("%s exited with %s", display, result.returncode)
        return result

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str,
        capture_output: bool = True,
        check: bool = True,
    ) -> str | None:
        """Run a command and return its decoded stdout when captured."""

        result = await self.execute(args, cwd=cwd, capture_output=capture_output, check=check)
        return result.stdout if capture_output else None

    # ---------------------------------------------------------------- commits
    async def commit(self, message: str, *, allow_empty: bool = False, cwd: Path | str) -> str:
        """Create a commit and return the new ``HEAD`` sha."""

        limit = self.config.git_operations.max_commit_message_length
        text = normalise_commit_message(message, limit)
        args: List[str] = ["commit"]
        if allow_empty:
            args.append("--allow-empty")
        args.extend(["-m", text])
        await self.run(args, cwd=cwd)
        sha = (await self.run(["rev-parse", "HEAD"], cwd=cwd) or "").strip()
        emit_event("git_commit_created", sha=sha, message=sanitize_for_display(text), allow_empty=allow_empty)
        return sha

    async def commit_request(self, request: CommitRequest) -> str:
        return await self.commit(request.message, allow_empty=request.allow_empty, cwd=request.working_dir)

    # ---------------------------------------------------------------- helpers
    async def stage(self, paths: Sequence[Path | str], *, cwd: Path | str) -> None:
        if not paths:
            return
        await self.run(["add", "--", *[str(path) for path in paths]], cwd=cwd)

    async def has_staged_changes(self, *, cwd: Path | str) -> bool:
        result = await self.execute(["diff", "--cached", "--quiet"], cwd=cwd, check=False)
        if result.returncode not in (0, 1):
            message = result.stderr.strip() or "unknown error"
            raise ShellError(
                f"git diff --cached failed: {message}",
                exit_code=result.returncode,
                args=tuple(result.args),
                stderr=result.stderr,
            )
        return result.returncode == 1

    async def staged_diff(self, *, cwd: Path | str) -> str:
        return await self.run(["diff", "--cached"], cwd=cwd) or ""

    async def set_user(self, *, cwd: Path | str, email: str, name: str) -> None:
        await self.run(["config", "user.email", email], cwd=cwd)
        await self.run(["config", "user.name", name], cwd=cwd)

    async def current_branch(self, *, cwd: Path | str) -> str | None:
        result = await self.execute(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=cwd, check=False)
        branch = result.stdout.strip()
        return branch if result.returncode == 0 and branch else None

    async def push(
        self,
        *,
        cwd: Path | str,
        branch: str,
        remote: str | None = None,
        set_upstream: bool = False,
    ) -> None:
        _check_ref_name(branch)
        target = remote or self.config.git_operations.remote
        if not target or target.startswith("-"):
            raise ValidationError(f"Invalid remote name: {sanitize_for_display(target)}")
        args: List[str] = ["push"]
        if set_upstream:
            args.append("--set-upstream")
        args.extend([target, branch])
        await self.run(args, cwd=cwd)


class GitPushRetrier:
    """Push with exponential backoff, one attempt sequence per branch at a time."""

    def __init__(
        self,
        executor: SafeProcessExecutor,
        config: PatchGateConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.executor = executor
        self.config = config or executor.config
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, branch: str) -> asyncio.Lock:
        lock = self._locks.get(branch)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[branch] = lock
        return lock

    def backoff_ms(self, attempt: int, base_delay_ms: int | None = None) -> int:
        """Delay to observe after failed ``attempt`` (1-based)."""

        git = self.config.git_operations
        base = git.base_delay_ms if base_delay_ms is None else base_delay_ms
        bound = min(base * 2 ** (attempt - 1), git.max_delay_ms)
        if git.jitter_ms > 0:
            bound = min(bound + self._rng.randint(0, git.jitter_ms), max(bound, git.max_delay_ms))
        return bound

    async def push(
        self,
        cwd: Path | str,
        branch: str,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
    ) -> List[PushAttempt]:
        """Push ``branch`` and return the attempt history, or raise :class:`PushError`."""

        git = self.config.git_operations
        attempts_allowed = max(1, git.max_attempts if max_attempts is None else max_attempts)
        history: List[PushAttempt] = []
        async with self._lock_for(branch):
            delay_before = 0
            last_error: str | None = None
            for attempt in range(1, attempts_allowed + 1):
                try:
                    await self.executor.push(cwd=cwd, branch=branch, remote=git.remote)
                except ShellError as error:
                    last_error = error.stderr.strip() or str(error)
                    history.append(
                        PushAttempt(
                            branch=branch,
                            attempt_number=attempt,
                            delay_before_ms=delay_before,
                            succeeded=False,
                            error=last_error,
                        )
                    )
                    delay = self.backoff_ms(attempt, base_delay_ms)
                    emit_event(
                        "git_push_retry",
                        level=logging.WARNING,
                        branch=branch,
                        attempt=attempt,
                        max_attempts=attempts_allowed,
                        delay_ms=delay,
                        error=sanitize_for_display(last_error),
                    )
                    await self._sleep(delay / 1000)
                    delay_before = delay
                    continue
                history.append(
                    PushAttempt(
                        branch=branch,
                        attempt_number=attempt,
                        delay_before_ms=delay_before,
                        succeeded=True,
                    )
                )
                emit_event("git_push_succeeded", branch=branch, attempts=attempt)
                return history

        emit_event("git_push_failed", level=logging.ERROR, branch=branch, attempts=attempts_allowed)
        raise PushError(
            f"Git push failed after {attempts_allowed} attempts on branch '{branch}': {last_error}",
            branch=branch,
            attempts=attempts_allowed,
            last_error=last_error,
            history=history,
        )


__all__ = [
    "GitPushRetrier",
    "SafeProcessExecutor",
    "normalise_commit_message",
    "sanitize_for_display",
]
