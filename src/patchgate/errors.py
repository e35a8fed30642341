"""Error taxonomy shared by the patch pipeline.

Every failure raised by the pipeline carries an :class:`ErrorKind` so callers
can branch on the kind instead of inspecting messages.  Block-level kinds
(``PARSE``, ``VALIDATION``, ``INTERNAL``, the ``ApplyError`` family) are
collected into the outcome report; ``SHELL`` and ``PUSH`` abort the run.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Sequence


class ErrorKind(str, Enum):
    """Discriminator for every error the pipeline can surface."""

    PARSE = "parse"
    VALIDATION = "validation"
    EMPTY_MESSAGE = "empty_message"
    NOT_FOUND = "not_found"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"
    INTEGRITY_FAILED = "integrity_failed"
    IO = "io"
    INTERNAL = "internal"
    DEADLINE = "deadline"
    SHELL = "shell"
    PUSH = "push"

    @property
    def block_level(self) -> bool:
        return self not in {ErrorKind.SHELL, ErrorKind.PUSH}


APPLY_KINDS = frozenset(
    {
        ErrorKind.NOT_FOUND,
        ErrorKind.NO_MATCH,
        ErrorKind.AMBIGUOUS,
        ErrorKind.INTEGRITY_FAILED,
        ErrorKind.IO,
    }
)


class PatchGateError(RuntimeError):
    """Base class for pipeline failures."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


class ParseError(PatchGateError):
    """Raised (or reported) when a fenced block cannot be parsed."""

    kind = ErrorKind.PARSE

    def __init__(
        self,
        message: str,
        *,
        block_index: int,
        file_path: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.block_index = block_index
        self.file_path = file_path

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_index": self.block_index,
            "file_path": self.file_path,
            "message": str(self),
        }


class ValidationError(PatchGateError):
    """Security, structural or input rejection."""

    kind = ErrorKind.VALIDATION


class ApplyError(PatchGateError):
    """Failure while applying an edit to disk."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        file_path: str,
        rolled_back: bool = False,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        if kind not in APPLY_KINDS:
            raise ValueError(f"{kind!r} is not an apply error kind")
        super().__init__(message, kind=kind, details=details)
        self.file_path = file_path
        self.rolled_back = rolled_back


class ShellError(PatchGateError):
    """Raised when a child process exits non-zero or times out."""

    kind = ErrorKind.SHELL

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None,
        args: tuple[str, ...] = (),
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, details={"exit_code": exit_code, "args": list(args)})
        self.exit_code = exit_code
        self.command = args
        self.stdout = stdout
        self.stderr = stderr

    @property
    def timed_out(self) -> bool:
        return self.exit_code is None


class PushError(PatchGateError):
    """Raised once the push retry budget is exhausted."""

    kind = ErrorKind.PUSH

    def __init__(
        self,
        message: str,
        *,
        branch: str,
        attempts: int,
        last_error: str | None = None,
        history: Sequence[Any] = (),
    ) -> None:
        super().__init__(message, details={"branch": branch, "attempts": attempts, "last_error": last_error})
        self.branch = branch
        self.attempts = attempts
        self.last_error = last_error
        self.history = list(history)


class PipelineError(PatchGateError):
    """Aggregate failure surfaced when commit or push aborts a pipeline run."""

    def __init__(self, message: str, *, cause: PatchGateError, report: Any) -> None:
        super().__init__(message, kind=cause.kind, details={"cause": str(cause)})
        self.cause = cause
        self.report = report


__all__ = [
    "APPLY_KINDS",
    "ApplyError",
    "ErrorKind",
    "ParseError",
    "PatchGateError",
    "PipelineError",
    "PushError",
    "ShellError",
    "ValidationError",
]
