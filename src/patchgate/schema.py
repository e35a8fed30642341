"""Typed records that flow through the patch pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import ErrorKind, ParseError

BACKUP_DIR_NAME = ".backup"


class Complexity(str, Enum):
    """Reporting bucket for the size/branching of a replacement."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class EditBlock:
    """Request to replace an exact span of text in a named file."""

    file_path: str
    search_text: str
    replace_text: str
    index: int = 0

    @property
    def is_insert(self) -> bool:
        """Empty search text means the block creates the file."""
        return self.search_text == ""


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Verdict produced by :class:`patchgate.policy.validator.PatchValidator`."""

    is_valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    security_score: int = 100
    syntax_valid: bool = True
    complexity: Complexity = Complexity.LOW
    matched_patterns: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "security_score": self.security_score,
            "syntax_valid": self.syntax_valid,
            "complexity": self.complexity.value,
            "matched_patterns": list(self.matched_patterns),
        }


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """Snapshot of a file taken immediately before it was mutated."""

    original_path: Path
    backup_path: Path
    created_at_monotonic: float
    ttl_seconds: float

    @property
    def expires_at(self) -> float:
        return self.created_at_monotonic + self.ttl_seconds

    def is_expired(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current >= self.expires_at


@dataclass(slots=True)
class PatchOutcome:
    """Result of processing a single edit block."""

    file_path: str
    applied: bool
    reason: str | None = None
    kind: ErrorKind | None = None
    block_index: int = 0
    backup_path: Path | None = None
    validation: ValidationResult | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "applied": self.applied,
            "reason": self.reason,
            "kind": self.kind.value if self.kind else None,
            "block_index": self.block_index,
            "backup_path": self.backup_path.as_posix() if self.backup_path else None,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(frozen=True, slots=True)
class CommitRequest:
    """Commit to create once all blocks of a run are resolved."""

    message: str
    working_dir: Path
    allow_empty: bool = False


@dataclass(frozen=True, slots=True)
class PushAttempt:
    """One try of a push, kept for the duration of a retrier call."""

    branch: str
    attempt_number: int
    delay_before_ms: int
    succeeded: bool
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "attempt_number": self.attempt_number,
            "delay_before_ms": self.delay_before_ms,
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass(slots=True)
class PipelineReport:
    """Everything the caller needs to describe a pipeline run."""

    outcomes: List[PatchOutcome] = field(default_factory=list)
    parse_errors: List[ParseError] = field(default_factory=list)
    commit_sha: str | None = None
    committed: bool = False
    pushed: bool = False
    branch: str | None = None
    push_attempts: List[PushAttempt] = field(default_factory=list)
    deadline_exceeded: bool = False

    @property
    def applied_paths(self) -> List[str]:
        seen: dict[str, None] = {}
        for outcome in self.outcomes:
            if outcome.applied:
                seen.setdefault(outcome.file_path, None)
        return list(seen)

    @property
    def failed(self) -> List[PatchOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.applied]

    @property
    def ok(self) -> bool:
        return bool(self.outcomes) and not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "parse_errors": [error.to_dict() for error in self.parse_errors],
            "commit_sha": self.commit_sha,
            "committed": self.committed,
            "pushed": self.pushed,
            "branch": self.branch,
            "push_attempts": [attempt.to_dict() for attempt in self.push_attempts],
            "deadline_exceeded": self.deadline_exceeded,
        }


__all__ = [
    "BACKUP_DIR_NAME",
    "BackupRecord",
    "CommitRequest",
    "Complexity",
    "EditBlock",
    "PatchOutcome",
    "PipelineReport",
    "PushAttempt",
    "ValidationResult",
]
