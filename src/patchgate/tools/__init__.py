"""Filesystem and git tooling used by the pipeline."""

from .backup import BackupStore, BackupSweeper
from .patch import ApplyState, PatchApplier
from .vcs import GitPushRetrier, SafeProcessExecutor, normalise_commit_message, sanitize_for_display

__all__ = [
    "ApplyState",
    "BackupStore",
    "BackupSweeper",
    "GitPushRetrier",
    "PatchApplier",
    "SafeProcessExecutor",
    "normalise_commit_message",
    "sanitize_for_display",
]
