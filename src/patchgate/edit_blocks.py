"""Parse fenced search/replace edit blocks out of model responses.

A response may contain any number of fenced blocks of the form::

    ```search-replace
    FILE: path/to/file.ext
    <<<<<<< SEARCH
    exact text to find
    =======
    replacement text
    >>>>>>> REPLACE
    ```

Each fenced block may carry several SEARCH/REPLACE sections; every section
becomes its own :class:`~patchgate.schema.EditBlock` sharing the block's path
and index.  Malformed blocks are reported as :class:`~patchgate.errors.ParseError`
values in the same stream so callers see valid and invalid blocks in order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Sequence

from .errors import ParseError
from .schema import BACKUP_DIR_NAME, EditBlock

LOGGER = logging.getLogger(__name__)

FENCE = "```"
BLOCK_INFO_STRINGS = frozenset({"search-replace", "search_replace", "diff"})
FILE_PREFIX = "FILE:"
SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"
RESERVED_DIRECTORIES = frozenset({".git", BACKUP_DIR_NAME})


@dataclass(slots=True)
class ParseReport:
    """Partition of a parse stream into usable blocks and block errors."""

    blocks: List[EditBlock] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class StructureReport:
    """Result of :func:`check_block_structure`."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _normalise_line_endings(text: str) -> str:
    """Convert CRLF/CR sequences to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _clean_path(raw: str) -> str:
    candidate = raw.strip()
    if len(candidate) >= 2 and candidate[0] == candidate[-1] and candidate[0] in {"'", '"', "`"}:
        candidate = candidate[1:-1].strip()
    return candidate


def path_violation(raw_path: str, root: Path | None = None) -> str | None:
    """Return an error message when ``raw_path`` is unsafe, otherwise ``None``."""

    message = f"File path contains directory traversal: {raw_path}"
    if "\x00" in raw_path:
        return message
    unified = raw_path.replace("\\", "/")
    if unified.startswith("/") or (len(unified) > 1 and unified[1] == ":"):
        return message
    parts = PurePosixPath(unified).parts
    if any(part == ".." for part in parts):
        return message
    if parts and parts[0] in RESERVED_DIRECTORIES:
        return message
    if root is not None:
        base = Path(root).resolve()
        target = (base / unified).resolve()
        if target != base and base not in target.parents:
            return message
    return None


def _is_marker(line: str, marker: str) -> bool:
    return line.strip() == marker


def _split_fences(text: str) -> Iterator[tuple[str, List[str]]]:
    """Yield ``(info, body_lines)`` for each fenced block in ``text``.

    Fence lines inside an open SEARCH or REPLACE section are treated as
    content so replacements may themselves contain fenced snippets.
    """

    lines = text.split("\n")
    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        if not stripped.startswith(FENCE):
            index += 1
            continue
        info = stripped[len(FENCE):].strip().lower()
        body: List[str] = []
        in_section = False
        index += 1
        while index < len(lines):
            line = lines[index]
            if _is_marker(line, SEARCH_MARKER):
                in_section = True
            elif _is_marker(line, REPLACE_MARKER):
                in_section = False
            elif not in_section and line.strip() == FENCE:
                break
            body.append(line)
            index += 1
        index += 1
        yield info, body


def _is_edit_fence(info: str, body: Sequence[str]) -> bool:
    if info in BLOCK_INFO_STRINGS:
        return True
    if info:
        return False
    return any(line.strip().startswith(FILE_PREFIX) for line in body)


def _find_file_path(body: Sequence[str]) -> str | None:
    for line in body:
        stripped = line.strip()
        if stripped.startswith(FILE_PREFIX):
            candidate = _clean_path(stripped[len(FILE_PREFIX):])
            return candidate or None
    return None


def _iter_sections(
    body: Sequence[str], *, index: int, file_path: str
) -> Iterator[EditBlock | ParseError]:
    search: List[str] | None = None
    replace: List[str] | None = None
    found = False
    for line in body:
        if replace is not None:
            if _is_marker(line, REPLACE_MARKER):
                yield EditBlock(
                    file_path=file_path,
                    search_text="\n".join(search or []),
                    replace_text="\n".join(replace),
                    index=index,
                )
                found = True
                search = None
                replace = None
            else:
                replace.append(line)
        elif search is not None:
            if _is_marker(line, DIVIDER_MARKER):
                replace = []
            else:
                search.append(line)
        elif _is_marker(line, SEARCH_MARKER):
            search = []

    if replace is not None:
        yield ParseError(f"Missing REPLACE marker ({REPLACE_MARKER})", block_index=index, file_path=file_path)
    elif search is not None:
        yield ParseError(f"Missing separator ({DIVIDER_MARKER})", block_index=index, file_path=file_path)
    elif not found:
        yield ParseError(f"Missing SEARCH marker ({SEARCH_MARKER})", block_index=index, file_path=file_path)


class EditBlockParser:
    """Lazy parser turning response text into edit blocks and parse errors."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root).resolve() if root is not None else None

    def iter_parse(self, text: str) -> Iterator[EditBlock | ParseError]:
        """Yield blocks and errors in order of appearance."""

        normalised = _normalise_line_endings(text or "")
        block_index = 0
        for info, body in _split_fences(normalised):
            if not _is_edit_fence(info, body):
                continue
            index = block_index
            block_index += 1
            file_path = _find_file_path(body)
            if file_path is None:
                yield ParseError("Missing FILE declaration", block_index=index)
                continue
            violation = path_violation(file_path, self.root)
            if violation is not None:
                LOGGER.warning("Rejected edit block %d: %s", index, violation)
                yield ParseError(violation, block_index=index, file_path=file_path)
                continue
            yield from _iter_sections(body, index=index, file_path=file_path)

    def parse(self, text: str) -> ParseReport:
        report = ParseReport()
        for item in self.iter_parse(text):
            if isinstance(item, ParseError):
                report.errors.append(item)
            else:
                report.blocks.append(item)
        LOGGER.debug("Parsed %d edit blocks with %d errors", len(report.blocks), len(report.errors))
        return report


def check_block_structure(block_text: str, repo_root: Path | str | None = None) -> StructureReport:
    """Validate a single block body, fenced or not."""

    lines = _normalise_line_endings(block_text or "").split("\n")
    stripped = list(lines)
    while stripped and not stripped[0].strip():
        stripped.pop(0)
    if stripped and stripped[0].strip().startswith(FENCE):
        stripped.pop(0)
    while stripped and not stripped[-1].strip():
        stripped.pop()
    if stripped and stripped[-1].strip() == FENCE:
        stripped.pop()
    errors: List[str] = []
    warnings: List[str] = []

    root = Path(repo_root).resolve() if repo_root is not None else None
    file_path = _find_file_path(stripped)
    if file_path is None:
        errors.append("Missing FILE declaration")
    else:
        violation = path_violation(file_path, root)
        if violation is not None:
            errors.append(violation)
        elif root is not None and not (root / file_path).exists():
            warnings.append(f"File does not exist: {file_path}")

    for item in _iter_sections(stripped, index=0, file_path=file_path or ""):
        if isinstance(item, ParseError):
            errors.append(str(item))

    return StructureReport(is_valid=not errors, errors=errors, warnings=warnings)


__all__ = [
    "EditBlockParser",
    "ParseReport",
    "StructureReport",
    "check_block_structure",
    "path_violation",
]
