"""Security, structural and size validation for edit blocks.

``PatchValidator.validate`` is a pure function of its inputs: it never touches
the filesystem.  Errors and warnings accumulate across every check so a
single report lists all problems with a block.

The integrity helpers at the bottom are shared with the applier, which runs
the same checks against the content it actually wrote.
"""

from __future__ import annotations

import ast
import json
import re
from pathlib import PurePosixPath
from typing import List, Tuple

import yaml

from ..config import FileOperationsConfig, PatchGateConfig
from ..schema import Complexity, ValidationResult
from .patterns import DangerousPattern, build_registry, scan

LARGE_REPLACEMENT_BYTES = 10_000
STRICT_MIN_SCORE = 80
BRACKET_MISMATCH_TOLERANCE = 2

JSON_SUFFIXES = frozenset({".json"})
YAML_SUFFIXES = frozenset({".yaml", ".yml"})
PYTHON_SUFFIXES = frozenset({".py", ".pyi"})
QUOTE_CHECK_SUFFIXES = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})
BRACE_SUFFIXES = frozenset(
    {
        ".c",
        ".cc",
        ".cpp",
        ".cs",
        ".css",
        ".go",
        ".h",
        ".hpp",
        ".java",
        ".js",
        ".jsx",
        ".kt",
        ".mjs",
        ".cjs",
        ".php",
        ".rs",
        ".scss",
        ".swift",
        ".ts",
        ".tsx",
    }
)

_PAIRS = {"{": "}", "[": "]", "(": ")"}
_BRANCH_PATTERN = re.compile(
    r"\b(?:if|elif|else|for|while|switch|case|catch|except|try)\b|&&|\|\|"
)


class PatchValidator:
    """Score and vet a proposed search/replace edit."""

    def __init__(self, config: PatchGateConfig | None = None) -> None:
        self.config = config or PatchGateConfig()

    def registry(self, settings: FileOperationsConfig | None = None) -> tuple[DangerousPattern, ...]:
        options = settings or self.config.file_operations
        return build_registry(options.custom_dangerous_patterns)

    def validate(
        self,
        file_path: str,
        search_text: str,
        replace_text: str,
        current_content: str | None,
        config: PatchGateConfig | None = None,
    ) -> ValidationResult:
        """Return a :class:`ValidationResult` for the edit.

        ``current_content`` is ``None`` when the target file does not exist.
        """

        options = (config or self.config).file_operations
        strict = options.strict_mode
        min_score = max(options.min_security_score, STRICT_MIN_SCORE) if strict else options.min_security_score
        max_block = options.max_search_replace_size // 2 if strict else options.max_search_replace_size
        max_file = options.max_file_size // 2 if strict else options.max_file_size

        errors: List[str] = []
        warnings: List[str] = []
        exists = current_content is not None

        # security
        texts = [replace_text]
        if options.scan_search_text:
            texts.append(search_text)
        matches = scan(texts, self.registry(options))
        penalty = sum(match.severity for match in matches)
        score = max(0, min(100, 100 - penalty))
        for match in matches:
            (errors if match.is_error else warnings).append(match.describe())

        # size
        if len(search_text.encode("utf-8")) > max_block:
            errors.append(f"Search text exceeds maximum size of {max_block} bytes")
        if len(replace_text.encode("utf-8")) > max_block:
            errors.append(f"Replace text exceeds maximum size of {max_block} bytes")
        if exists and len(current_content.encode("utf-8")) > max_file:
            errors.append(f"File exceeds maximum size of {max_file} bytes")
        if len(replace_text) > LARGE_REPLACEMENT_BYTES:
            warnings.append("Replacement text is very large (>10KB)")

        # matching
        if search_text == replace_text:
            warnings.append("Search and replace text are identical")
        occurrences = 0
        located_search, located_replace = search_text, replace_text
        if exists and search_text == "" and current_content != "":
            errors.append("Search text cannot be empty for an existing file")
        elif exists and search_text:
            located_search, located_replace, occurrences = locate_search(current_content, search_text, replace_text)
            if occurrences == 0:
                warnings.append("Search text not found in file")
            elif occurrences > 1:
                message = f"Search text appears {occurrences} times in file"
                if options.allow_first_match:
                    warnings.append(f"{message} - only first occurrence will be replaced")
                else:
                    errors.append(f"{message}; it must match exactly once")

        # syntax
        syntax_valid = True
        if options.enable_syntax_validation:
            suffix = PurePosixPath(file_path).suffix.lower()
            if suffix in QUOTE_CHECK_SUFFIXES:
                warnings.extend(_heuristic_warnings(search_text, replace_text))
            updated: str | None = None
            original = current_content or ""
            if search_text == "" and not current_content:
                updated = replace_text
            elif occurrences:
                updated = original.replace(located_search, located_replace, 1)
            if updated is not None:
                problem = check_integrity(file_path, original, updated)
                if problem is not None:
                    syntax_valid = False
                    errors.append(problem)

        complexity = assess_complexity(replace_text) if options.enable_complexity_analysis else Complexity.LOW

        if score < min_score:
            errors.append(f"Security score {score} below minimum {min_score}")
        if strict and warnings:
            errors.extend(f"strict: {warning}" for warning in warnings)
            warnings = []

        return ValidationResult(
            is_valid=score >= min_score and syntax_valid and not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            security_score=score,
            syntax_valid=syntax_valid,
            complexity=complexity,
            matched_patterns=tuple(match.code for match in matches),
        )


def locate_search(original: str, search: str, replace: str) -> Tuple[str, str, int]:
    """Return the search/replace pair to use and its occurrence count.

    Blocks are parsed with LF endings; CRLF files are matched by converting
    the block to CRLF when the LF form is absent.
    """

    count = original.count(search)
    if count == 0 and "\r\n" in original and "\n" in search:
        crlf_search = search.replace("\n", "\r\n")
        crlf_count = original.count(crlf_search)
        if crlf_count:
            return crlf_search, replace.replace("\n", "\r\n"), crlf_count
    return search, replace, count


def _heuristic_warnings(search_text: str, replace_text: str) -> List[str]:
    warnings: List[str] = []
    search_braces = sum(search_text.count(char) for char in "{}")
    replace_braces = sum(replace_text.count(char) for char in "{}")
    if abs(search_braces - replace_braces) > BRACKET_MISMATCH_TOLERANCE:
        warnings.append("Significant bracket count mismatch between search and replace")
    search_quotes = sum(search_text.count(char) for char in "'\"")
    replace_quotes = sum(replace_text.count(char) for char in "'\"")
    if search_quotes % 2 or replace_quotes % 2:
        warnings.append("Potential unmatched quotes detected")
    return warnings


def assess_complexity(text: str) -> Complexity:
    """Bucket a replacement by line count and branching density."""

    if not text:
        return Complexity.LOW
    lines = text.count("\n") + 1
    branches = len(_BRANCH_PATTERN.findall(text))
    if lines > 200 or branches > 20:
        return Complexity.HIGH
    if lines > 50 or branches > 5:
        return Complexity.MEDIUM
    return Complexity.LOW


def is_balanced(text: str) -> bool:
    """Return ``True`` when every bracket in ``text`` is closed in order."""

    stack: List[str] = []
    closers = set(_PAIRS.values())
    for char in text:
        if char in _PAIRS:
            stack.append(_PAIRS[char])
        elif char in closers:
            if not stack or stack.pop() != char:
                return False
    return not stack


def looks_like_json(text: str) -> bool:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        json.loads(stripped)
    except (ValueError, RecursionError, MemoryError):
        return False
    return True


def _describe(error: BaseException) -> str:
    # parser limits (RecursionError, MemoryError) often carry no message
    return str(error) or type(error).__name__


def check_integrity(file_path: str, original: str, updated: str) -> str | None:
    """Return a description of the first integrity failure, or ``None``."""

    suffix = PurePosixPath(file_path).suffix.lower()
    if suffix in JSON_SUFFIXES or (suffix not in PYTHON_SUFFIXES | YAML_SUFFIXES and looks_like_json(original)):
        try:
            json.loads(updated)
        except (ValueError, RecursionError, MemoryError) as error:
            return f"JSON integrity check failed for {file_path}: {_describe(error)}"
        return None
    if suffix in YAML_SUFFIXES:
        try:
            yaml.safe_load(updated)
        except (yaml.YAMLError, RecursionError, MemoryError) as error:
            return f"YAML integrity check failed for {file_path}: {_describe(error)}"
        return None
    if suffix in PYTHON_SUFFIXES:
        try:
            ast.parse(updated, filename=file_path)
        except SyntaxError as error:
            return f"Python integrity check failed for {file_path}: line {error.lineno}: {error.msg}"
        except (ValueError, RecursionError, MemoryError) as error:
            return f"Python integrity check failed for {file_path}: {_describe(error)}"
        return None
    if suffix in BRACE_SUFFIXES and is_balanced(original) and not is_balanced(updated):
        return f"Brace balance check failed for {file_path}"
    return None


__all__ = [
    "PatchValidator",
    "assess_complexity",
    "check_integrity",
    "locate_search",
    "is_balanced",
    "looks_like_json",
]
