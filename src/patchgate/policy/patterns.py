"""Registry of dangerous code patterns scanned for in edit blocks.

``DANGEROUS_PATTERNS``
    Built-in patterns keyed by rule code.  Each entry carries a severity in
    ``0..100`` that is subtracted from the security score when it matches.

``build_registry``
    Combine the built-in patterns with caller-supplied ones from the
    configuration.

``scan``
    Return the patterns that match any of the given texts, each at most once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Sequence

from ..config import CustomPattern

ERROR_SEVERITY = 50


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class DangerousPattern:
    """A regular expression that flags risky replacement text."""

    code: str
    pattern: str
    severity: int
    description: str

    @property
    def is_error(self) -> bool:
        return self.severity >= ERROR_SEVERITY

    def search(self, text: str) -> bool:
        return _compile(self.pattern).search(text) is not None

    def describe(self) -> str:
        return f"{self.description} detected ({self.code}): {self.pattern}"


DANGEROUS_PATTERNS: Dict[str, DangerousPattern] = {
    "SEC001": DangerousPattern(
        code="SEC001",
        pattern=r"\beval\s*\(",
        severity=60,
        description="Code evaluation",
    ),
    "SEC002": DangerousPattern(
        code="SEC002",
        pattern=r"\bexec\s*\(",
        severity=60,
        description="Code execution",
    ),
    "SEC003": DangerousPattern(
        code="SEC003",
        pattern=r"\bsystem\s*\(|shell_exec|child_process|subprocess\.(?:Popen|call|run)\s*\(",
        severity=50,
        description="Process spawning",
    ),
    "SEC004": DangerousPattern(
        code="SEC004",
        pattern=r"\brm\s+-(?:rf|fr)\b",
        severity=70,
        description="Destructive shell command",
    ),
    "SEC005": DangerousPattern(
        code="SEC005",
        pattern=r"\bsudo\s+",
        severity=50,
        description="Privilege escalation",
    ),
    "SEC006": DangerousPattern(
        code="SEC006",
        pattern=r"document\.cookie",
        severity=40,
        description="Cookie access",
    ),
    "SEC007": DangerousPattern(
        code="SEC007",
        pattern=r"(?:localStorage|sessionStorage)\.getItem\s*\(\s*['\"][^'\"]*(?:token|password|secret)",
        severity=30,
        description="Credential access",
    ),
    "SEC008": DangerousPattern(
        code="SEC008",
        pattern=r"__proto__|constructor.*prototype",
        severity=50,
        description="Prototype pollution",
    ),
    "SEC009": DangerousPattern(
        code="SEC009",
        pattern=r"\.\./.*\.\./",
        severity=30,
        description="Path traversal",
    ),
    "SEC010": DangerousPattern(
        code="SEC010",
        pattern=r"(?:api[_-]?key|secret|password|passwd|token)\s*[:=]\s*['\"][A-Za-z0-9_\-/+]{8,}['\"]",
        severity=40,
        description="Hard-coded secret",
    ),
    "SEC011": DangerousPattern(
        code="SEC011",
        pattern=r"\bpickle\.loads?\s*\(|\bmarshal\.loads\s*\(|\byaml\.load\s*\(",
        severity=50,
        description="Unsafe deserialisation",
    ),
    "SEC012": DangerousPattern(
        code="SEC012",
        pattern=r"process\.exit",
        severity=20,
        description="Process termination",
    ),
}


def build_registry(custom: Sequence[CustomPattern] = ()) -> tuple[DangerousPattern, ...]:
    """Return the built-in patterns followed by the configured ones."""

    extra = tuple(
        DangerousPattern(
            code=f"CUSTOM{index + 1:03d}",
            pattern=item.pattern,
            severity=item.severity,
            description=item.description,
        )
        for index, item in enumerate(custom)
    )
    return tuple(DANGEROUS_PATTERNS.values()) + extra


def scan(texts: Iterable[str], registry: Sequence[DangerousPattern]) -> List[DangerousPattern]:
    """Return every pattern matching at least one text, in registry order."""

    candidates = [text for text in texts if text]
    return [entry for entry in registry if any(entry.search(text) for text in candidates)]


__all__ = [
    "DANGEROUS_PATTERNS",
    "DangerousPattern",
    "ERROR_SEVERITY",
    "build_registry",
    "scan",
]
