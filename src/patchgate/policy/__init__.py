"""Security policy for proposed edits."""

from .patterns import DANGEROUS_PATTERNS, DangerousPattern, build_registry, scan
from .validator import PatchValidator, check_integrity, locate_search

__all__ = [
    "DANGEROUS_PATTERNS",
    "DangerousPattern",
    "PatchValidator",
    "build_registry",
    "check_integrity",
    "locate_search",
    "scan",
]
