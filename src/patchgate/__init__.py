"""patchgate: validate, apply, commit and push model-proposed edit blocks."""

from .config import PatchGateConfig, load_config, preset_config, validate_config
from .edit_blocks import EditBlockParser, ParseReport, check_block_structure
from .errors import (
    ApplyError,
    ErrorKind,
    ParseError,
    PatchGateError,
    PipelineError,
    PushError,
    ShellError,
    ValidationError,
)
from .pipeline import PatchPipeline
from .schema import EditBlock, PatchOutcome, PipelineReport, ValidationResult

__all__ = [
    "ApplyError",
    "EditBlock",
    "EditBlockParser",
    "ErrorKind",
    "ParseError",
    "ParseReport",
    "PatchGateConfig",
    "PatchGateError",
    "PatchOutcome",
    "PatchPipeline",
    "PipelineError",
    "PipelineReport",
    "PushError",
    "ShellError",
    "ValidationError",
    "ValidationResult",
    "check_block_structure",
    "load_config",
    "preset_config",
    "validate_config",
]
