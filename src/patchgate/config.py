"""Configuration models, presets and validation for the patch pipeline.

A :class:`PatchGateConfig` is built once (from defaults, a preset, a YAML file
and environment overrides) and then handed explicitly to every component.
Nothing in the package reads configuration from module-level state.

Values are deliberately typed but unconstrained at the model level so that
:func:`validate_config` can report *every* problem at once instead of failing
on the first bad field.
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

PRESET_NAMES: tuple[str, ...] = ("development", "testing", "production", "strict")

ENV_PREFIX = "PATCHGATE_"
MIN_COMMAND_TIMEOUT_MS = 1000


class ConfigModel(BaseModel):
    """Base model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class CustomPattern(ConfigModel):
    """Caller-supplied dangerous pattern."""

    pattern: str
    severity: int
    description: str


class FileOperationsConfig(ConfigModel):
    """Settings for validation, backups and patch application."""

    backup_ttl_ms: int = 60_000
    enable_backups: bool = True
    max_backups_per_file: int = 5
    min_security_score: int = 50
    max_file_size: int = 50 * 1024 * 1024
    max_search_replace_size: int = 50 * 1024
    enable_syntax_validation: bool = True
    enable_complexity_analysis: bool = True
    custom_dangerous_patterns: List[CustomPattern] = Field(default_factory=list)
    strict_mode: bool = False
    allow_first_match: bool = False
    scan_search_text: bool = False
    sweep_interval_ms: int = 5_000


class GitOperationsConfig(ConfigModel):
    """Settings for process execution, commits and push retries."""

    max_retries: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    jitter_ms: int = 0
    command_timeout_ms: int = 30_000
    max_commit_message_length: int = 1_000
    default_branch: str = "main"
    remote: str = "origin"
    git_binary: str = "git"

    @property
    def max_attempts(self) -> int:
        return max(1, self.max_retries)


class PatchGateConfig(ConfigModel):
    """Complete pipeline configuration."""

    file_operations: FileOperationsConfig = Field(default_factory=FileOperationsConfig)
    git_operations: GitOperationsConfig = Field(default_factory=GitOperationsConfig)


@dataclass(slots=True)
class ConfigValidation:
    """Outcome of :func:`validate_config`."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)


PRESETS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "development": {
        "file_operations": {
            "min_security_score": 30,
            "strict_mode": False,
            "backup_ttl_ms": 120_000,
        },
        "git_operations": {"max_retries": 2},
    },
    "testing": {
        "file_operations": {
            "enable_backups": False,
            "min_security_score": 20,
            "backup_ttl_ms": 5_000,
        },
        "git_operations": {"max_retries": 1, "base_delay_ms": 100},
    },
    "production": {
        "file_operations": {
            "min_security_score": 70,
            "strict_mode": True,
            "max_backups_per_file": 3,
            "backup_ttl_ms": 30_000,
        },
        "git_operations": {
            "max_retries": 5,
            "base_delay_ms": 2_000,
            "max_delay_ms": 60_000,
        },
    },
    "strict": {
        "file_operations": {
            "min_security_score": 90,
            "strict_mode": True,
            "max_file_size": 10 * 1024 * 1024,
            "max_search_replace_size": 10 * 1024,
            "backup_ttl_ms": 300_000,
        },
        "git_operations": {"max_retries": 3, "max_commit_message_length": 500},
    },
}


def _merge_sections(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Section-wise partial merge; unknown sections are kept so validation can reject them."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            section = dict(current)
            section.update(value)
            merged[key] = section
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _build(data: Mapping[str, Any]) -> PatchGateConfig:
    try:
        return PatchGateConfig.model_validate(data)
    except PydanticValidationError as error:
        messages = [
            f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()
        ]
        raise ValidationError(
            "Invalid configuration: " + "; ".join(messages),
            details={"errors": messages},
        ) from error


def merge_config(base: PatchGateConfig, overrides: Mapping[str, Any]) -> PatchGateConfig:
    """Return a new config with ``overrides`` layered over ``base``."""
    return _build(_merge_sections(base.model_dump(), overrides))


def preset_config(name: str) -> PatchGateConfig:
    """Return the defaults with the named preset applied."""
    try:
        overrides = PRESETS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown preset '{name}'. Expected one of: {', '.join(PRESET_NAMES)}."
        ) from None
    return merge_config(PatchGateConfig(), overrides)


def validate_config(config: PatchGateConfig) -> ConfigValidation:
    """Check configuration values for consistency and security."""

    errors: List[str] = []
    files = config.file_operations
    git = config.git_operations

    if files.backup_ttl_ms < 0:
        errors.append("Backup TTL cannot be negative")
    if not 0 <= files.min_security_score <= 100:
        errors.append("Minimum security score must be between 0 and 100")
    if files.max_file_size < 0:
        errors.append("Maximum file size cannot be negative")
    if files.max_search_replace_size < 0:
        errors.append("Maximum search/replace size cannot be negative")
    if files.max_backups_per_file < 1:
        errors.append("Maximum backups per file must be at least 1")
    if files.sweep_interval_ms <= 0:
        errors.append("Backup sweep interval must be positive")
    for index, custom in enumerate(files.custom_dangerous_patterns):
        if not 0 <= custom.severity <= 100:
            errors.append(f"Custom pattern #{index} severity must be between 0 and 100")
        try:
            re.compile(custom.pattern)
        except re.error as error:
            errors.append(f"Custom pattern #{index} is not a valid regular expression: {error}")
        if not custom.description.strip():
            errors.append(f"Custom pattern #{index} requires a description")

    if git.max_retries < 0:
        errors.append("Maximum retries cannot be negative")
    if git.base_delay_ms < 0:
        errors.append("Base delay cannot be negative")
    if git.max_delay_ms < 0:
        errors.append("Maximum delay cannot be negative")
    if git.base_delay_ms > git.max_delay_ms:
        errors.append("Base delay cannot be greater than maximum delay")
    if git.jitter_ms < 0:
        errors.append("Jitter cannot be negative")
    if git.command_timeout_ms < MIN_COMMAND_TIMEOUT_MS:
        errors.append(f"Command timeout should be at least {MIN_COMMAND_TIMEOUT_MS}ms")
    if git.max_commit_message_length < 1:
        errors.append("Maximum commit message length should be at least 1 character")
    if not git.default_branch.strip():
        errors.append("Default branch cannot be empty")
    if not git.git_binary.strip():
        errors.append("Git binary cannot be empty")

    return ConfigValidation(is_valid=not errors, errors=errors)


def _as_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


_ENV_INT_KEYS: tuple[tuple[str, str, str], ...] = (
    ("BACKUP_TTL", "file_operations", "backup_ttl_ms"),
    ("MIN_SECURITY_SCORE", "file_operations", "min_security_score"),
    ("MAX_RETRIES", "git_operations", "max_retries"),
    ("BASE_DELAY", "git_operations", "base_delay_ms"),
    ("MAX_DELAY", "git_operations", "max_delay_ms"),
    ("COMMAND_TIMEOUT", "git_operations", "command_timeout_ms"),
)


def overrides_from_environment(env: Mapping[str, str] | None = None) -> Dict[str, Dict[str, Any]]:
    """Collect ``PATCHGATE_*`` overrides, ignoring values that do not parse."""

    env_mapping = os.environ if env is None else env
    overrides: Dict[str, Dict[str, Any]] = {}
    for suffix, section, key in _ENV_INT_KEYS:
        parsed = _as_int(env_mapping.get(f"{ENV_PREFIX}{suffix}"))
        if parsed is not None:
            overrides.setdefault(section, {})[key] = parsed
    strict = _as_bool(env_mapping.get(f"{ENV_PREFIX}STRICT_MODE"))
    if strict is not None:
        overrides.setdefault("file_operations", {})["strict_mode"] = strict
    backups = _as_bool(env_mapping.get(f"{ENV_PREFIX}ENABLE_BACKUPS"))
    if backups is not None:
        overrides.setdefault("file_operations", {})["enable_backups"] = backups
    return overrides


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ValidationError(f"Failed to parse config {path}: {error}") from error
    if not isinstance(data, Mapping):
        raise ValidationError(f"Expected mapping at top level of {path}")
    return dict(data)


def load_config(
    path: Path | str | None = None,
    *,
    preset: str | None = None,
    env: Mapping[str, str] | None = None,
    validate: bool = True,
) -> PatchGateConfig:
    """Build a configuration from preset, YAML file and environment, in that order.

    A ``preset`` key inside the YAML file is honoured when no explicit preset
    is passed.  Raises :class:`~patchgate.errors.ValidationError` listing every
    problem when the merged result is invalid and ``validate`` is true.
    """

    file_data: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ValidationError(f"Config file not found: {config_path}")
        file_data = _read_yaml(config_path)

    preset_name = preset or file_data.pop("preset", None)
    file_data.pop("preset", None)
    config = preset_config(str(preset_name)) if preset_name else PatchGateConfig()
    if file_data:
        config = merge_config(config, file_data)
    env_overrides = overrides_from_environment(env)
    if env_overrides:
        config = merge_config(config, env_overrides)

    if validate:
        result = validate_config(config)
        if not result.is_valid:
            raise ValidationError(
                "Invalid configuration: " + "; ".join(result.errors),
                details={"errors": list(result.errors)},
            )
    return config


def dump_config(config: PatchGateConfig) -> str:
    """Render ``config`` as YAML with stable key ordering."""
    return yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False)


__all__ = [
    "ConfigValidation",
    "CustomPattern",
    "FileOperationsConfig",
    "GitOperationsConfig",
    "PRESETS",
    "PRESET_NAMES",
    "PatchGateConfig",
    "dump_config",
    "load_config",
    "merge_config",
    "overrides_from_environment",
    "preset_config",
    "validate_config",
]
