"""CLI commands for applying edit blocks and inspecting configuration."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import PatchGateConfig, dump_config, load_config, validate_config
from .edit_blocks import check_block_structure
from .errors import PipelineError, ValidationError
from .pipeline import PatchPipeline
from .schema import PipelineReport
from .tools.backup import BackupStore

APP_HELP = "Validate and apply search/replace edit blocks, then commit and push."
DEFAULT_COMMIT_MESSAGE = "Apply edit blocks"

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: Optional[str], preset: Optional[str], *, validate: bool = True) -> PatchGateConfig:
    try:
        return load_config(config, preset=preset, validate=validate)
    except ValidationError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _print_report(report: PipelineReport) -> None:
    for outcome in report.outcomes:
        if outcome.applied:
            typer.echo(f"- applied  #{outcome.block_index} {outcome.file_path}")
        else:
            kind = outcome.kind.value if outcome.kind else "error"
            label = outcome.file_path or "<unknown>"
            typer.echo(f"- {kind:<8} #{outcome.block_index} {label}: {outcome.reason}")
    if report.deadline_exceeded:
        typer.echo("Deadline exceeded; remaining blocks were skipped.")
    if report.committed and report.commit_sha:
        typer.echo(f"Commit: {report.commit_sha[:7]}")
    if report.pushed:
        typer.echo(f"Push: {report.branch} ({len(report.push_attempts)} attempt(s))")


@app.command()
def apply(
    response_file: Path = typer.Argument(..., help="File holding the model response with edit blocks."),
    repo: str = typer.Option(".", "--repo", "-r", help="Repository root the edits apply to."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file."),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Configuration preset name."),
    message: str = typer.Option(DEFAULT_COMMIT_MESSAGE, "--message", "-m", help="Commit message."),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch to push."),
    commit: bool = typer.Option(True, "--commit/--no-commit", help="Commit applied edits."),
    push: bool = typer.Option(True, "--push/--no-push", help="Push after committing."),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Seconds before remaining blocks are skipped."),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """Apply every edit block in RESPONSE_FILE."""
    settings = _load(config, preset)
    if not response_file.exists():
        typer.echo(f"Response file not found: {response_file}")
        raise typer.Exit(code=1)
    text = response_file.read_text(encoding="utf-8")

    pipeline = PatchPipeline(settings, Path(repo))
    try:
        report = asyncio.run(
            pipeline.run(
                text,
                commit_message=message,
                branch=branch,
                commit=commit,
                push=push,
                deadline_seconds=deadline,
            )
        )
    except PipelineError as error:
        if json_output:
            typer.echo(json.dumps({"error": str(error), "report": error.report.to_dict()}, indent=2))
        else:
            _print_report(error.report)
            typer.echo(f"Aborted: {error}")
        raise typer.Exit(code=1) from error
    except ValidationError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    elif not report.outcomes:
        typer.echo("No edit blocks found.")
    else:
        _print_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("validate-config")
def validate_config_command(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file."),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Configuration preset name."),
) -> None:
    """Report every problem with the effective configuration."""
    settings = _load(config, preset, validate=False)
    result = validate_config(settings)
    if result.is_valid:
        typer.echo("Configuration is valid.")
        return
    typer.echo("Configuration is invalid:")
    for entry in result.errors:
        typer.echo(f"  - {entry}")
    raise typer.Exit(code=1)


@app.command("show-config")
def show_config(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file."),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Configuration preset name."),
) -> None:
    """Print the effective configuration as YAML."""
    typer.echo(dump_config(_load(config, preset)), nl=False)


@app.command("check-block")
def check_block(
    block_file: Path = typer.Argument(..., help="File holding a single edit block."),
    repo: str = typer.Option(".", "--repo", "-r", help="Repository root used to resolve the path."),
) -> None:
    """Check the structure of one edit block without applying it."""
    if not block_file.exists():
        typer.echo(f"Block file not found: {block_file}")
        raise typer.Exit(code=1)
    report = check_block_structure(block_file.read_text(encoding="utf-8"), Path(repo))
    for entry in report.errors:
        typer.echo(f"error: {entry}")
    for entry in report.warnings:
        typer.echo(f"warning: {entry}")
    if not report.is_valid:
        raise typer.Exit(code=1)
    typer.echo("Block structure is valid.")


@app.command("sweep-backups")
def sweep_backups(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository root holding the .backup directory."),
    max_age_ms: Optional[int] = typer.Option(None, "--max-age-ms", help="Delete backups older than this."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file."),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Configuration preset name."),
) -> None:
    """Delete stale backups left behind by earlier runs."""
    settings = _load(config, preset)
    store = BackupStore(Path(repo), settings)
    max_age = None if max_age_ms is None else max_age_ms / 1000
    removed = asyncio.run(store.prune_orphans(max_age))
    typer.echo(f"Removed {len(removed)} backup(s).")


if __name__ == "__main__":
    app()
