from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import GitRepo, make_block

from patchgate.config import GitOperationsConfig, PatchGateConfig, preset_config
from patchgate.errors import ErrorKind, PipelineError, ValidationError
from patchgate.pipeline import DEADLINE_REASON, PatchPipeline
from patchgate.schema import BackupRecord, ValidationResult
from patchgate.tools.backup import BackupStore
from patchgate.tools.patch import ApplyState


class _SlowBackupStore(BackupStore):
    """Backup store whose snapshots take a fixed time."""

    delay_seconds = 0.3

    async def snapshot(self, relative_path: Path | str) -> BackupRecord:
        await asyncio.sleep(self.delay_seconds)
        return await super().snapshot(relative_path)


def _pipeline(repo: GitRepo, config: PatchGateConfig | None = None) -> PatchPipeline:
    return PatchPipeline(config or PatchGateConfig(), repo.root)


@pytest.mark.asyncio
async def test_hello_universe_applies_and_commits(git_repo: GitRepo) -> None:
    pipeline = _pipeline(git_repo)
    response = "Here is the change:\n\n" + make_block("hello.txt", "Hello World", "Hello Universe")

    report = await pipeline.run(response, commit_message="Greet the universe", push=False)

    assert report.ok
    assert report.applied_paths == ["hello.txt"]
    assert git_repo.read("hello.txt") == "Hello Universe\n"
    assert report.committed
    assert report.commit_sha == git_repo.git("rev-parse", "HEAD").strip()
    assert git_repo.git("log", "-1", "--format=%s").strip() == "Greet the universe"
    backup = report.outcomes[0].backup_path
    assert backup is not None and backup.read_text(encoding="utf-8") == "Hello World\n"
    assert report.outcomes[0].validation is not None
    assert git_repo.git("status", "--porcelain").strip() == ""


@pytest.mark.asyncio
async def test_dangerous_replacement_is_rejected(git_repo: GitRepo) -> None:
    before = git_repo.read("app.py")
    head = git_repo.git("rev-parse", "HEAD").strip()

    report = await _pipeline(git_repo).run(
        make_block("app.py", "return 'hi'", "return eval(user_input)"),
        commit_message="Dangerous",
        push=False,
    )

    [outcome] = report.outcomes
    assert not outcome.applied
    assert outcome.kind is ErrorKind.VALIDATION
    assert outcome.validation is not None and outcome.validation.security_score < 50
    assert git_repo.read("app.py") == before
    assert not report.committed
    assert git_repo.git("rev-parse", "HEAD").strip() == head


@pytest.mark.asyncio
async def test_broken_json_is_not_applied(git_repo: GitRepo) -> None:
    before = git_repo.read("config.json")

    report = await _pipeline(git_repo).run(
        make_block("config.json", '"version": 1', '"version": '),
        commit_message="Break json",
        push=False,
    )

    assert not report.outcomes[0].applied
    assert git_repo.read("config.json") == before


@pytest.mark.asyncio
async def test_traversal_is_a_parse_outcome(git_repo: GitRepo) -> None:
    report = await _pipeline(git_repo).run(
        make_block("../../etc/passwd", "root", "toor"),
        commit_message="Escape",
        push=False,
    )

    [outcome] = report.outcomes
    assert outcome.kind is ErrorKind.PARSE
    assert "directory traversal" in (outcome.reason or "")
    assert len(report.parse_errors) == 1
    assert not report.committed


@pytest.mark.asyncio
async def test_partial_failure_commits_only_applied_paths(git_repo: GitRepo) -> None:
    (git_repo.root / "scratch.txt").write_text("untracked\n", encoding="utf-8")
    response = "\n\n".join(
        [
            make_block("hello.txt", "Hello World", "Hello Team"),
            make_block("app.py", "return 'missing'", "return 'x'"),
            make_block("docs/new.md", "", "# New doc\n"),
        ]
    )

    report = await _pipeline(git_repo).run(response, commit_message="Partial", push=False)

    assert [outcome.applied for outcome in report.outcomes] == [True, False, True]
    assert report.outcomes[1].kind is ErrorKind.NO_MATCH
    assert [outcome.block_index for outcome in report.outcomes] == [0, 1, 2]
    assert not report.ok
    assert report.committed
    committed = git_repo.git("show", "--name-only", "--format=", "HEAD").split()
    assert sorted(committed) == ["docs/new.md", "hello.txt"]
    assert "?? scratch.txt" in git_repo.git("status", "--porcelain")


@pytest.mark.asyncio
async def test_blocks_for_same_file_apply_in_order(git_repo: GitRepo) -> None:
    response = "\n".join(
        [
            make_block("hello.txt", "Hello World", "Hello Again"),
            make_block("hello.txt", "Hello Again", "Hello Finally"),
        ]
    )

    report = await _pipeline(git_repo).run(response, commit_message="Twice", push=False)

    assert report.ok
    assert report.applied_paths == ["hello.txt"]
    assert git_repo.read("hello.txt") == "Hello Finally\n"


@pytest.mark.asyncio
async def test_deadline_skips_remaining_blocks(git_repo: GitRepo) -> None:
    response = "\n".join(
        [
            make_block("hello.txt", "Hello World", "Hello Late"),
            make_block("app.py", "return 'hi'", "return 'late'"),
        ]
    )

    report = await _pipeline(git_repo).run(
        response, commit_message="Too late", push=False, deadline_seconds=0
    )

    assert report.deadline_exceeded
    assert [outcome.reason for outcome in report.outcomes] == [DEADLINE_REASON, DEADLINE_REASON]
    assert all(outcome.kind is ErrorKind.DEADLINE for outcome in report.outcomes)
    assert git_repo.read("hello.txt") == "Hello World\n"
    assert not report.committed


@pytest.mark.asyncio
async def test_no_commit_leaves_changes_in_worktree(git_repo: GitRepo) -> None:
    report = await _pipeline(git_repo).run(
        make_block("hello.txt", "World", "Friends"),
        commit_message="unused",
        commit=False,
    )

    assert report.ok
    assert not report.committed
    assert not report.pushed
    assert "hello.txt" in git_repo.git("status", "--porcelain")


@pytest.mark.asyncio
async def test_empty_commit_message_fails_before_any_edit(git_repo: GitRepo) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await _pipeline(git_repo).run(make_block("hello.txt", "World", "Friends"), commit_message="  \n ")

    assert excinfo.value.kind is ErrorKind.EMPTY_MESSAGE
    assert git_repo.read("hello.txt") == "Hello World\n"


@pytest.mark.asyncio
async def test_allow_empty_commit(git_repo: GitRepo) -> None:
    head = git_repo.git("rev-parse", "HEAD").strip()

    report = await _pipeline(git_repo).run("no edits here", commit_message="Checkpoint", push=False, allow_empty=True)

    assert report.committed
    assert report.commit_sha != head


@pytest.mark.asyncio
async def test_commit_and_push_to_remote(git_repo_with_remote: GitRepo) -> None:
    report = await _pipeline(git_repo_with_remote).run(
        make_block("hello.txt", "Hello World", "Hello Remote"),
        commit_message="Push it",
    )

    assert report.pushed
    assert report.branch == "main"
    assert len(report.push_attempts) == 1
    remote_head = git_repo_with_remote.git("ls-remote", "origin", "refs/heads/main").split()[0]
    assert remote_head == report.commit_sha


@pytest.mark.asyncio
async def test_push_failure_raises_pipeline_error_with_report(git_repo: GitRepo) -> None:
    config = PatchGateConfig(git_operations=GitOperationsConfig(max_retries=2, base_delay_ms=1, max_delay_ms=1))

    with pytest.raises(PipelineError) as excinfo:
        await _pipeline(git_repo, config).run(
            make_block("hello.txt", "Hello World", "Hello Nowhere"),
            commit_message="No remote",
            branch="main",
        )

    error = excinfo.value
    assert error.kind is ErrorKind.PUSH
    assert error.report.committed
    assert not error.report.pushed
    assert len(error.report.push_attempts) == 2
    assert "2 attempts" in str(error)
    assert git_repo.read("hello.txt") == "Hello Nowhere\n"


@pytest.mark.asyncio
async def test_report_serialises(git_repo: GitRepo) -> None:
    report = await _pipeline(git_repo).run(
        make_block("hello.txt", "World", "JSON"), commit_message="Serialise", push=False
    )

    data = report.to_dict()

    assert data["committed"] is True
    assert data["outcomes"][0]["file_path"] == "hello.txt"
    assert data["outcomes"][0]["validation"]["security_score"] == 100


@pytest.mark.asyncio
async def test_deeply_nested_block_does_not_abort_run(git_repo: GitRepo) -> None:
    before = git_repo.read("config.json")
    response = "\n".join(
        [
            make_block("hello.txt", "Hello World", "Hello Universe"),
            make_block("config.json", '"version": 1', '"version": ' + "[" * 20_000 + "]" * 20_000),
            make_block("app.py", "return 'hi'", "return 'hello'"),
        ]
    )

    report = await _pipeline(git_repo).run(response, commit_message="Mixed", push=False)

    assert [outcome.applied for outcome in report.outcomes] == [True, False, True]
    assert report.outcomes[1].kind is ErrorKind.VALIDATION
    assert git_repo.read("config.json") == before
    assert report.committed
    committed = git_repo.git("show", "--name-only", "--format=", "HEAD").split()
    assert sorted(committed) == ["app.py", "hello.txt"]


@pytest.mark.asyncio
async def test_unexpected_block_error_becomes_internal_outcome(git_repo: GitRepo) -> None:
    pipeline = _pipeline(git_repo)
    validate = pipeline.validator.validate

    def flaky_validate(
        file_path: str,
        search_text: str,
        replace_text: str,
        current_content: str | None,
        config: PatchGateConfig | None = None,
    ) -> ValidationResult:
        if file_path == "app.py":
            raise RuntimeError("validator crashed")
        return validate(file_path, search_text, replace_text, current_content, config)

    pipeline.validator.validate = flaky_validate
    response = "\n".join(
        [
            make_block("app.py", "return 'hi'", "return 'hello'"),
            make_block("hello.txt", "Hello World", "Hello Again"),
        ]
    )

    report = await pipeline.run(response, commit_message="Keep going", push=False)

    assert report.outcomes[0].kind is ErrorKind.INTERNAL
    assert report.outcomes[0].reason == "validator crashed"
    assert report.outcomes[1].applied
    assert report.committed


@pytest.mark.asyncio
async def test_write_failure_outcome_is_tagged_io(git_repo: GitRepo) -> None:
    report = await _pipeline(git_repo).run(
        make_block("hello.txt/inner.txt", "", "x"), commit_message="Blocked", push=False
    )

    [outcome] = report.outcomes
    assert not outcome.applied
    assert outcome.kind is ErrorKind.IO
    assert git_repo.read("hello.txt") == "Hello World\n"
    assert not report.committed


@pytest.mark.asyncio
async def test_crlf_file_applies_under_production_preset(git_repo: GitRepo) -> None:
    target = git_repo.root / "a.txt"
    target.write_bytes(b"one\r\ntwo\r\nthree\r\n")
    git_repo.git("add", "a.txt")
    git_repo.git("commit", "-m", "add crlf file")

    report = await _pipeline(git_repo, preset_config("production")).run(
        make_block("a.txt", "one\ntwo", "ONE\ntwo"), commit_message="Edit CRLF", push=False
    )

    [outcome] = report.outcomes
    assert outcome.applied, outcome.reason
    assert outcome.validation is not None and outcome.validation.errors == ()
    assert target.read_bytes() == b"ONE\r\ntwo\r\nthree\r\n"
    assert report.committed


@pytest.mark.asyncio
async def test_deadline_during_apply_lets_it_finish(git_repo: GitRepo) -> None:
    config = PatchGateConfig()
    pipeline = PatchPipeline(config, git_repo.root, backup_store=_SlowBackupStore(git_repo.root, config))
    response = "\n".join(
        [
            make_block("hello.txt", "Hello World", "Hello Slow"),
            make_block("app.py", "return 'hi'", "return 'skipped'"),
        ]
    )

    report = await pipeline.run(response, commit_message="Slow", push=False, deadline_seconds=0.05)

    assert report.deadline_exceeded
    first, second = report.outcomes
    assert first.applied
    assert first.backup_path is not None and first.backup_path.read_text(encoding="utf-8") == "Hello World\n"
    assert pipeline.applier.states["hello.txt"] is ApplyState.COMMITTED
    assert git_repo.read("hello.txt") == "Hello Slow\n"
    assert second.kind is ErrorKind.DEADLINE
    assert second.reason == DEADLINE_REASON
    assert git_repo.read("app.py") == "def greet():\n    return 'hi'\n"
    assert report.committed
