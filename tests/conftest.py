from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def make_block(path: str, search: str, replace: str, *, info: str = "search-replace") -> str:
    """Render a single fenced edit block."""

    return "\n".join(
        [
            f"```{info}",
            f"FILE: {path}",
            "<<<<<<< SEARCH",
            search,
            "=======",
            replace,
            ">>>>>>> REPLACE",
            "```",
        ]
    )


@dataclass(slots=True)
class GitRepo:
    """Temporary repository with a committed baseline."""

    root: Path

    def git(self, *args: str) -> str:
        return run_git(self.root, *args)

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")


def _prepare_repo(repo_root: Path) -> GitRepo:
    repo_root.mkdir(parents=True, exist_ok=True)
    run_git(repo_root, "init")
    run_git(repo_root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo_root, "config", "user.email", "agent@example.com")
    run_git(repo_root, "config", "user.name", "Patch Gate")
    run_git(repo_root, "config", "commit.gpgsign", "false")

    (repo_root / "hello.txt").write_text("Hello World\n", encoding="utf-8")
    (repo_root / "config.json").write_text('{"name": "demo", "version": 1}\n', encoding="utf-8")
    (repo_root / "app.py").write_text("def greet():\n    return 'hi'\n", encoding="utf-8")
    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "-m", "init")
    return GitRepo(root=repo_root)


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepo:
    return _prepare_repo(tmp_path / "repo")


@pytest.fixture()
def git_repo_with_remote(tmp_path: Path) -> GitRepo:
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
    repo = _prepare_repo(tmp_path / "repo")
    repo.git("remote", "add", "origin", str(remote))
    return repo
