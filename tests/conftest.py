"""Shared fixtures for the Git Syncer test-suite."""

import subprocess
from pathlib import Path

import pytest

from git_syncer.config import Job, User


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Runs the test from an empty working directory.

    Managed working copies live under `.git-syncer/` relative to the process
    working directory, so every test gets its own.
    """
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def isolated_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Shields real git invocations from the developer's global configuration."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    (home / ".gitconfig").write_text("[init]\n\tdefaultBranch = master\n")


@pytest.fixture
def bare_remote(tmp_path: Path, isolated_git: None) -> Path:
    """Creates an empty bare repository usable as a push target."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", str(remote)], check=True, capture_output=True
    )
    return remote


@pytest.fixture
def user() -> User:
    return User(username="Git Syncer", email="git-syncer@example.com")


@pytest.fixture
def job(workdir: Path) -> Job:
    source = workdir / "source"
    source.mkdir()
    return Job(name="docs sync", schedule="*/30 * * * *", source_path=str(source))
